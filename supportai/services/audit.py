from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from supportai.core.config import get_settings


logger = logging.getLogger(__name__)

AUDIT_EVENT_TYPES = frozenset(
    {
        "conversation.created",
        "conversation.resolved",
        "conversation.escalated",
        "message.received",
        "message.sent",
        "message.failed",
        "cache.hit",
        "cache.miss",
        "policy.violated",
        "procedure.triggered",
        "procedure.completed",
        "procedure.failed",
        "procedure.approval",
        "procedure.notify",
        "connector.called",
        "connector.error",
        "rate_limit.exceeded",
        "knowledge.created",
        "knowledge.processed",
        "knowledge.failed",
        "knowledge.deleted",
        "knowledge.reingested",
        "simulation.run",
        "handover.triggered",
        "tenant.created",
        "apikey.rotated",
        "tenant.config_updated",
    }
)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "credential", "text", "content"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


@dataclass(frozen=True)
class AuditRecord:
    tenant_id: str | None
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_row(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "user_id": self.user_id,
            "occurred_at": self.occurred_at,
        }


AuditWriter = Callable[[list[AuditRecord]], Awaitable[None]]


async def write_to_database(records: list[AuditRecord]) -> None:
    # Imported lazily so the logger stays usable without a configured database.
    from supportai.persistence.db import SessionLocal
    from supportai.persistence.repos import audit as audit_repo

    async with SessionLocal() as session:
        try:
            await audit_repo.insert_events(session, [record.as_row() for record in records])
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise


class AuditLogger:
    """Fire-and-forget audit side channel.

    ``emit`` never blocks and never raises: records go into a bounded queue
    drained by a background task that writes them in batches. A full queue
    drops the record with a warning.
    """

    def __init__(
        self,
        *,
        writer: AuditWriter | None = None,
        max_queue: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        settings = get_settings()
        self._writer = writer or write_to_database
        self._max_queue = max_queue or settings.audit_queue_size
        self._batch_size = max(1, batch_size or settings.audit_batch_size)
        self._queue: asyncio.Queue[AuditRecord] | None = None
        self._task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.dropped = 0

    def _ensure_started(self, loop: asyncio.AbstractEventLoop) -> asyncio.Queue[AuditRecord]:
        # Queues and tasks are loop-bound; rebuild them when the loop changes.
        if self._queue is None or self._loop is not loop or self._task is None or self._task.done():
            if self._queue is None or self._loop is not loop:
                self._queue = asyncio.Queue(maxsize=self._max_queue)
            self._loop = loop
            self._task = loop.create_task(self._run())
        return self._queue

    def emit(
        self,
        tenant_id: str | None,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        user_id: str | None = None,
    ) -> None:
        if event_type not in AUDIT_EVENT_TYPES:
            logger.warning("audit_event_type_unknown event_type=%s", event_type)
        record = AuditRecord(
            tenant_id=tenant_id,
            event_type=event_type,
            payload=sanitize_metadata(payload or {}),
            user_id=user_id,
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("audit_event_dropped reason=no_loop event_type=%s", event_type)
            self.dropped += 1
            return
        queue = self._ensure_started(loop)
        try:
            queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("audit_event_dropped reason=queue_full event_type=%s", event_type)

    async def drain(self) -> None:
        # Wait until every queued record has been handed to the writer.
        if self._queue is None or self._loop is not asyncio.get_running_loop():
            return
        await self._queue.join()

    async def close(self) -> None:
        await self.drain()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            batch = [await queue.get()]
            while len(batch) < self._batch_size and not queue.empty():
                batch.append(queue.get_nowait())
            try:
                await self._writer(batch)
            except Exception:  # noqa: BLE001 - audit failures must not reach request paths
                logger.warning("audit_event_write_failed count=%s", len(batch), exc_info=True)
            finally:
                for _ in batch:
                    queue.task_done()


_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def set_audit_logger(audit_logger: AuditLogger | None) -> None:
    global _audit_logger
    _audit_logger = audit_logger


def reset_audit_state() -> None:
    set_audit_logger(None)
