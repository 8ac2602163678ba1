from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
import re
from typing import Callable, Literal
from uuid import uuid4

from arq import Retry
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.core.config import get_settings
from supportai.core.errors import (
    ChunkingError,
    ExtractionError,
    KnowledgeSourceNotFoundError,
)
from supportai.domain.types import KnowledgeSource
from supportai.ingestion.chunking import chunk_text
from supportai.ingestion.extraction import ExtractedText, extract_file, extract_url
from supportai.persistence.db import SessionLocal
from supportai.persistence.repos import sources as sources_repo
from supportai.providers.embeddings.base import EmbeddingClient, embed_in_batches
from supportai.providers.embeddings.factory import get_embedding_client
from supportai.providers.vector_index.base import VectorIndex, VectorRecordIn, vector_id
from supportai.providers.vector_index.factory import get_vector_index
from supportai.services.audit import AuditLogger, get_audit_logger
from supportai.services.semantic_cache import SemanticCache, get_semantic_cache


logger = logging.getLogger(__name__)

# Chunk text stored alongside each vector is capped for metadata size.
_METADATA_TEXT_CHARS = 1000
_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class IngestionJobPayload(BaseModel):
    # Schema shared by the API, the inline runner and the arq worker.
    source_id: str
    tenant_id: str
    type: Literal["file", "url", "manual"]
    version: int = 1
    storage_path: str | None = None
    url: str | None = None
    text: str | None = None
    filename: str | None = None
    content_type: str | None = None
    request_id: str

    @property
    def job_id(self) -> str:
        # One job per source version; re-enqueueing the same version is a no-op in arq.
        return f"{self.source_id}:v{self.version}"


@dataclass(frozen=True)
class IngestionOutcome:
    source_id: str
    status: Literal["ready", "failed"]
    chunks_count: int = 0
    vectors_count: int = 0
    error: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _storage_dir() -> Path:
    # Local storage until object storage is wired in.
    path = Path(get_settings().knowledge_storage_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def store_upload(source_id: str, filename: str | None, data: bytes) -> str:
    safe_name = _SAFE_NAME_RE.sub("_", filename or "upload") or "upload"
    path = _storage_dir() / f"{source_id}-{safe_name}"
    path.write_bytes(data)
    return str(path)


def _remove_stored_file(storage_path: str | None) -> None:
    if not storage_path:
        return
    try:
        Path(storage_path).unlink(missing_ok=True)
    except OSError:
        logger.warning("knowledge_storage_cleanup_failed path=%s", storage_path, exc_info=True)


async def extract_source_text(payload: IngestionJobPayload) -> ExtractedText:
    if payload.type == "url":
        if not payload.url:
            raise ExtractionError("URL source is missing its url")
        return await extract_url(payload.url)
    if payload.type == "manual":
        if payload.text and payload.text.strip():
            return ExtractedText(text=payload.text, title=payload.filename)
        if payload.storage_path:
            text = Path(payload.storage_path).read_text(encoding="utf-8")
            return ExtractedText(text=text, title=payload.filename)
        raise ExtractionError("Manual source has no text")
    if not payload.storage_path:
        raise ExtractionError("File source is missing its stored copy")
    try:
        data = Path(payload.storage_path).read_bytes()
    except FileNotFoundError as exc:
        raise ExtractionError("Stored file is missing; upload it again") from exc
    return extract_file(data, payload.filename, payload.content_type)


async def ingest(
    session: AsyncSession,
    payload: IngestionJobPayload,
    *,
    embedder: EmbeddingClient,
    index: VectorIndex,
) -> IngestionOutcome:
    """Extract, chunk, embed and index one source version; raises on any failure."""
    settings = get_settings()
    extracted = await extract_source_text(payload)
    chunks = chunk_text(
        extracted.text,
        window=settings.chunk_size_chars,
        overlap=settings.chunk_overlap_chars,
    )
    if not chunks:
        raise ChunkingError("Source produced no chunks")

    # Stale vectors from earlier versions go first so retrieval never mixes versions.
    await index.delete_source(payload.tenant_id, payload.source_id)

    vectors = await embed_in_batches(
        embedder, [chunk.text for chunk in chunks], batch_size=settings.embed_batch_size
    )
    origin = {"url": payload.url} if payload.type == "url" else {"file_name": payload.filename}
    title = extracted.title or payload.filename or payload.url
    records = [
        VectorRecordIn(
            id=vector_id(payload.source_id, chunk.index),
            vector=vector,
            text=chunk.text,
            metadata={
                "source_id": payload.source_id,
                "tenant_id": payload.tenant_id,
                "chunk_index": chunk.index,
                "text": chunk.text[:_METADATA_TEXT_CHARS],
                "version": payload.version,
                "title": title,
                **origin,
            },
        )
        for chunk, vector in zip(chunks, vectors)
    ]
    upserted = await index.upsert(payload.tenant_id, records)

    await sources_repo.mark_ready(
        session,
        payload.tenant_id,
        payload.source_id,
        title=title,
        chunks_count=len(chunks),
        vectors_count=upserted,
        processed_at=_utc_now(),
    )
    await session.commit()
    return IngestionOutcome(
        source_id=payload.source_id,
        status="ready",
        chunks_count=len(chunks),
        vectors_count=upserted,
    )


def is_retryable(exc: Exception) -> bool:
    # Bad input fails the same way every time.
    return not isinstance(exc, (ExtractionError, ChunkingError, FileNotFoundError, ValueError))


def failure_reason(exc: Exception) -> str:
    # Short messages only; stack traces stay in the logs.
    if isinstance(exc, (ExtractionError, ChunkingError, ValueError)):
        return str(exc)
    return "Ingestion failed; retry or check worker logs"


async def run_ingestion_job(
    payload: IngestionJobPayload,
    *,
    attempt: int = 1,
    max_retries: int = 1,
    session_factory: Callable[[], AsyncSession] | None = None,
    embedder: EmbeddingClient | None = None,
    index: VectorIndex | None = None,
    cache: SemanticCache | None = None,
    audit: AuditLogger | None = None,
) -> IngestionOutcome:
    """Run one ingestion job end to end.

    Failures settle the source as ``failed`` and are never raised, except that
    transient errors raise ``arq.Retry`` while attempts remain.
    """
    factory = session_factory or SessionLocal
    audit_logger = audit or get_audit_logger()
    async with factory() as session:
        try:
            outcome = await ingest(
                session,
                payload,
                embedder=embedder or get_embedding_client(),
                index=index or get_vector_index(),
            )
        except Exception as exc:  # noqa: BLE001 - every failure settles the source status
            await session.rollback()
            if is_retryable(exc) and attempt < max_retries:
                logger.warning(
                    "ingestion_retry source_id=%s attempt=%s", payload.source_id, attempt, exc_info=True
                )
                raise Retry(defer=attempt * 2) from exc
            reason = failure_reason(exc)
            logger.exception("ingestion_failed source_id=%s", payload.source_id)
            await sources_repo.mark_failed(
                session, payload.tenant_id, payload.source_id, error=reason, failed_at=_utc_now()
            )
            await session.commit()
            audit_logger.emit(
                payload.tenant_id,
                "knowledge.failed",
                {"source_id": payload.source_id, "version": payload.version, "error": reason},
            )
            return IngestionOutcome(source_id=payload.source_id, status="failed", error=reason)

    audit_logger.emit(
        payload.tenant_id,
        "knowledge.processed",
        {
            "source_id": payload.source_id,
            "version": payload.version,
            "chunks_count": outcome.chunks_count,
            "vectors_count": outcome.vectors_count,
        },
    )
    # Answers cached before this version may now be wrong.
    await (cache or get_semantic_cache()).invalidate_tenant(payload.tenant_id)
    logger.info(
        "ingestion_completed source_id=%s chunks=%s vectors=%s",
        payload.source_id,
        outcome.chunks_count,
        outcome.vectors_count,
    )
    return outcome


def _audit_source(
    audit: AuditLogger | None, event_type: str, source: KnowledgeSource, *, user_id: str | None = None
) -> None:
    (audit or get_audit_logger()).emit(
        source.tenant_id,
        event_type,
        {"source_id": source.id, "type": source.type, "version": source.version},
        user_id=user_id,
    )


ENQUEUE_FAILED_REASON = "Could not queue ingestion"


async def mark_enqueue_failed(
    session: AsyncSession, payload: IngestionJobPayload, *, audit: AuditLogger | None = None
) -> KnowledgeSource | None:
    """Settle a source whose job never reached the queue; no worker would ever pick it up."""
    await session.rollback()
    source = await sources_repo.mark_failed(
        session, payload.tenant_id, payload.source_id, error=ENQUEUE_FAILED_REASON, failed_at=_utc_now()
    )
    await session.commit()
    (audit or get_audit_logger()).emit(
        payload.tenant_id,
        "knowledge.failed",
        {"source_id": payload.source_id, "version": payload.version, "error": ENQUEUE_FAILED_REASON},
    )
    return source


def _payload_for(source: KnowledgeSource, *, request_id: str, content_type: str | None = None) -> IngestionJobPayload:
    return IngestionJobPayload(
        source_id=source.id,
        tenant_id=source.tenant_id,
        type=source.type,
        version=source.version,
        storage_path=source.storage_path,
        url=source.url,
        filename=source.file_name,
        content_type=content_type,
        request_id=request_id,
    )


async def create_file_source(
    session: AsyncSession,
    *,
    tenant_id: str,
    filename: str | None,
    content_type: str | None,
    data: bytes,
    title: str | None = None,
    request_id: str | None = None,
    audit: AuditLogger | None = None,
    user_id: str | None = None,
) -> tuple[KnowledgeSource, IngestionJobPayload]:
    if not data:
        raise ExtractionError("Uploaded file is empty")
    source_id = str(uuid4())
    storage_path = store_upload(source_id, filename, data)
    row = await sources_repo.create_source(
        session,
        tenant_id=tenant_id,
        source_type="file",
        title=title,
        file_name=filename,
        content_type=content_type,
        storage_path=storage_path,
        source_id=source_id,
    )
    await session.commit()
    source = sources_repo.to_entity(row)
    _audit_source(audit, "knowledge.created", source, user_id=user_id)
    return source, _payload_for(source, request_id=request_id or str(uuid4()), content_type=content_type)


async def create_url_source(
    session: AsyncSession,
    *,
    tenant_id: str,
    url: str,
    title: str | None = None,
    request_id: str | None = None,
    audit: AuditLogger | None = None,
    user_id: str | None = None,
) -> tuple[KnowledgeSource, IngestionJobPayload]:
    row = await sources_repo.create_source(
        session, tenant_id=tenant_id, source_type="url", title=title, url=url
    )
    await session.commit()
    source = sources_repo.to_entity(row)
    _audit_source(audit, "knowledge.created", source, user_id=user_id)
    return source, _payload_for(source, request_id=request_id or str(uuid4()))


async def create_manual_source(
    session: AsyncSession,
    *,
    tenant_id: str,
    text: str,
    title: str | None = None,
    request_id: str | None = None,
    audit: AuditLogger | None = None,
    user_id: str | None = None,
) -> tuple[KnowledgeSource, IngestionJobPayload]:
    if not text.strip():
        raise ExtractionError("Manual source has no text")
    source_id = str(uuid4())
    # Manual text is stored like an upload so re-ingestion can re-read it.
    storage_path = store_upload(source_id, "manual.txt", text.encode("utf-8"))
    row = await sources_repo.create_source(
        session,
        tenant_id=tenant_id,
        source_type="manual",
        title=title,
        file_name=title,
        content_type="text/plain",
        storage_path=storage_path,
        source_id=source_id,
    )
    await session.commit()
    source = sources_repo.to_entity(row)
    _audit_source(audit, "knowledge.created", source, user_id=user_id)
    return source, _payload_for(source, request_id=request_id or str(uuid4()), content_type="text/plain")


async def reingest_source(
    session: AsyncSession,
    tenant_id: str,
    source_id: str,
    *,
    request_id: str | None = None,
    audit: AuditLogger | None = None,
    user_id: str | None = None,
) -> tuple[KnowledgeSource, IngestionJobPayload]:
    row = await sources_repo.get_source_row(session, tenant_id, source_id)
    if row is None:
        raise KnowledgeSourceNotFoundError(source_id)
    content_type = row.content_type
    source = await sources_repo.reset_for_reingest(session, tenant_id, source_id)
    assert source is not None
    await session.commit()
    logger.info("knowledge_reingest source_id=%s version=%s", source_id, source.version)
    _audit_source(audit, "knowledge.reingested", source, user_id=user_id)
    return source, _payload_for(source, request_id=request_id or str(uuid4()), content_type=content_type)


async def delete_source(
    session: AsyncSession,
    tenant_id: str,
    source_id: str,
    *,
    index: VectorIndex | None = None,
    cache: SemanticCache | None = None,
    audit: AuditLogger | None = None,
    user_id: str | None = None,
) -> KnowledgeSource:
    source = await sources_repo.get_source(session, tenant_id, source_id)
    if source is None:
        raise KnowledgeSourceNotFoundError(source_id)
    vectors_deleted = 0
    try:
        vectors_deleted = await (index or get_vector_index()).delete_source(tenant_id, source_id)
    except Exception:  # noqa: BLE001 - orphaned vectors are dropped on the next namespace rebuild
        logger.warning("knowledge_vector_delete_failed source_id=%s", source_id, exc_info=True)
    await sources_repo.delete_source(session, tenant_id, source_id)
    await session.commit()
    _remove_stored_file(source.storage_path)
    await (cache or get_semantic_cache()).invalidate_tenant(tenant_id)
    (audit or get_audit_logger()).emit(
        tenant_id,
        "knowledge.deleted",
        {"source_id": source_id, "vectors_deleted": vectors_deleted},
        user_id=user_id,
    )
    return source
