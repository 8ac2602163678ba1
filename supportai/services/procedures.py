from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Iterable, Literal

from supportai.core.config import get_settings
from supportai.core.errors import ConnectorError, ProcedureExecutionError
from supportai.domain.types import (
    ApiCallStep,
    ApprovalStep,
    ConditionalStep,
    DataConnector,
    DataLookupStep,
    MessageStep,
    NotifyStep,
    Procedure,
    ProcedureTrigger,
)
from supportai.services.audit import AuditLogger, get_audit_logger
from supportai.services.connectors import ConnectorClient, apply_response_mapping
from supportai.services.templating import evaluate_condition, render, set_path


logger = logging.getLogger(__name__)

ProcedureStatus = Literal["matching", "executing", "completed", "failed"]


@dataclass
class ProcedureContext:
    tenant_id: str
    conversation_id: str | None
    variables: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    # Skips external side effects (connector calls, webhooks, approvals).
    dry_run: bool = False


@dataclass(frozen=True)
class StepResult:
    index: int
    type: str
    name: str | None
    success: bool
    skipped: bool = False
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class ProcedureRunResult:
    procedure_id: str
    name: str
    status: ProcedureStatus = "matching"
    steps: list[StepResult] = field(default_factory=list)
    output: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    escalate: bool = False
    error: str | None = None
    dry_run: bool = False

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    def as_payload(self) -> dict[str, Any]:
        return {
            "procedure_id": self.procedure_id,
            "name": self.name,
            "status": self.status,
            "output": self.output,
            "escalate": self.escalate,
            "error": self.error,
            "dry_run": self.dry_run,
            "steps": [
                {
                    "index": step.index,
                    "type": step.type,
                    "name": step.name,
                    "success": step.success,
                    "skipped": step.skipped,
                    "error": step.error,
                }
                for step in self.steps
            ],
        }


def trigger_matches(trigger: ProcedureTrigger, message: str) -> bool:
    lowered = message.lower()
    if trigger.type == "keyword":
        keywords = [item.strip().lower() for item in trigger.condition.split(",")]
        return any(keyword and keyword in lowered for keyword in keywords)
    if trigger.type == "intent":
        # Substring match until an intent classifier exists.
        condition = trigger.condition.strip().lower()
        return bool(condition) and condition in lowered
    # Manual procedures are never auto-triggered.
    return False


def match_procedure(procedures: Iterable[Procedure], message: str) -> Procedure | None:
    """Return the first enabled procedure whose trigger matches, in stable tenant order."""
    candidates = sorted(
        (procedure for procedure in procedures if procedure.enabled),
        key=lambda procedure: (
            procedure.priority,
            procedure.created_at.timestamp() if procedure.created_at else 0.0,
            procedure.id,
        ),
    )
    for procedure in candidates:
        if trigger_matches(procedure.trigger, message):
            return procedure
    return None


class _StopRun(Exception):
    # Raised by a conditional step to end the run successfully.
    pass


class _Executor:
    def __init__(
        self,
        procedure: Procedure,
        context: ProcedureContext,
        connectors: dict[str, DataConnector],
        client: ConnectorClient,
        audit: AuditLogger,
    ) -> None:
        self.procedure = procedure
        self.context = context
        self.connectors = connectors
        self.client = client
        self.audit = audit
        self.messages: list[str] = []
        self.escalate = False
        self.skip_next = False

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.audit.emit(
            self.context.tenant_id,
            event_type,
            {"procedure_id": self.procedure.id, "conversation_id": self.context.conversation_id, **payload},
            user_id=self.context.user_id,
        )

    async def run_step(self, step: Any) -> dict[str, Any]:
        if isinstance(step, MessageStep):
            rendered = render(step.template, self.context.variables)
            self.messages.append(rendered)
            return {"message": rendered}
        if isinstance(step, (ApiCallStep, DataLookupStep)):
            return await self._connector_step(step, force_get=isinstance(step, DataLookupStep))
        if isinstance(step, NotifyStep):
            return await self._notify_step(step)
        if isinstance(step, ConditionalStep):
            result = evaluate_condition(step.condition, self.context.variables)
            if not result:
                if step.on_false == "stop":
                    raise _StopRun()
                self.skip_next = True
            return {"condition": step.condition, "result": result}
        if isinstance(step, ApprovalStep):
            message = render(step.message or "Approval required", self.context.variables)
            if self.context.dry_run:
                return {"approved": True, "dry_run": True}
            self.emit("procedure.approval", {"approver": step.approver, "auto_approved": True})
            return {"approved": True, "auto_approved": True, "message": message}
        raise ProcedureExecutionError(f"unknown step type: {getattr(step, 'type', type(step).__name__)}")

    async def _connector_step(self, step: ApiCallStep | DataLookupStep, *, force_get: bool) -> dict[str, Any]:
        params = {key: render(value, self.context.variables) for key, value in step.params.items()}
        if self.context.dry_run:
            return {"dry_run": True, "connector_id": step.connector_id, "endpoint": step.endpoint}
        connector = self.connectors.get(step.connector_id)
        if connector is None:
            raise ConnectorError(f"connector {step.connector_id} not found")
        try:
            response = await self.client.call(connector, step.endpoint, params, force_get=force_get)
        except ConnectorError as exc:
            self.emit(
                "connector.error",
                {"connector_id": step.connector_id, "endpoint": step.endpoint, "error": str(exc)},
            )
            raise
        mapped = apply_response_mapping(response.body, step.response_mapping)
        for variable, value in mapped.items():
            set_path(self.context.variables, variable, value)
        self.emit(
            "connector.called",
            {"connector_id": step.connector_id, "endpoint": step.endpoint, "status": response.status_code},
        )
        return {"status": response.status_code, "mapped": mapped}

    async def _notify_step(self, step: NotifyStep) -> dict[str, Any]:
        if step.fail:
            raise ProcedureExecutionError(f"notify step {step.name or step.action} configured to fail")
        message = render(step.message or "", self.context.variables)
        if step.action == "escalate":
            self.escalate = True
            return {"action": "escalate"}
        if step.action == "webhook":
            target = step.target or self.context.variables.get("webhook_url")
            if not target:
                raise ProcedureExecutionError("webhook notify step has no target")
            if self.context.dry_run:
                return {"action": "webhook", "dry_run": True}
            status = await self.client.post_webhook(
                str(target),
                {
                    "procedure_id": self.procedure.id,
                    "conversation_id": self.context.conversation_id,
                    "message": message,
                },
            )
            return {"action": "webhook", "status": status}
        self.emit("procedure.notify", {"target": step.target, "note": message})
        return {"action": "audit"}


async def execute_procedure(
    procedure: Procedure,
    context: ProcedureContext,
    connectors: dict[str, DataConnector] | None = None,
    *,
    client: ConnectorClient | None = None,
    audit: AuditLogger | None = None,
) -> ProcedureRunResult:
    """Run a matched procedure's steps in order.

    A failing step halts the run and marks it ``failed``; nothing is retried.
    Failures are reported on the result, never raised.
    """
    audit_logger = audit or get_audit_logger()
    executor = _Executor(procedure, context, connectors or {}, client or ConnectorClient(), audit_logger)
    result = ProcedureRunResult(procedure_id=procedure.id, name=procedure.name, dry_run=context.dry_run)
    executor.emit("procedure.triggered", {"name": procedure.name, "dry_run": context.dry_run})

    max_steps = get_settings().procedure_max_steps
    if not procedure.steps:
        result.error = "procedure has no steps"
    elif len(procedure.steps) > max_steps:
        result.error = f"procedure exceeds {max_steps} steps"
    else:
        result.status = "executing"
        for index, step in enumerate(procedure.steps):
            step_type = getattr(step, "type", "unknown")
            step_name = getattr(step, "name", None)
            if executor.skip_next:
                executor.skip_next = False
                result.steps.append(
                    StepResult(index=index, type=step_type, name=step_name, success=True, skipped=True)
                )
                continue
            try:
                output = await executor.run_step(step)
            except _StopRun:
                result.steps.append(
                    StepResult(index=index, type=step_type, name=step_name, success=True, output={"result": False})
                )
                break
            except ProcedureExecutionError as exc:
                result.steps.append(
                    StepResult(index=index, type=step_type, name=step_name, success=False, error=str(exc))
                )
                result.error = f"step {index} ({step_type}) failed: {exc}"
                break
            result.steps.append(StepResult(index=index, type=step_type, name=step_name, success=True, output=output))

    result.variables = dict(context.variables)
    result.escalate = executor.escalate
    result.output = "\n\n".join(message for message in executor.messages if message) or None
    if result.error is not None:
        result.status = "failed"
        logger.warning("procedure_failed procedure_id=%s error=%s", procedure.id, result.error)
        executor.emit("procedure.failed", {"name": procedure.name, "error": result.error})
    else:
        result.status = "completed"
        executor.emit("procedure.completed", {"name": procedure.name, "steps_executed": len(result.steps)})
    return result
