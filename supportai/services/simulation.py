from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from supportai.core.config import get_settings
from supportai.domain.types import ScenarioExpectation, TestScenario
from supportai.persistence.repos import scenarios as scenarios_repo
from supportai.services.audit import AuditLogger, get_audit_logger
from supportai.services.orchestrator import OrchestrateOptions, OrchestrateRequest, Orchestrator


logger = logging.getLogger(__name__)

_RESOLVED_OUTCOMES = frozenset({"answered", "cached", "procedure"})


@dataclass(frozen=True)
class SimulationTurn:
    user_message: str
    assistant_response: str | None
    confidence: float
    citations: list[str]
    procedure_triggered: str | None
    procedure_result: dict[str, Any] | None
    policy_blocked: bool
    policy_violations: list[str]
    escalated: bool
    resolved: bool


@dataclass(frozen=True)
class SimulationMetrics:
    total_turns: int
    avg_confidence: float
    resolution_rate: float
    escalation_rate: float
    procedures_used: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SimulationResult:
    conversation_id: str | None
    turns: list[SimulationTurn]
    metrics: SimulationMetrics

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScenarioRunResult:
    scenario_id: str
    name: str
    passed: bool
    actual_resolved: bool
    expected: ScenarioExpectation
    simulation: SimulationResult

    def as_dict(self) -> dict[str, Any]:
        return {
            "scenario_id": self.scenario_id,
            "name": self.name,
            "passed": self.passed,
            "actual_resolved": self.actual_resolved,
            "expected": self.expected.model_dump(mode="json"),
            "simulation": self.simulation.as_dict(),
        }


def compute_metrics(turns: list[SimulationTurn]) -> SimulationMetrics:
    total = len(turns)
    if total == 0:
        return SimulationMetrics(total_turns=0, avg_confidence=0.0, resolution_rate=0.0, escalation_rate=0.0)
    procedures: list[str] = []
    for turn in turns:
        if turn.procedure_triggered and turn.procedure_triggered not in procedures:
            procedures.append(turn.procedure_triggered)
    return SimulationMetrics(
        total_turns=total,
        avg_confidence=sum(turn.confidence for turn in turns) / total,
        resolution_rate=sum(1 for turn in turns if turn.resolved) / total,
        escalation_rate=sum(1 for turn in turns if turn.escalated) / total,
        procedures_used=procedures,
    )


async def run_simulation(
    session: AsyncSession,
    tenant_id: str,
    messages: list[str],
    *,
    test_procedures: bool = False,
    orchestrator: Orchestrator | None = None,
) -> SimulationResult:
    """Replay scripted messages through one synthetic web conversation.

    Rate limiting and cache writes are off; procedures only run, in dry-run
    mode, when ``test_procedures`` is set.
    """
    limit = get_settings().simulation_max_messages
    if len(messages) > limit:
        raise ValueError(f"at most {limit} messages per simulation")
    runner = orchestrator or Orchestrator(session)
    options = OrchestrateOptions(
        dry_run=True,
        run_procedures=test_procedures,
        enforce_rate_limit=False,
        cache_writes=False,
    )
    conversation_id: str | None = None
    session_key = f"simulation-{uuid4().hex}"
    turns: list[SimulationTurn] = []
    for message in messages:
        result = await runner.orchestrate(
            OrchestrateRequest(
                tenant_id=tenant_id,
                user_message=message,
                channel="web",
                conversation_id=conversation_id,
                session_key=session_key,
                metadata={"simulation": True},
                options=options,
            )
        )
        conversation_id = result.conversation_id
        blocked = result.outcome == "blocked" or bool(result.policy_violations)
        procedure = result.procedure
        turns.append(
            SimulationTurn(
                user_message=message,
                assistant_response=result.reply or None,
                confidence=result.confidence,
                citations=list(result.citations),
                procedure_triggered=procedure.get("name") if procedure else None,
                procedure_result=procedure,
                policy_blocked=blocked,
                policy_violations=[str(item.get("reason")) for item in result.policy_violations],
                escalated=result.escalated,
                resolved=bool(result.reply) and result.outcome in _RESOLVED_OUTCOMES and not result.escalated,
            )
        )
    return SimulationResult(conversation_id=conversation_id, turns=turns, metrics=compute_metrics(turns))


def scenario_passed(expected: ScenarioExpectation, metrics: SimulationMetrics) -> tuple[bool, bool]:
    # A scenario counts as resolved when most of its turns were.
    actual_resolved = metrics.resolution_rate > 0.5
    passed = actual_resolved == expected.resolved and metrics.avg_confidence >= expected.min_confidence
    return passed, actual_resolved


async def run_scenario(
    session: AsyncSession,
    scenario: TestScenario,
    *,
    test_procedures: bool = False,
    orchestrator: Orchestrator | None = None,
    audit: AuditLogger | None = None,
) -> ScenarioRunResult:
    simulation = await run_simulation(
        session,
        scenario.tenant_id,
        scenario.messages,
        test_procedures=test_procedures,
        orchestrator=orchestrator,
    )
    passed, actual_resolved = scenario_passed(scenario.expected, simulation.metrics)
    await scenarios_repo.touch_last_run(
        session, scenario.tenant_id, scenario.id, ran_at=datetime.now(timezone.utc)
    )
    await session.commit()
    (audit or get_audit_logger()).emit(
        scenario.tenant_id,
        "simulation.run",
        {
            "scenario_id": scenario.id,
            "passed": passed,
            "total_turns": simulation.metrics.total_turns,
            "resolution_rate": simulation.metrics.resolution_rate,
            "avg_confidence": simulation.metrics.avg_confidence,
        },
    )
    logger.info("scenario_run scenario_id=%s passed=%s", scenario.id, passed)
    return ScenarioRunResult(
        scenario_id=scenario.id,
        name=scenario.name,
        passed=passed,
        actual_resolved=actual_resolved,
        expected=scenario.expected,
        simulation=simulation,
    )
