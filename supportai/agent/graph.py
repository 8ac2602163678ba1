from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import threading
from typing import Any, Callable

from langgraph.graph import END, StateGraph
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.agent.prompts import LOW_CONFIDENCE_MESSAGE, PROCEDURE_HANDOVER_MESSAGE, build_messages
from supportai.core.errors import GenerationCancelled, GenerationError
from supportai.domain.state import TurnState
from supportai.domain.types import DataConnector, Policy, Procedure
from supportai.persistence.repos.messages import list_recent_messages
from supportai.providers.embeddings.base import EmbeddingClient
from supportai.providers.llm.base import LLMProvider
from supportai.providers.vector_index.base import VectorIndex
from supportai.services.audit import AuditLogger
from supportai.services.connectors import ConnectorClient
from supportai.services.policy_engine import evaluate, redact_pii
from supportai.services.procedures import ProcedureContext, execute_procedure, match_procedure
from supportai.services.retrieval import retrieve
from supportai.services.semantic_cache import SemanticCache


@dataclass
class TurnDependencies:
    session: AsyncSession
    llm: LLMProvider
    embedder: EmbeddingClient
    index: VectorIndex
    cache: SemanticCache
    audit: AuditLogger
    connector_client: ConnectorClient
    cancel_event: threading.Event
    policies: list[Policy] = field(default_factory=list)
    procedures: list[Procedure] = field(default_factory=list)
    connectors: dict[str, DataConnector] = field(default_factory=dict)
    on_delta: Callable[[str], None] | None = None
    user_message_id: str | None = None
    confidence_threshold: float = 0.7
    top_k: int = 6
    max_history: int = 10
    custom_system_prompt: str | None = None
    webhook_url: str | None = None
    run_procedures: bool = True
    dry_run: bool = False


def _route_after_pre_policy(state: TurnState) -> str:
    return "stop" if state.get("outcome") == "blocked" else "continue"


def _route_after_cache(state: TurnState) -> str:
    return "stop" if state.get("outcome") == "cached" else "continue"


def _route_after_procedure(state: TurnState) -> str:
    outcome = state.get("outcome")
    if outcome == "procedure":
        return "reply"
    if outcome == "escalated":
        return "stop"
    return "continue"


def _route_after_retrieval(state: TurnState) -> str:
    return "stop" if state.get("outcome") == "escalated" else "continue"


def build_graph(deps: TurnDependencies):
    graph = StateGraph(TurnState)

    def emit(state: TurnState, event_type: str, payload: dict[str, Any]) -> None:
        deps.audit.emit(
            state["tenant_id"],
            event_type,
            {"conversation_id": state["conversation_id"], **payload},
            user_id=state.get("user_id"),
        )

    async def pre_policy(state: TurnState) -> dict:
        decision = evaluate(deps.policies, state["user_message"], "pre")
        if decision.violation is not None:
            emit(state, "policy.violated", {"mode": "pre", **decision.violation.as_payload()})
            return {
                "outcome": "blocked",
                "reply": decision.text,
                "violation": decision.violation.as_payload(),
                "confidence": 0.0,
                "citations": [],
            }
        # Redaction output is what every later stage sees.
        return {"effective_message": redact_pii(decision.text, deps.policies)}

    async def cache_lookup(state: TurnState) -> dict:
        cached = await deps.cache.lookup(state["tenant_id"], state["effective_message"])
        if cached is None:
            emit(state, "cache.miss", {})
            return {}
        emit(state, "cache.hit", {"confidence": cached.confidence})
        return {
            "outcome": "cached",
            "reply": cached.content,
            "confidence": cached.confidence,
            "citations": list(cached.citations),
        }

    async def run_procedure(state: TurnState) -> dict:
        if not deps.run_procedures:
            return {}
        procedure = match_procedure(deps.procedures, state["effective_message"])
        if procedure is None:
            return {}
        context = ProcedureContext(
            tenant_id=state["tenant_id"],
            conversation_id=state["conversation_id"],
            user_id=state.get("user_id"),
            dry_run=deps.dry_run,
            variables={
                "message": state["effective_message"],
                "user": {"id": state.get("user_id") or ""},
                "conversation": {"id": state["conversation_id"], "channel": state.get("channel")},
                "webhook_url": deps.webhook_url,
            },
        )
        result = await execute_procedure(
            procedure,
            context,
            deps.connectors,
            client=deps.connector_client,
            audit=deps.audit,
        )
        payload = result.as_payload()
        if not result.completed:
            return {
                "outcome": "escalated",
                "reply": PROCEDURE_HANDOVER_MESSAGE,
                "escalated": True,
                "escalation_reason": "procedure_failed",
                "procedure": payload,
                "confidence": 0.0,
                "citations": [],
            }
        if result.output:
            return {
                "outcome": "procedure",
                "reply": result.output,
                "confidence": 1.0,
                "citations": [],
                "procedure": payload,
                "escalated": result.escalate,
                "escalation_reason": "procedure_escalation" if result.escalate else None,
            }
        if result.escalate:
            return {
                "outcome": "escalated",
                "reply": PROCEDURE_HANDOVER_MESSAGE,
                "escalated": True,
                "escalation_reason": "procedure_escalation",
                "procedure": payload,
                "confidence": 1.0,
                "citations": [],
            }
        # Completed without anything to say: answer from knowledge instead.
        return {"procedure": payload}

    async def retrieve_context(state: TurnState) -> dict:
        result = await retrieve(
            state["tenant_id"],
            state["effective_message"],
            top_k=deps.top_k,
            embedder=deps.embedder,
            index=deps.index,
        )
        confidence = result.confidence
        if confidence < deps.confidence_threshold:
            return {
                "outcome": "escalated",
                "reply": LOW_CONFIDENCE_MESSAGE,
                "escalated": True,
                "escalation_reason": "low_confidence",
                "confidence": confidence,
                "citations": [],
                "retrieved": [],
            }
        return {"retrieved": result.as_context(), "confidence": confidence, "citations": result.citations}

    async def load_history(state: TurnState) -> dict:
        records = await list_recent_messages(
            deps.session,
            state["tenant_id"],
            state["conversation_id"],
            limit=deps.max_history,
            exclude_id=deps.user_message_id,
        )
        return {"history": [{"role": record.role, "content": record.content} for record in records]}

    async def generate(state: TurnState) -> dict:
        messages = build_messages(
            state.get("history") or [],
            state.get("retrieved") or [],
            state["effective_message"],
            custom_system_prompt=deps.custom_system_prompt,
        )
        answer_parts: list[str] = []

        def run_stream() -> None:
            for delta in deps.llm.stream(messages):
                # Stop as soon as the caller goes away; partial output is discarded.
                if deps.cancel_event.is_set():
                    raise GenerationCancelled("generation cancelled")
                answer_parts.append(delta)
                if deps.on_delta is not None:
                    deps.on_delta(delta)

        await asyncio.to_thread(run_stream)
        if deps.cancel_event.is_set():
            raise GenerationCancelled("generation cancelled")
        answer = "".join(answer_parts).strip()
        if not answer:
            raise GenerationError("generation returned no content")
        return {"reply": answer, "outcome": "answered", "cacheable": True}

    async def post_policy(state: TurnState) -> dict:
        decision = evaluate(deps.policies, state.get("reply") or "", "post")
        if decision.violation is None:
            return {"reply": decision.text}
        emit(state, "policy.violated", {"mode": "post", **decision.violation.as_payload()})
        return {
            "outcome": "escalated",
            "reply": decision.text,
            "escalated": True,
            "escalation_reason": "post_policy_violation",
            "violation": decision.violation.as_payload(),
            "cacheable": False,
            "citations": [],
        }

    graph.add_node("pre_policy", pre_policy)
    graph.add_node("cache_lookup", cache_lookup)
    graph.add_node("run_procedure", run_procedure)
    graph.add_node("retrieve", retrieve_context)
    graph.add_node("load_history", load_history)
    graph.add_node("generate", generate)
    graph.add_node("post_policy", post_policy)

    graph.set_entry_point("pre_policy")
    graph.add_conditional_edges("pre_policy", _route_after_pre_policy, {"stop": END, "continue": "cache_lookup"})
    graph.add_conditional_edges("cache_lookup", _route_after_cache, {"stop": END, "continue": "run_procedure"})
    graph.add_conditional_edges(
        "run_procedure",
        _route_after_procedure,
        {"reply": "post_policy", "stop": END, "continue": "retrieve"},
    )
    graph.add_conditional_edges("retrieve", _route_after_retrieval, {"stop": END, "continue": "load_history"})
    graph.add_edge("load_history", "generate")
    graph.add_edge("generate", "post_policy")
    graph.add_edge("post_policy", END)

    return graph.compile()


async def run_graph(deps: TurnDependencies, state: TurnState) -> TurnState:
    graph = build_graph(deps)
    return await graph.ainvoke(state)
