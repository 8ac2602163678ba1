from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import threading
from typing import Any, Callable, Literal
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.agent.graph import TurnDependencies, run_graph
from supportai.agent.prompts import RATE_LIMITED_MESSAGE, fallback_message
from supportai.core.config import get_settings
from supportai.core.errors import ConversationNotFoundError, GenerationCancelled, TenantNotFoundError
from supportai.domain.state import TurnState
from supportai.domain.types import Conversation, Tenant
from supportai.persistence.repos import connectors as connectors_repo
from supportai.persistence.repos import conversations as conversations_repo
from supportai.persistence.repos import messages as messages_repo
from supportai.persistence.repos import policies as policies_repo
from supportai.persistence.repos import procedures as procedures_repo
from supportai.persistence.repos import tenants as tenants_repo
from supportai.providers.embeddings.base import EmbeddingClient
from supportai.providers.embeddings.factory import get_embedding_client
from supportai.providers.llm.base import LLMProvider
from supportai.providers.llm.factory import get_llm_provider
from supportai.providers.vector_index.base import VectorIndex
from supportai.providers.vector_index.factory import get_vector_index
from supportai.services.audit import AuditLogger, get_audit_logger
from supportai.services.connectors import ConnectorClient
from supportai.services.rate_limit import SlidingWindowRateLimiter, get_rate_limiter
from supportai.services.sanitize import sanitize_text
from supportai.services.semantic_cache import CachedResponse, SemanticCache, get_semantic_cache


logger = logging.getLogger(__name__)

Outcome = Literal["answered", "cached", "procedure", "blocked", "escalated", "rate_limited", "fallback", "cancelled"]

# Outcomes whose reply counts as the assistant answering the customer.
_ANSWER_OUTCOMES = frozenset({"answered", "cached", "procedure"})


@dataclass(frozen=True)
class OrchestrateOptions:
    # Procedures run without external side effects.
    dry_run: bool = False
    run_procedures: bool = True
    enforce_rate_limit: bool = True
    cache_writes: bool = True


@dataclass
class OrchestrateRequest:
    tenant_id: str
    user_message: str
    channel: str = "web"
    conversation_id: str | None = None
    session_key: str | None = None
    user_id: str | None = None
    client_ip: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    options: OrchestrateOptions = field(default_factory=OrchestrateOptions)
    request_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass
class OrchestrateResult:
    reply: str
    confidence: float
    citations: list[str]
    conversation_id: str
    escalated: bool
    outcome: Outcome
    resolved: bool = False
    message_id: str | None = None
    procedure: dict[str, Any] | None = None
    policy_violations: list[dict[str, Any]] = field(default_factory=list)
    escalation_reason: str | None = None
    retry_after_s: int | None = None


class Orchestrator:
    """Turns one inbound customer message into a persisted, policy-checked reply.

    Collaborators default to the process-wide providers; tests pass fakes.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        llm: LLMProvider | None = None,
        embedder: EmbeddingClient | None = None,
        index: VectorIndex | None = None,
        cache: SemanticCache | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        audit: AuditLogger | None = None,
        connector_client: ConnectorClient | None = None,
    ) -> None:
        self._session = session
        self._llm = llm
        self._embedder = embedder
        self._index = index
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._audit = audit or get_audit_logger()
        self._connector_client = connector_client

    def _emit(self, request: OrchestrateRequest, event_type: str, payload: dict[str, Any]) -> None:
        self._audit.emit(request.tenant_id, event_type, payload, user_id=request.user_id)

    async def _resolve_conversation(self, request: OrchestrateRequest) -> tuple[Conversation, bool]:
        if request.conversation_id:
            conversation = await conversations_repo.get_conversation(
                self._session, request.tenant_id, request.conversation_id
            )
            if conversation is None:
                raise ConversationNotFoundError(request.conversation_id)
            return conversation, False
        if request.session_key:
            conversation = await conversations_repo.find_by_session_key(
                self._session, request.tenant_id, request.channel, request.session_key
            )
            if conversation is not None:
                return conversation, False
        conversation = await conversations_repo.create_conversation(
            self._session,
            tenant_id=request.tenant_id,
            channel=request.channel,
            session_key=request.session_key,
            user_id=request.user_id,
            metadata=request.metadata,
        )
        return conversation, True

    async def orchestrate(
        self,
        request: OrchestrateRequest,
        *,
        on_delta: Callable[[str], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> OrchestrateResult:
        tenant = await tenants_repo.get_tenant(self._session, request.tenant_id)
        if tenant is None:
            raise TenantNotFoundError(request.tenant_id)
        # Everything downstream sees plain text only.
        request = replace(request, user_message=sanitize_text(request.user_message))

        # TX #1: conversation and inbound message are durable before any work.
        conversation, created = await self._resolve_conversation(request)
        user_message = await messages_repo.add_message(
            self._session,
            tenant_id=request.tenant_id,
            conversation_id=conversation.id,
            role="user",
            content=request.user_message,
        )
        await self._session.commit()
        if created:
            self._emit(request, "conversation.created", {"conversation_id": conversation.id, "channel": request.channel})
        self._emit(request, "message.received", {"conversation_id": conversation.id, "channel": request.channel})

        if request.options.enforce_rate_limit:
            limited = await self._check_rate_limit(request, tenant, conversation.id)
            if limited is not None:
                return limited

        cancel = cancel_event or threading.Event()
        try:
            final, deps = await self._run_turn(request, tenant, conversation, user_message.id, on_delta, cancel)
            return await self._finalize(request, tenant, conversation.id, final, threshold=deps.confidence_threshold)
        except GenerationCancelled:
            # Nothing from an abandoned turn is persisted or cached.
            await self._session.rollback()
            logger.info("orchestrate_cancelled tenant_id=%s conversation_id=%s", request.tenant_id, conversation.id)
            return OrchestrateResult(
                reply="",
                confidence=0.0,
                citations=[],
                conversation_id=conversation.id,
                escalated=False,
                outcome="cancelled",
            )
        except Exception as exc:  # noqa: BLE001 - customers get the channel fallback, never a raw error
            logger.exception("orchestrate_failed tenant_id=%s conversation_id=%s", request.tenant_id, conversation.id)
            return await self._fallback(request, conversation.id, exc)

    async def _check_rate_limit(
        self, request: OrchestrateRequest, tenant: Tenant, conversation_id: str
    ) -> OrchestrateResult | None:
        limiter = self._rate_limiter or get_rate_limiter()
        decision = await limiter.check(tenant_id=tenant.id, plan=tenant.plan, client_ip=request.client_ip)
        if decision.allowed:
            return None
        scope, retry_after_s = decision.scope or "tenant", decision.retry_after_s
        self._emit(
            request,
            "rate_limit.exceeded",
            {"conversation_id": conversation_id, "scope": scope, "retry_after_s": retry_after_s},
        )
        return OrchestrateResult(
            reply=RATE_LIMITED_MESSAGE,
            confidence=0.0,
            citations=[],
            conversation_id=conversation_id,
            escalated=False,
            outcome="rate_limited",
            retry_after_s=retry_after_s,
        )

    async def _run_turn(
        self,
        request: OrchestrateRequest,
        tenant: Tenant,
        conversation: Conversation,
        user_message_id: str,
        on_delta: Callable[[str], None] | None,
        cancel_event: threading.Event,
    ) -> tuple[TurnState, TurnDependencies]:
        settings = get_settings()
        config = tenant.config
        options = request.options
        policies = [
            *await policies_repo.list_enabled_policies(self._session, tenant.id, "pre"),
            *await policies_repo.list_enabled_policies(self._session, tenant.id, "post"),
        ]
        procedures = await procedures_repo.list_enabled_procedures(self._session, tenant.id) if options.run_procedures else []
        connectors = await connectors_repo.list_enabled_connectors(self._session, tenant.id) if procedures else {}

        deps = TurnDependencies(
            session=self._session,
            llm=self._llm or get_llm_provider(request.request_id, cancel_event, model=config.model),
            embedder=self._embedder or get_embedding_client(),
            index=self._index or get_vector_index(),
            cache=self._cache or get_semantic_cache(),
            audit=self._audit,
            connector_client=self._connector_client or ConnectorClient(),
            cancel_event=cancel_event,
            policies=policies,
            procedures=procedures,
            connectors=connectors,
            on_delta=on_delta,
            user_message_id=user_message_id,
            confidence_threshold=(
                config.confidence_threshold
                if config.confidence_threshold is not None
                else settings.confidence_threshold
            ),
            top_k=config.top_k or settings.retrieval_top_k,
            max_history=(
                config.max_history_messages
                if config.max_history_messages is not None
                else settings.max_history_messages
            ),
            custom_system_prompt=config.custom_system_prompt,
            webhook_url=config.webhook_url,
            run_procedures=options.run_procedures,
            dry_run=options.dry_run,
        )
        state: TurnState = {
            "tenant_id": tenant.id,
            "conversation_id": conversation.id,
            "channel": request.channel,
            "user_id": request.user_id,
            "user_message": request.user_message,
            "effective_message": request.user_message,
            "history": [],
            "retrieved": [],
            "reply": None,
            "confidence": 0.0,
            "citations": [],
            "escalated": False,
            "cacheable": False,
        }
        return await run_graph(deps, state), deps

    async def _finalize(
        self,
        request: OrchestrateRequest,
        tenant: Tenant,
        conversation_id: str,
        final: TurnState,
        *,
        threshold: float,
    ) -> OrchestrateResult:
        outcome: Outcome = final.get("outcome") or "fallback"  # type: ignore[assignment]
        reply = final.get("reply") or fallback_message(request.channel)
        confidence = float(final.get("confidence") or 0.0)
        citations = list(final.get("citations") or [])
        escalated = bool(final.get("escalated"))
        violation = final.get("violation")

        # TX #2: the assistant reply exists only once it has cleared post policies.
        message = await messages_repo.add_message(
            self._session,
            tenant_id=tenant.id,
            conversation_id=conversation_id,
            role="assistant",
            content=reply,
            confidence=confidence,
            citations=citations,
        )
        # Knowledge answers count only when they cite a source; procedures stand on their own.
        grounded = bool(citations) or outcome == "procedure"
        resolved = False
        if escalated:
            await conversations_repo.update_status(self._session, tenant.id, conversation_id, "escalated")
        elif outcome in _ANSWER_OUTCOMES and grounded and confidence >= threshold:
            await conversations_repo.update_status(self._session, tenant.id, conversation_id, "resolved")
            resolved = True
        await self._session.commit()

        if escalated:
            self._emit(
                request,
                "conversation.escalated",
                {"conversation_id": conversation_id, "reason": final.get("escalation_reason"), "confidence": confidence},
            )
        elif resolved:
            self._emit(request, "conversation.resolved", {"conversation_id": conversation_id, "confidence": confidence})
        self._emit(
            request,
            "message.sent",
            {
                "conversation_id": conversation_id,
                "outcome": outcome,
                "confidence": confidence,
                "citations": len(citations),
            },
        )

        # Only freshly generated, confident replies are cached.
        if (
            outcome == "answered"
            and final.get("cacheable")
            and request.options.cache_writes
            and citations
            and confidence >= threshold
        ):
            cache = self._cache or get_semantic_cache()
            await cache.store(
                tenant.id,
                final.get("effective_message") or request.user_message,
                CachedResponse(content=reply, confidence=confidence, citations=citations),
                ttl_seconds=tenant.config.cache_ttl_seconds,
            )

        return OrchestrateResult(
            reply=reply,
            confidence=confidence,
            citations=citations,
            conversation_id=conversation_id,
            escalated=escalated,
            outcome=outcome,
            resolved=resolved,
            message_id=message.id,
            procedure=final.get("procedure"),
            policy_violations=[violation] if violation else [],
            escalation_reason=final.get("escalation_reason"),
        )

    async def _fallback(self, request: OrchestrateRequest, conversation_id: str, exc: Exception) -> OrchestrateResult:
        reply = fallback_message(request.channel)
        self._emit(
            request,
            "message.failed",
            {"conversation_id": conversation_id, "channel": request.channel, "error": type(exc).__name__},
        )
        message_id: str | None = None
        try:
            await self._session.rollback()
            message = await messages_repo.add_message(
                self._session,
                tenant_id=request.tenant_id,
                conversation_id=conversation_id,
                role="assistant",
                content=reply,
            )
            await self._session.commit()
            message_id = message.id
        except SQLAlchemyError:
            await self._session.rollback()
            logger.warning("orchestrate_fallback_persist_failed conversation_id=%s", conversation_id, exc_info=True)
        return OrchestrateResult(
            reply=reply,
            confidence=0.0,
            citations=[],
            conversation_id=conversation_id,
            escalated=False,
            outcome="fallback",
            message_id=message_id,
        )
