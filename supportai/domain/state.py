from __future__ import annotations

from typing import Any, Optional, TypedDict


class TurnState(TypedDict, total=False):
    tenant_id: str
    conversation_id: str
    channel: str
    user_id: Optional[str]
    user_message: str
    # Message after pre-policy transforms and PII redaction.
    effective_message: str
    history: list[dict[str, Any]]
    retrieved: list[dict[str, Any]]
    reply: Optional[str]
    confidence: float
    citations: list[str]
    outcome: str
    escalated: bool
    escalation_reason: Optional[str]
    violation: Optional[dict[str, Any]]
    procedure: Optional[dict[str, Any]]
    cacheable: bool
