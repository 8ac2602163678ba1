from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any, Callable, Iterable

from supportai.domain.types import (
    LengthConfig,
    PiiFilterConfig,
    Policy,
    ToneConfig,
    TopicFilterConfig,
)


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

POLICY_BLOCKED_MESSAGE = (
    "I'm unable to process that request due to our content policies. "
    "Please rephrase your question or contact our support team directly."
)
POST_POLICY_FALLBACK_MESSAGE = (
    "I have an answer but it didn't pass our quality checks. Let me connect you with a human agent."
)

PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "email": re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
    "phone": re.compile(r"(\+?\d{1,3}[-.\s]?)?\(?\d{2,4}\)?[-.\s]?\d{3,4}[-.\s]?\d{3,4}"),
    "ssn": re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"),
    "credit_card": re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b"),
    "ip_address": re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),
}

UNCERTAIN_PHRASES: tuple[str, ...] = (
    "i'm not sure",
    "i don't know",
    "i am not certain",
    "i cannot determine",
    "it might be",
    "possibly",
    "i think maybe",
)


@dataclass(frozen=True)
class PolicyViolation:
    # A rejection is a value, never an exception.
    policy_id: str
    policy_name: str
    policy_type: str
    message: str
    reason: str

    def as_payload(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "policy_name": self.policy_name,
            "policy_type": self.policy_type,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class PolicyDecision:
    passed: bool
    text: str
    violation: PolicyViolation | None = None


# Evaluators return (reason, text): a reason means violation, otherwise text
# is the possibly transformed input for the next policy in the chain.
Evaluation = tuple[str | None, str]


def _check_topic_filter(text: str, config: TopicFilterConfig) -> Evaluation:
    lowered = text.lower()
    for topic in config.blocked_topics:
        if topic and topic.lower() in lowered:
            return f"blocked topic: {topic}", text
    for pattern in config.blocked_patterns:
        try:
            if re.search(pattern, text, re.IGNORECASE):
                return f"blocked pattern: {pattern}", text
        except re.error:
            logger.warning("policy_pattern_invalid pattern=%s", pattern)
    allowed = [topic.lower() for topic in config.allowed_topics if topic]
    if allowed and not any(topic in lowered for topic in allowed):
        return "outside allowed topics", text
    return None, text


def _redact(text: str, kinds: Iterable[str]) -> str:
    redacted = text
    for kind in kinds:
        pattern = PII_PATTERNS.get(kind)
        if pattern is not None:
            redacted = pattern.sub(REDACTED, redacted)
    return redacted


def _check_pii_filter(text: str, config: PiiFilterConfig) -> Evaluation:
    if config.action == "redact":
        return None, _redact(text, config.detect)
    for kind in config.detect:
        pattern = PII_PATTERNS.get(kind)
        if pattern is not None and pattern.search(text):
            return f"contains {kind.replace('_', ' ')}", text
    return None, text


def _check_tone(text: str, config: ToneConfig) -> Evaluation:
    lowered = text.lower()
    for phrase in config.blocked_phrases:
        if phrase and phrase.lower() in lowered:
            return f"blocked phrase: {phrase}", text
    if config.block_uncertain:
        for phrase in UNCERTAIN_PHRASES:
            if phrase in lowered:
                return "uncertain tone", text
    return None, text


def _check_length(text: str, config: LengthConfig) -> Evaluation:
    length = len(text)
    if config.min_length and length < config.min_length:
        return f"too short ({length} < {config.min_length})", text
    if config.max_length and length > config.max_length:
        if config.truncate:
            return None, text[: config.max_length]
        return f"too long ({length} > {config.max_length})", text
    return None, text


_EVALUATORS: dict[str, Callable[[str, Any], Evaluation]] = {
    "topic_filter": _check_topic_filter,
    "pii_filter": _check_pii_filter,
    "tone": _check_tone,
    "length": _check_length,
}


def default_message(mode: str) -> str:
    return POST_POLICY_FALLBACK_MESSAGE if mode == "post" else POLICY_BLOCKED_MESSAGE


def ordered_policies(policies: Iterable[Policy], mode: str) -> list[Policy]:
    # Ascending priority, ties broken by id so ordering is stable per tenant.
    selected = [policy for policy in policies if policy.enabled and policy.mode == mode]
    return sorted(selected, key=lambda policy: (policy.priority, policy.id))


def evaluate(policies: Iterable[Policy], text: str, mode: str) -> PolicyDecision:
    """Run the tenant's policies for one mode; the first violation wins."""
    current = text
    for policy in ordered_policies(policies, mode):
        evaluator = _EVALUATORS.get(policy.type)
        if evaluator is None:
            logger.warning("policy_type_unknown policy_id=%s type=%s", policy.id, policy.type)
            continue
        try:
            reason, transformed = evaluator(current, policy.config)
        except Exception:  # noqa: BLE001 - a broken policy must not take down the request path
            logger.warning(
                "policy_evaluation_failed policy_id=%s type=%s", policy.id, policy.type, exc_info=True
            )
            continue
        if reason is not None:
            message = getattr(policy.config, "message", None) or default_message(mode)
            violation = PolicyViolation(
                policy_id=policy.id,
                policy_name=policy.name,
                policy_type=policy.type,
                message=message,
                reason=reason,
            )
            return PolicyDecision(passed=False, text=message, violation=violation)
        current = transformed
    return PolicyDecision(passed=True, text=current)


def redact_pii(text: str, policies: Iterable[Policy]) -> str:
    # Applies every enabled redact-mode PII policy regardless of its mode.
    kinds: list[str] = []
    for policy in policies:
        if not policy.enabled or policy.type != "pii_filter":
            continue
        config = policy.config
        if isinstance(config, PiiFilterConfig) and config.action == "redact":
            kinds.extend(kind for kind in config.detect if kind not in kinds)
    return _redact(text, kinds) if kinds else text
