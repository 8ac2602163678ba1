from __future__ import annotations

from supportai.domain.types import LengthConfig, PiiFilterConfig, Policy, ToneConfig, TopicFilterConfig
from supportai.services.policy_engine import (
    POLICY_BLOCKED_MESSAGE,
    POST_POLICY_FALLBACK_MESSAGE,
    REDACTED,
    evaluate,
    redact_pii,
)


def _policy(policy_id: str, policy_type: str, mode: str, config, *, priority: int = 100, enabled: bool = True) -> Policy:
    return Policy(
        id=policy_id,
        tenant_id="t1",
        name=f"policy {policy_id}",
        type=policy_type,
        mode=mode,
        config=config,
        enabled=enabled,
        priority=priority,
    )


def test_lower_priority_value_runs_first() -> None:
    policies = [
        _policy("b", "topic_filter", "pre", TopicFilterConfig(blocked_topics=["crypto"], message="second"), priority=20),
        _policy("a", "topic_filter", "pre", TopicFilterConfig(blocked_topics=["crypto"], message="first"), priority=10),
    ]

    decision = evaluate(policies, "Tell me about crypto", "pre")

    assert decision.passed is False
    assert decision.text == "first"
    assert decision.violation is not None
    assert decision.violation.policy_id == "a"
    assert decision.violation.reason == "blocked topic: crypto"


def test_default_messages_per_mode() -> None:
    pre = [_policy("p", "topic_filter", "pre", TopicFilterConfig(blocked_patterns=[r"\bcasino\b"]))]
    post = [_policy("q", "tone", "post", ToneConfig(block_uncertain=True))]

    assert evaluate(pre, "best casino deals", "pre").text == POLICY_BLOCKED_MESSAGE
    decision = evaluate(post, "I'm not sure, possibly tomorrow", "post")
    assert decision.passed is False
    assert decision.text == POST_POLICY_FALLBACK_MESSAGE
    assert decision.violation.reason == "uncertain tone"


def test_disabled_and_other_mode_policies_are_skipped() -> None:
    policies = [
        _policy("off", "topic_filter", "pre", TopicFilterConfig(blocked_topics=["refund"]), enabled=False),
        _policy("post", "topic_filter", "post", TopicFilterConfig(blocked_topics=["refund"])),
    ]
    decision = evaluate(policies, "I need a refund", "pre")
    assert decision.passed is True
    assert decision.text == "I need a refund"


def test_pii_redaction_transforms_text_for_later_policies() -> None:
    policies = [
        _policy("r", "pii_filter", "post", PiiFilterConfig(detect=["email"], action="redact"), priority=1),
        _policy("l", "length", "post", LengthConfig(max_length=40, truncate=True), priority=2),
    ]
    decision = evaluate(policies, "Write to jane.doe@example.com and someone from the team will reply soon", "post")

    assert decision.passed is True
    assert REDACTED in decision.text
    assert "jane.doe@example.com" not in decision.text
    assert len(decision.text) == 40


def test_pii_block_and_length_violations() -> None:
    block = [_policy("b", "pii_filter", "pre", PiiFilterConfig(detect=["email"]))]
    decision = evaluate(block, "my email is a@b.co", "pre")
    assert decision.passed is False
    assert decision.violation.reason == "contains email"

    too_long = [_policy("l", "length", "post", LengthConfig(max_length=5))]
    assert evaluate(too_long, "abcdefgh", "post").violation.reason == "too long (8 > 5)"
    too_short = [_policy("s", "length", "post", LengthConfig(min_length=10))]
    assert evaluate(too_short, "abc", "post").violation.reason == "too short (3 < 10)"


def test_allowed_topics_restrict_scope() -> None:
    policies = [_policy("t", "topic_filter", "pre", TopicFilterConfig(allowed_topics=["billing", "shipping"]))]
    assert evaluate(policies, "Question about billing", "pre").passed is True
    assert evaluate(policies, "What's the weather", "pre").violation.reason == "outside allowed topics"


def test_redact_pii_uses_every_redacting_policy() -> None:
    policies = [
        _policy("a", "pii_filter", "pre", PiiFilterConfig(detect=["email"], action="redact")),
        _policy("b", "pii_filter", "post", PiiFilterConfig(detect=["ssn"], action="redact")),
        _policy("c", "pii_filter", "pre", PiiFilterConfig(detect=["credit_card"], action="block")),
    ]
    redacted = redact_pii("mail me at x@y.io, ssn 123-45-6789", policies)
    assert "x@y.io" not in redacted
    assert "123-45-6789" not in redacted
    assert redact_pii("nothing sensitive", []) == "nothing sensitive"
