from __future__ import annotations

from typing import Literal, TypedDict


class DeltaEvent(TypedDict):
    type: Literal["delta"]
    content: str


class DoneEvent(TypedDict):
    type: Literal["done"]
    conversation_id: str
    confidence: float
    citations: list[str]


class EscalatedEvent(TypedDict):
    type: Literal["escalated"]
    message: str
    conversation_id: str


class BlockedEvent(TypedDict):
    type: Literal["blocked"]
    message: str


class ErrorEvent(TypedDict):
    type: Literal["error"]
    message: str
