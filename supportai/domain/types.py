from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


TenantPlan = Literal["trial", "growth", "enterprise"]
Channel = Literal["web", "email", "whatsapp", "sms", "voice"]
ConversationStatus = Literal["active", "resolved", "escalated"]
SourceType = Literal["file", "url", "manual"]
SourceStatus = Literal["processing", "ready", "failed"]
MessageRole = Literal["user", "assistant"]
PolicyMode = Literal["pre", "post"]
PolicyType = Literal["topic_filter", "pii_filter", "tone", "length"]
PiiKind = Literal["email", "phone", "ssn", "credit_card", "ip_address"]
HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]

CHANNELS: tuple[str, ...] = ("web", "email", "whatsapp", "sms", "voice")


class TenantConfig(BaseModel):
    # Unknown keys survive round trips so dashboard-only settings are not lost.
    model_config = ConfigDict(extra="allow")

    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    max_history_messages: int | None = Field(default=None, ge=0)
    custom_system_prompt: str | None = None
    model: str | None = None
    cache_ttl_seconds: int | None = Field(default=None, gt=0)
    top_k: int | None = Field(default=None, ge=1, le=50)
    webhook_url: str | None = None


# Policy configs. The discriminator is injected from the policy row's type column.


class TopicFilterConfig(BaseModel):
    type: Literal["topic_filter"] = "topic_filter"
    blocked_topics: list[str] = Field(default_factory=list)
    blocked_patterns: list[str] = Field(default_factory=list)
    allowed_topics: list[str] = Field(default_factory=list)
    message: str | None = None


class PiiFilterConfig(BaseModel):
    type: Literal["pii_filter"] = "pii_filter"
    detect: list[PiiKind] = Field(default_factory=list)
    action: Literal["block", "redact"] = "block"
    message: str | None = None


class ToneConfig(BaseModel):
    type: Literal["tone"] = "tone"
    blocked_phrases: list[str] = Field(default_factory=list)
    block_uncertain: bool = False
    message: str | None = None


class LengthConfig(BaseModel):
    type: Literal["length"] = "length"
    min_length: int | None = Field(default=None, ge=0)
    max_length: int | None = Field(default=None, ge=1)
    truncate: bool = False
    message: str | None = None


PolicyConfig = Annotated[
    Union[TopicFilterConfig, PiiFilterConfig, ToneConfig, LengthConfig],
    Field(discriminator="type"),
]


# Procedure triggers and steps.


class ProcedureTrigger(BaseModel):
    type: Literal["keyword", "intent", "manual"] = "keyword"
    condition: str = ""


class MessageStep(BaseModel):
    type: Literal["message"] = "message"
    name: str | None = None
    template: str


class ApiCallStep(BaseModel):
    type: Literal["api_call"] = "api_call"
    name: str | None = None
    connector_id: str
    endpoint: str
    params: dict[str, str] = Field(default_factory=dict)
    # variable name -> JSON path in the response body, e.g. "orders[0].status"
    response_mapping: dict[str, str] = Field(default_factory=dict)


class DataLookupStep(BaseModel):
    type: Literal["data_lookup"] = "data_lookup"
    name: str | None = None
    connector_id: str
    endpoint: str
    params: dict[str, str] = Field(default_factory=dict)
    response_mapping: dict[str, str] = Field(default_factory=dict)


class NotifyStep(BaseModel):
    type: Literal["notify"] = "notify"
    name: str | None = None
    action: Literal["escalate", "webhook", "audit"] = "escalate"
    target: str | None = None
    message: str | None = None
    # Forces the step to fail; used to rehearse handover paths.
    fail: bool = False


class ConditionalStep(BaseModel):
    type: Literal["conditional"] = "conditional"
    name: str | None = None
    condition: str
    on_false: Literal["stop", "skip_next"] = "stop"


class ApprovalStep(BaseModel):
    type: Literal["approval"] = "approval"
    name: str | None = None
    approver: str | None = None
    message: str | None = None


ProcedureStep = Annotated[
    Union[MessageStep, ApiCallStep, DataLookupStep, NotifyStep, ConditionalStep, ApprovalStep],
    Field(discriminator="type"),
]


# Connector auth, stored with secrets encrypted.


class NoAuth(BaseModel):
    type: Literal["none"] = "none"


class ApiKeyAuth(BaseModel):
    type: Literal["api_key"] = "api_key"
    api_key: str
    header_name: str = "Authorization"


class BasicAuth(BaseModel):
    type: Literal["basic"] = "basic"
    username: str
    password: str = ""


class OAuthAuth(BaseModel):
    type: Literal["oauth"] = "oauth"
    access_token: str


ConnectorAuth = Annotated[
    Union[NoAuth, ApiKeyAuth, BasicAuth, OAuthAuth],
    Field(discriminator="type"),
]


class ConnectorEndpoint(BaseModel):
    name: str
    method: HttpMethod = "GET"
    path: str
    headers: dict[str, str] = Field(default_factory=dict)


class ScenarioExpectation(BaseModel):
    resolved: bool
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


policy_config_adapter: TypeAdapter[Any] = TypeAdapter(PolicyConfig)
procedure_steps_adapter: TypeAdapter[list[Any]] = TypeAdapter(list[ProcedureStep])
connector_auth_adapter: TypeAdapter[Any] = TypeAdapter(ConnectorAuth)
connector_endpoints_adapter: TypeAdapter[list[ConnectorEndpoint]] = TypeAdapter(list[ConnectorEndpoint])


def parse_policy_config(policy_type: str, raw: dict[str, Any] | None) -> Any:
    return policy_config_adapter.validate_python({**(raw or {}), "type": policy_type})


def parse_procedure_steps(raw: list[dict[str, Any]] | None) -> list[Any]:
    return procedure_steps_adapter.validate_python(raw or [])


def parse_connector_auth(raw: dict[str, Any] | None) -> Any:
    return connector_auth_adapter.validate_python(raw or {"type": "none"})


def dump_model(value: BaseModel) -> dict[str, Any]:
    return value.model_dump(mode="json", exclude_none=True)


# Typed entities handed to business logic by the repositories.


@dataclass(frozen=True)
class Tenant:
    id: str
    name: str
    plan: TenantPlan
    config: TenantConfig
    created_at: datetime | None = None


@dataclass(frozen=True)
class KnowledgeSource:
    id: str
    tenant_id: str
    type: SourceType
    status: SourceStatus
    version: int
    title: str | None
    file_name: str | None
    url: str | None
    storage_path: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Conversation:
    id: str
    tenant_id: str
    channel: Channel
    status: ConversationStatus
    session_key: str | None
    resolved_at: datetime | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MessageRecord:
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    confidence: float | None
    citations: list[str]
    created_at: datetime | None


@dataclass(frozen=True)
class Policy:
    id: str
    tenant_id: str
    name: str
    type: PolicyType
    mode: PolicyMode
    config: Any
    enabled: bool = True
    priority: int = 100


@dataclass(frozen=True)
class Procedure:
    id: str
    tenant_id: str
    name: str
    trigger: ProcedureTrigger
    steps: list[Any]
    enabled: bool = True
    priority: int = 100
    version: int = 1
    created_at: datetime | None = None


@dataclass(frozen=True)
class DataConnector:
    id: str
    tenant_id: str
    name: str
    provider: str
    base_url: str
    auth: Any
    endpoints: list[ConnectorEndpoint]
    enabled: bool = True

    def endpoint(self, name: str) -> ConnectorEndpoint | None:
        for item in self.endpoints:
            if item.name == name:
                return item
        return None


@dataclass(frozen=True)
class TestScenario:
    __test__ = False

    id: str
    tenant_id: str
    name: str
    messages: list[str]
    expected: ScenarioExpectation
    last_run_at: datetime | None = None
