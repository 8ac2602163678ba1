from __future__ import annotations


class SupportAIError(Exception):
    """Base error for SupportAI."""


class ProviderConfigError(SupportAIError):
    """Missing or invalid provider configuration."""


class ExtractionError(SupportAIError):
    """Source produced no usable text or could not be fetched."""


class ChunkingError(SupportAIError):
    """Chunking produced no chunks or was given invalid window parameters."""


class EmbeddingError(SupportAIError):
    """Embedding provider call failed or returned malformed vectors."""


class VectorIndexError(SupportAIError):
    """Vector index read or write failed."""


class GenerationError(SupportAIError):
    """Generation provider call failed."""


class GenerationCancelled(SupportAIError):
    """Generation stopped because the caller went away."""


class ProcedureExecutionError(SupportAIError):
    """A procedure step failed; remaining steps are skipped."""


class ConnectorError(ProcedureExecutionError):
    """Data connector call failed or the connector is misconfigured."""


class CacheError(SupportAIError):
    """Semantic cache backing store failure (always handled softly)."""


class DatabaseError(SupportAIError):
    """Database read/write failure."""


class TenantNotFoundError(SupportAIError):
    """Tenant could not be resolved."""


class ConversationNotFoundError(SupportAIError):
    """Conversation id does not exist for the tenant."""


class KnowledgeSourceNotFoundError(SupportAIError):
    """Knowledge source id does not exist for the tenant."""
