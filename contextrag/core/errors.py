from __future__ import annotations


class ContextRagError(Exception):
    """Base error for contextrag."""


class NonRetriableError(ContextRagError):
    """Failure the workflow engine must not retry."""


class PayloadValidationError(NonRetriableError):
    """Malformed event payload."""


class DocumentNotFoundError(NonRetriableError):
    """Source document is missing from storage."""


class UnsupportedContentError(NonRetriableError):
    """Document type cannot be processed (non-text extension or binary content)."""


class ProviderContractError(NonRetriableError):
    """Provider response violates its contract (count mismatch, empty output)."""


class BatchConsistencyError(NonRetriableError):
    """Signals in one embedding batch disagree on organization or namespace."""


class IngestionJobNotFoundError(NonRetriableError):
    """Counter update addressed to an ingestion job that does not exist."""


class EmbeddingTimeoutError(NonRetriableError):
    """Embedding result for a chunk did not arrive before the wait deadline.

    The timed-out wait is memoized, so a retry would only time out again.
    The ingest run recovers by reporting the chunk as failed.
    """


class ProviderConfigError(ContextRagError):
    """Missing or invalid provider configuration."""


class ProviderError(ContextRagError):
    """Transient model provider failure."""


class StorageError(ContextRagError):
    """Transient object storage failure."""


class SearchIndexError(ContextRagError):
    """Search index request failure."""


class WorkflowError(ContextRagError):
    """Workflow engine misuse (unknown function, duplicate registration)."""
