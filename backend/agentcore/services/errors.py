from __future__ import annotations


class ValidationError(ValueError):
    """Malformed definition or bad parameters; never retried."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class DuplicateDocument(ValueError):
    """A document with the same content hash already exists in the knowledge base."""

    def __init__(self, message: str, existing_document_id=None) -> None:
        super().__init__(message)
        self.existing_document_id = existing_document_id


class UnsupportedFormat(ValueError):
    """No parser is registered for the file type."""


class UnknownNodeType(ValueError):
    """Workflow node type has no registered handler."""


class DimensionMismatch(ValueError):
    """Vectors compared for similarity have different lengths."""


class NotFound(LookupError):
    """Requested entity does not exist."""


class RateLimitExceeded(RuntimeError):
    """Request window for (user, model) is exhausted."""

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ExternalCallFailure(RuntimeError):
    """LLM, embedding or vector backend call failed."""
