"""
Error taxonomy for persistence and vector operations.

Every failure surfaced by the repository, the storage strategies, the
embedding generators and the vector backends is one of these types:
- ConfigurationError: provider/dimension/required-field mismatch (fatal)
- ValidationError: bad entity name, oversized content, wrong vector length
- NotFoundError: missing model or entity
- ConflictError: exclusive access could not be acquired
- CorruptDataError: stored content could not be deserialized
- TransientError: timeout, throttling, network blip (retried)
- StorageError: permanent backend failure such as a permission error or a full disk
"""


class SemanticStoreError(Exception):
    """Base exception carrying operation and location context."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        location: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.location = location

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.location:
            context.append(f"location={self.location}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ConfigurationError(SemanticStoreError):
    """Raised when configuration is invalid. Never retried."""

    pass


class ValidationError(SemanticStoreError):
    """Raised when an entity or vector fails validation."""

    pass


class NotFoundError(SemanticStoreError):
    """Raised when a model or entity does not exist."""

    pass


class ConflictError(SemanticStoreError):
    """Raised when an exclusive lock is already held by another writer."""

    pass


class CorruptDataError(SemanticStoreError):
    """Raised when persisted content cannot be deserialized."""

    pass


class TransientError(SemanticStoreError):
    """Raised for timeouts, throttling and network failures."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        location: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, operation=operation, location=location)
        self.retry_after = retry_after


class StorageError(SemanticStoreError):
    """Raised when the storage medium refuses an operation. Never retried."""

    pass
