"""Custom exception classes for document processing and grounded chat."""
from typing import Any, Dict, Optional


class DocuchatError(Exception):
    """Base exception for every error surfaced by the service."""

    status_code: int = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationError(DocuchatError):
    """Raised when request input is missing or invalid."""

    status_code = 400


class FileTypeNotSupportedError(ValidationError):
    """Raised when an unsupported file type is encountered."""
    pass


class FileSizeExceededError(ValidationError):
    """Raised when file size exceeds the maximum allowed."""
    pass


class MissingCredentialError(ValidationError):
    """Raised when no provider credential is available for a request."""
    pass


class NoDocumentsError(ValidationError):
    """Raised when a collection has no completed document chunks to search."""
    pass


class NoRelevantContentError(ValidationError):
    """Raised when similarity search leaves nothing to ground an answer on."""
    pass


class AuthenticationError(DocuchatError):
    """Raised when the caller identity is missing."""

    status_code = 401


class NotFoundError(DocuchatError):
    """Raised when a resource does not exist or is not owned by the caller."""

    status_code = 404


class RateLimitExceededError(DocuchatError):
    """Raised when a caller exceeds the request budget of a route."""

    status_code = 429

    def __init__(self, message: str, limit: int, retry_after: int):
        super().__init__(message, details={"retryAfter": retry_after})
        self.limit = limit
        self.retry_after = retry_after

    def headers(self) -> Optional[Dict[str, str]]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
        }


class ProviderError(DocuchatError):
    """Raised when an external model provider call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message, details=body)
        # Transport failures carry no upstream status
        self.status_code = status_code if status_code and status_code >= 400 else 502
        self.body = body


class EmbeddingError(ProviderError):
    """Raised when embedding generation fails."""
    pass


class CompletionError(ProviderError):
    """Raised when the completion provider rejects a streaming request."""
    pass


class StreamTimeoutError(DocuchatError):
    """Raised when a completion stream exceeds its overall deadline."""

    status_code = 504


class DocumentProcessingError(DocuchatError):
    """Base exception for document processing errors."""
    pass


class ExtractionError(DocumentProcessingError):
    """Raised when text extraction from document fails."""
    pass


class DocumentEmptyError(DocumentProcessingError):
    """Raised when a document has no extractable content."""
    pass


class StorageError(DocumentProcessingError):
    """Raised when reading or writing an object in storage fails."""
    pass
