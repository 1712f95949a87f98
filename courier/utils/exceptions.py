"""
Courier Custom Exceptions
=========================

Error hierarchy for the ingestion service. Every error carries a code,
a context dict that ends up in structured logs, a short operator-facing
message and a recoverable flag. Per-source failures travel inside the
tick report as values of these types rather than being raised to the top.
"""

from datetime import timedelta
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(str, Enum):
    """Error codes for categorizing exceptions."""

    # Configuration (C)
    CONFIG_INVALID = "C001"
    CONFIG_MISSING = "C002"

    # Database (D)
    DATABASE_CONNECTION = "D001"
    DATABASE_CONSTRAINT = "D003"
    DATABASE_ERROR = "D006"

    # Feed fetching (F)
    FEED_INVALID_URL = "F001"
    FEED_FETCH_TIMEOUT = "F002"
    FEED_PARSE_ERROR = "F003"
    FEED_NETWORK_ERROR = "F004"
    FEED_RETRY_LATER = "F005"
    FEED_BAD_STATUS = "F006"

    # Ingestion (I)
    CRAWL_STATE_PERSIST = "I001"
    ITEM_UPSERT = "I002"
    SOURCE_CRASHED = "I003"
    SOURCE_FAILED = "I004"

    # Content (P)
    CONTENT_INVALID = "P001"

    # Search index (X)
    INDEX_UNAVAILABLE = "X001"
    INDEX_REJECTED = "X002"
    INDEX_FLUSH_FAILED = "X003"
    INDEX_DOCUMENT_FAILED = "X004"

    # Validation (V)
    VALIDATION_REQUIRED_FIELD = "V001"
    VALIDATION_INVALID_FORMAT = "V002"
    VALIDATION_OUT_OF_RANGE = "V003"

    # Resources (R)
    DUPLICATE_RESOURCE = "R001"
    RESOURCE_NOT_FOUND = "R002"

    # System (S)
    SYSTEM_PERMISSION_DENIED = "S002"
    SYSTEM_MEMORY_ERROR = "S004"


def _with_fields(context: Optional[Dict[str, Any]], **fields: Any) -> Dict[str, Any]:
    """Copy of ``context`` with the non-None ``fields`` added."""
    merged = dict(context or {})
    merged.update({k: v for k, v in fields.items() if v is not None})
    return merged


class CourierError(Exception):
    """Base exception for all Courier errors.

    Subclasses override the ``default_*`` class attributes instead of
    re-implementing ``__init__`` just to change defaults.
    """

    default_code: Optional[ErrorCode] = None
    default_recoverable = False
    default_user_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        recoverable: Optional[bool] = None,
    ):
        """
        Args:
            message: Technical error message for logging
            error_code: Categorized error code; falls back to ``default_code``
            context: Additional context information
            user_message: Short operator-facing message
            recoverable: Whether a later attempt may succeed
        """
        super().__init__(message)
        self.error_code = error_code or self.default_code
        self.context = context if context is not None else {}
        self.user_message = user_message or self._describe(message)
        self.recoverable = self.default_recoverable if recoverable is None else recoverable

    def _describe(self, message: str) -> str:
        return self.default_user_message or message

    def to_dict(self) -> Dict[str, Any]:
        """Flat representation used as ``extra`` in structured logs."""
        return {
            "error_type": type(self).__name__,
            "error_code": self.error_code.value if self.error_code else None,
            "error_message": str(self),
            "user_message": self.user_message,
            "context": self.context,
            "recoverable": self.recoverable,
        }

    def __str__(self) -> str:
        text = super().__str__()
        return f"[{self.error_code.value}] {text}" if self.error_code else text


class ConfigurationError(CourierError):
    """Invalid or missing settings."""

    default_code = ErrorCode.CONFIG_INVALID

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        kwargs["context"] = _with_fields(kwargs.get("context"), config_key=config_key)
        super().__init__(message, **kwargs)

    def _describe(self, message: str) -> str:
        return f"Configuration error: {message}"


class DatabaseError(CourierError):
    """SQLite failures; usually worth retrying on the next tick."""

    default_code = ErrorCode.DATABASE_CONNECTION
    default_recoverable = True
    default_user_message = "Database operation failed"

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        kwargs["context"] = _with_fields(kwargs.get("context"), query=query)
        super().__init__(message, **kwargs)


class DuplicateSourceError(DatabaseError):
    """Raised when registering a source URL that already exists."""

    default_code = ErrorCode.DUPLICATE_RESOURCE
    default_recoverable = False
    default_user_message = "Source already exists"

    def __init__(self, url: str, **kwargs):
        kwargs["context"] = _with_fields(kwargs.get("context"), source_url=url)
        super().__init__(f"Source already registered: {url}", **kwargs)
        self.url = url


class FeedFetchError(CourierError):
    """Base class for failures of a single conditional feed fetch.

    ``kind`` is what the orchestrator switches on: ``transient`` for
    network faults, ``retry_later`` when the server asked for a pause and
    ``fatal`` for everything the next attempt is unlikely to fix.
    """

    kind = "fatal"
    default_code = ErrorCode.FEED_BAD_STATUS
    default_recoverable = True

    def __init__(
        self,
        message: str,
        feed_url: Optional[str] = None,
        status: Optional[int] = None,
        **kwargs,
    ):
        kwargs["context"] = _with_fields(kwargs.get("context"), feed_url=feed_url, status=status)
        super().__init__(message, **kwargs)
        self.feed_url = feed_url
        self.status = status

    def _describe(self, message: str) -> str:
        return f"Feed fetch failed: {message}"


class TransientFetchError(FeedFetchError):
    """Network-level fault: timeout, reset, refused, unreachable."""

    kind = "transient"
    default_code = ErrorCode.FEED_NETWORK_ERROR


class RetryLaterError(FeedFetchError):
    """Server asked us to come back later (429 and retryable 5xx/408)."""

    kind = "retry_later"
    default_code = ErrorCode.FEED_RETRY_LATER

    def __init__(
        self,
        status: int,
        retry_after: Optional[timedelta] = None,
        feed_url: Optional[str] = None,
        **kwargs,
    ):
        message = f"server responded {status}"
        seconds = None
        if retry_after is not None:
            seconds = retry_after.total_seconds()
            message += f"; retry after {seconds:.0f}s"

        kwargs["context"] = _with_fields(kwargs.get("context"), retry_after_seconds=seconds)
        super().__init__(message, feed_url=feed_url, status=status, **kwargs)
        self.retry_after = retry_after


class FatalFetchError(FeedFetchError):
    """Unexpected status, unparsable body or unusable request."""

    kind = "fatal"
    default_recoverable = False

    def __init__(
        self,
        message: str,
        feed_url: Optional[str] = None,
        status: Optional[int] = None,
        body_excerpt: Optional[str] = None,
        **kwargs,
    ):
        kwargs["context"] = _with_fields(kwargs.get("context"), body_excerpt=body_excerpt or None)
        super().__init__(message, feed_url=feed_url, status=status, **kwargs)
        self.body_excerpt = body_excerpt


class ProcessingError(CourierError):
    """Something went wrong while ingesting one source."""

    default_code = ErrorCode.SOURCE_FAILED
    default_recoverable = True
    default_user_message = "Source processing failed"

    def __init__(self, message: str, source_id: Optional[str] = None, **kwargs):
        kwargs["context"] = _with_fields(kwargs.get("context"), source_id=source_id)
        super().__init__(message, **kwargs)
        self.source_id = source_id


class CrawlStatePersistError(ProcessingError):
    """Fetched successfully but the new crawl state could not be saved."""

    default_code = ErrorCode.CRAWL_STATE_PERSIST


class SourceCrashError(ProcessingError):
    """Unexpected failure while processing one source."""

    default_code = ErrorCode.SOURCE_CRASHED


class ItemUpsertError(ProcessingError):
    """A single feed item could not be stored."""

    default_code = ErrorCode.ITEM_UPSERT

    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        item_ref: Optional[str] = None,
        **kwargs,
    ):
        kwargs["context"] = _with_fields(kwargs.get("context"), item_ref=item_ref)
        super().__init__(message, source_id=source_id, **kwargs)
        self.item_ref = item_ref


class SourceProcessingError(ProcessingError):
    """Several errors from one source joined into one reportable error."""

    def __init__(self, errors: List[Exception], source_id: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(
            "; ".join(str(e) for e in self.errors),
            source_id=source_id,
            context={"error_count": len(self.errors)},
        )


class SearchIndexError(CourierError):
    """Search engine unreachable or refusing our requests."""

    default_code = ErrorCode.INDEX_UNAVAILABLE
    default_recoverable = True
    default_user_message = "Search index operation failed"

    def __init__(
        self,
        message: str,
        index_uid: Optional[str] = None,
        status: Optional[int] = None,
        **kwargs,
    ):
        kwargs["context"] = _with_fields(kwargs.get("context"), index_uid=index_uid, status=status)
        super().__init__(message, **kwargs)
        self.status = status


class IndexFlushError(SearchIndexError):
    """A bulk upsert of a pending batch failed."""

    default_code = ErrorCode.INDEX_FLUSH_FAILED

    def __init__(self, message: str, batch_size: int = 0, **kwargs):
        kwargs["context"] = _with_fields(kwargs.get("context"), batch_size=batch_size)
        super().__init__(message, **kwargs)


class IndexDocumentError(SearchIndexError):
    """A single-document upsert failed during batch fallback."""

    default_code = ErrorCode.INDEX_DOCUMENT_FAILED

    def __init__(self, message: str, document_id: str, **kwargs):
        kwargs["context"] = _with_fields(kwargs.get("context"), document_id=document_id)
        super().__init__(message, **kwargs)
        self.document_id = document_id


class ValidationError(CourierError):
    """Input that does not meet our requirements."""

    default_code = ErrorCode.VALIDATION_INVALID_FORMAT

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        kwargs["context"] = _with_fields(kwargs.get("context"), field_name=field_name)
        self.field_name = field_name
        super().__init__(message, **kwargs)

    def _describe(self, message: str) -> str:
        return f"Invalid {self.field_name or 'input'}: {message}"


class ContentValidationError(ValidationError):
    """Feed item content that cannot be turned into an entry."""

    default_code = ErrorCode.CONTENT_INVALID

    def __init__(self, message: str, content_type: Optional[str] = None, **kwargs):
        kwargs["context"] = _with_fields(kwargs.get("context"), content_type=content_type)
        super().__init__(message, **kwargs)

    def _describe(self, message: str) -> str:
        return f"Content validation failed: {message}"


# (exception type, code, operator message, recoverable) for handle_exception
_BUILTIN_TRANSLATIONS = (
    ((ConnectionError, TimeoutError), ErrorCode.FEED_NETWORK_ERROR, "Network connection failed", True),
    ((PermissionError,), ErrorCode.SYSTEM_PERMISSION_DENIED, "Access denied", False),
    ((FileNotFoundError,), ErrorCode.CONFIG_MISSING, "Required file missing", False),
    ((MemoryError,), ErrorCode.SYSTEM_MEMORY_ERROR, "System resources exhausted", True),
)


def handle_exception(
    exception: Exception,
    logger,
    operation: str,
    context: Optional[Dict[str, Any]] = None,
) -> CourierError:
    """Wrap an arbitrary exception in a CourierError and log it.

    Args:
        exception: Original exception
        logger: Logger instance for error logging
        operation: Operation that was being performed
        context: Additional context information

    Returns:
        The exception itself if it already is a CourierError, otherwise a
        CourierError categorized by the builtin exception type
    """
    if isinstance(exception, CourierError):
        error = exception
    else:
        error_context = _with_fields(
            context, operation=operation, original_exception_type=type(exception).__name__
        )
        error = CourierError(
            f"Unexpected error during {operation}: {exception}",
            context=error_context,
            user_message="An unexpected error occurred",
            recoverable=True,
        )
        for types, code, user_message, recoverable in _BUILTIN_TRANSLATIONS:
            if isinstance(exception, types):
                error = CourierError(
                    f"{user_message} during {operation}: {exception}",
                    error_code=code,
                    context=error_context,
                    user_message=user_message,
                    recoverable=recoverable,
                )
                break
        error.__cause__ = exception

    logger.error(f"Operation '{operation}' failed", extra=error.to_dict())
    return error


RETRYABLE_CODES = frozenset({
    ErrorCode.FEED_NETWORK_ERROR,
    ErrorCode.FEED_FETCH_TIMEOUT,
    ErrorCode.FEED_RETRY_LATER,
    ErrorCode.DATABASE_CONNECTION,
    ErrorCode.INDEX_UNAVAILABLE,
})


def is_retryable_error(exception: CourierError) -> bool:
    """True when the error is recoverable and of a kind that clears by itself."""
    return exception.recoverable and exception.error_code in RETRYABLE_CODES
