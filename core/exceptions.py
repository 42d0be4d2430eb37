"""
Custom exceptions for the migration pipeline with structured error context.

This module provides the exception hierarchy used throughout the
fetch -> reconcile -> transform -> load pipeline. Each exception carries
context information for debugging and for the run audit trail.

Exception Hierarchy:
    MigrationException (base)
    ├── ExtractionError
    │   └── APIExtractionError
    │       ├── SourceUnavailableError
    │       ├── NetworkError / RateLimitError (retryable)
    │       └── AuthenticationError / ResourceNotFoundError (non-retryable)
    ├── TransformationError
    │   └── ValidationError
    │       ├── HeterogeneousChunkError
    │       └── SchemaValidationError
    ├── LoadError
    │   ├── DatabaseError
    │   └── ChunkTimeoutError
    ├── ReconciliationError
    │   └── IncompleteReconciliationError
    ├── OracleError
    │   ├── OracleUnavailableError
    │   └── MalformedOracleResponseError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class MigrationException(Exception):
    """
    Base exception for all migration-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (entity, endpoint, table, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(MigrationException):
    """
    Mixin for errors that the transport layer may retry.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(MigrationException):
    """
    Mixin for errors that must NOT be retried.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Malformed input or oracle output
    - Resource not found (HTTP 404)
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(MigrationException):
    """Base exception for source data extraction failures."""
    pass


class APIExtractionError(ExtractionError):
    """
    Exception raised when source API extraction fails.

    Context should include:
        - endpoint: The API endpoint that failed
        - status_code: HTTP status code (if applicable)
        - response_body: Response body (truncated if large)
    """
    pass


class SourceUnavailableError(NonRetryableError, APIExtractionError):
    """
    The first page of a paginated collection could not be fetched.

    Without the first page there is no total count, so the whole
    traversal is aborted.
    """
    pass


class NetworkError(RetryableError, APIExtractionError):
    """Network-related errors that should be retried."""
    pass


class RateLimitError(RetryableError, APIExtractionError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, APIExtractionError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, APIExtractionError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(MigrationException):
    """Base exception for record transformation failures."""
    pass


class ValidationError(NonRetryableError, TransformationError):
    """
    Exception raised when input data fails structural validation.

    Context should include:
        - field_name / columns: What failed validation
        - validation_rule: The rule that was violated
    """
    pass


class HeterogeneousChunkError(ValidationError):
    """
    Records handed to the loader for one chunk do not share a column set.

    Context should include:
        - table_name: Target table
        - chunk_index: Index of the offending chunk
        - record_index: Index of the first record whose columns differ
        - expected_columns / actual_columns
    """
    pass


class SchemaValidationError(ValidationError):
    """A flow declaration or transformed record does not fit the expected shape."""
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(MigrationException):
    """Base exception for data loading failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, SELECT)
        - table_name: Name of the table
        - error_code: Database error code (if available)
    """
    pass


class ChunkTimeoutError(LoadError):
    """A chunk transaction did not finish within its time budget."""
    pass


# ============================================================================
# Reconciliation Errors
# ============================================================================

class ReconciliationError(MigrationException):
    """
    A reference dimension could not be reconciled into a usable mapping.

    Attributes:
        kind: ReconciliationErrorKind value reported by the engine
    """

    def __init__(
        self,
        message: str,
        kind: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.kind = kind
        self.context["kind"] = kind


class IncompleteReconciliationError(ReconciliationError):
    """
    The policy demands a complete mapping but the oracle reported missing items.

    Context carries the partial ``mapper`` and the ``missing`` records so the
    operator can create the absent reference rows before re-running.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, kind="incomplete_mapping", context=context)


class OracleError(MigrationException):
    """Base exception raised by reconciliation oracle adapters."""
    pass


class OracleUnavailableError(OracleError):
    """The oracle could not be reached or rejected the request."""
    pass


class MalformedOracleResponseError(NonRetryableError, OracleError):
    """The oracle answered with something that is not a JSON object."""
    pass
