"""
Custom exceptions for the migration pipeline with structured error context.

This module provides the exception hierarchy used by the sheet sources,
the field mapper, the loaders, the batch processor and the migration
controller. Each exception carries context information for debugging
and for the operator log.

Exception Hierarchy:
    MigrationException (base)
    ├── ExtractionError
    │   └── SheetExtractionError
    │       ├── NetworkError
    │       ├── RateLimitError
    │       ├── MalformedResponseError
    │       ├── AuthenticationError
    │       └── ResourceNotFoundError
    ├── TransformationError
    │   ├── ValidationError
    │   │   └── CoordinateRangeError
    │   └── MissingKeyError
    ├── LoadError
    │   ├── DatabaseError
    │   ├── UpsertError
    │   └── SchemaEvolutionError
    ├── CheckpointError
    ├── BatchCallError
    ├── InvalidTransitionError
    └── RetryableError / NonRetryableError (mixins)

    AdminAuthError sits outside the pipeline tree: it is raised by the
    admin surface before any migration state is touched.
"""

from typing import Optional, Dict, Any
from datetime import datetime


class MigrationException(Exception):
    """
    Base exception for all migration-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (sheet, offset, cue, etc.)
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
        """Convert exception to dictionary for logging/API payloads."""
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
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Server errors (HTTP 5xx)
    - Unparseable response bodies
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
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Unknown sheet (HTTP 404)
    - Invalid record data
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(MigrationException):
    """Base exception for source data extraction failures."""
    pass


class SheetExtractionError(ExtractionError):
    """
    Exception raised when reading a sheet from the spreadsheet source fails.

    Context should include:
        - sheet_name: The sheet being read
        - api_url: The endpoint that failed (without credentials)
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of attempts made
    """
    pass


class NetworkError(RetryableError, SheetExtractionError):
    """Network-related errors that should be retried."""
    pass


class RateLimitError(RetryableError, SheetExtractionError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class MalformedResponseError(RetryableError, SheetExtractionError):
    """
    A response body could not be parsed as JSON.

    The raw body is kept (truncated) so the operator can see what the
    server actually returned.
    """

    def __init__(
        self,
        message: str,
        raw_body: str = "",
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.raw_body = raw_body[:500]
        self.context["raw_body"] = self.raw_body


class AuthenticationError(NonRetryableError, SheetExtractionError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, SheetExtractionError):
    """Unknown spreadsheet or sheet (HTTP 404); not retried."""
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(MigrationException):
    """Base exception for record transformation failures."""
    pass


class ValidationError(NonRetryableError, TransformationError):
    """
    Exception raised when a field value fails validation.

    Context should include:
        - field_name: Normalised name of the field
        - field_value: Value that failed validation
        - validation_rule: The rule that was violated
    """
    pass


class CoordinateRangeError(ValidationError):
    """A latitude or longitude outside the valid range."""
    pass


class MissingKeyError(NonRetryableError, TransformationError):
    """A record has no resolvable CUE."""
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(MigrationException):
    """Base exception for target store failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (SELECT, INSERT, UPDATE, DELETE)
        - table_name: Name of the table
    """
    pass


class UpsertError(LoadError):
    """
    Exception raised when an upsert of a single record fails.

    Context should include:
        - cue: Key of the record being upserted
        - table_name: Target table
    """
    pass


class SchemaEvolutionError(LoadError):
    """Registering a newly seen source column failed."""
    pass


# ============================================================================
# Checkpoint / Controller Errors
# ============================================================================

class CheckpointError(MigrationException):
    """
    Exception raised when reading or writing the migration checkpoint fails.

    Context should include:
        - operation: read, write or reset
    """
    pass


class BatchCallError(RetryableError):
    """
    One batch call issued by the migration controller failed.

    Context should include:
        - start_index: Offset of the batch
        - batch_size: Requested size
        - status_code: HTTP status (remote calls only)
    """
    pass


class InvalidTransitionError(MigrationException):
    """The controller was asked for a state change its current state forbids."""
    pass


# ============================================================================
# Authentication
# ============================================================================

class AdminAuthError(NonRetryableError):
    """An admin request carried a missing or invalid token."""
    pass
