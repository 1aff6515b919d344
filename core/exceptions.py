"""
Custom exceptions for the integration framework with structured error context.

Every error carries a machine-readable ``code`` and a ``retryable`` flag so
the retry executor and the connectors can classify failures without
inspecting exception types.

Exception Hierarchy:
    IntegrationError (base: code, retryable)
    ├── ConfigurationError
    ├── TransportError
    │   ├── NetworkError
    │   ├── HTTPError
    │   └── RateLimitError
    ├── AuthError
    ├── TransformationError
    │   └── ValidationError
    ├── UploadError
    └── OperationCancelled
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class IntegrationError(Exception):
    """
    Base exception for all integration errors.

    Attributes:
        message: Human-readable error message
        code: Stable machine-readable error code
        retryable: Whether retrying the failed operation may succeed
        context: Additional context information (source, url, item id, ...)
        original_exception: The original exception that was caught (if any)
    """

    default_code = "INTEGRATION_ERROR"
    default_retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.code = code or self.default_code
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context = dict(context or {})
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception is not None:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with code and context."""
        base_msg = f"{self.__class__.__name__}[{self.code}]: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception is not None:
            base_msg += (
                f" | Caused by: {type(self.original_exception).__name__}: "
                f"{self.original_exception}"
            )

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


class ConfigurationError(IntegrationError):
    """Invalid or missing configuration for a component."""

    default_code = "INVALID_CONFIG"


# ============================================================================
# Transport Errors
# ============================================================================

class TransportError(IntegrationError):
    """
    Base exception for transport failures (REST, FTP, file system, webhook).

    Retryable unless stated otherwise; a transport that is not connected
    raises this with ``code="NOT_CONNECTED"`` and ``retryable=False``.
    """

    default_code = "TRANSPORT_ERROR"
    default_retryable = True


class NetworkError(TransportError):
    """
    Connection-level failure: refused, reset, DNS, timeout.

    Context should include:
        - url or host: The remote endpoint
        - timeout: Timeout in seconds (if applicable)
    """

    default_code = "NETWORK_ERROR"


class HTTPError(TransportError):
    """
    Non-success HTTP response.

    5xx responses are retryable, other statuses are terminal.
    """

    default_code = "HTTP_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        if retryable is None:
            retryable = status_code >= 500
        super().__init__(message, code, retryable, context, original_exception)
        self.status_code = status_code
        self.context["status_code"] = status_code


class RateLimitError(TransportError):
    """Rate limiting (HTTP 429). ``retry_after`` is the server hint in seconds."""

    default_code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message, code, True, context, original_exception)
        self.status_code = 429
        self.retry_after = retry_after
        if retry_after is not None:
            self.context["retry_after"] = retry_after


# ============================================================================
# Auth Errors
# ============================================================================

class AuthError(IntegrationError):
    """
    Authentication failure: rejected credentials (HTTP 401/403) or a failed
    token request.
    """

    default_code = "AUTH_ERROR"


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(IntegrationError):
    """A whole unit of input (file, page, payload) could not be transformed."""

    default_code = "TRANSFORM_ERROR"


class ValidationError(TransformationError):
    """
    A record or payload failed validation.

    Context should include:
        - item_id: Identifier of the offending record (if known)
        - errors: List of field-level problems
    """

    default_code = "VALIDATION_ERROR"


# ============================================================================
# Ingestion / Control Flow
# ============================================================================

class UploadError(IntegrationError):
    """The ingestion boundary rejected or failed an upload."""

    default_code = "UPLOAD_ERROR"


class OperationCancelled(IntegrationError):
    """The operation observed its cancellation signal and stopped."""

    default_code = "CANCELLED"
