"""
Classify API Backend — Custom Exception Hierarchy
==================================================

What:  Application-specific exceptions for every error scenario.
How:   Each exception carries a user-facing message and an optional context
       dict. Global exception handlers (registered in main.py) turn them into
       structured JSON error responses with the right HTTP status code.
Who:   Raised by services, the inference gateway and dependencies.

Exception Hierarchy:
    ClassifyAPIError (base)
    ├── ValidationError              → 400 Bad Request
    ├── AuthenticationError          → 401 Unauthorized
    ├── ForbiddenError               → 403 Forbidden
    ├── NotFoundError                → 404 Not Found
    ├── ConflictError                → 409 Conflict
    ├── RateLimitExceededError       → 429 Too Many Requests
    ├── DatabaseError                → 500 Internal Server Error
    └── InferenceError               (inference gateway / Ollama failures)
        ├── ServiceUnavailableError  → 503 (probe failed, or gateway shut down)
        ├── ResourceNotReadyError    → 503 (model not pulled)
        ├── QueueFullError           → 503 (admission rejected, Retry-After)
        ├── QueueTimeoutError        → 408 (expired while queued)
        ├── TransportError           → 503 / 504 (network failure during call)
        │   └── UpstreamHTTPError    → 502 (Ollama answered with an error status)
        └── MalformedResponseError   → 502 (Ollama answered with garbage)

Inference errors are terminal: the gateway never retries them. Retry policy,
if any, belongs to the API client, guided by the Retry-After header.
"""

from typing import Any, Dict, Optional


class ClassifyAPIError(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged, returned only where noted)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(ClassifyAPIError):
    """
    Raised when client input fails business validation.

    Example response:
        {
            "error": "validation_error",
            "message": "The provided image data is empty or invalid",
            "details": {"field": "image"}
        }
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class AuthenticationError(ClassifyAPIError):
    """Missing, malformed or expired credentials."""

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ForbiddenError(ClassifyAPIError):
    """Authenticated, but not allowed to touch this resource."""

    def __init__(
        self,
        message: str = "You do not have access to this resource",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(ClassifyAPIError):
    """
    Raised when a requested resource does not exist.

    SQLAlchemy returns None for missing rows; the service layer converts
    that into NotFoundError so the handler can answer 404.
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ConflictError(ClassifyAPIError):
    """Raised on unique-constraint style conflicts (e.g. email already registered)."""

    def __init__(
        self,
        message: str = "Resource already exists",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(ClassifyAPIError):
    """
    Raised when database operations fail unexpectedly.

    The message returned to the client is always generic; SQL, constraint
    names and driver errors stay in the server log.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RateLimitExceededError(ClassifyAPIError):
    """Raised when a client exceeds the per-IP request rate limit."""

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


# ══════════════════════════════════════════════════════════════════════════
# Inference Errors
# ══════════════════════════════════════════════════════════════════════════


class InferenceError(ClassifyAPIError):
    """
    Base class for every failure of a unit of work run through the gateway.

    Class attributes drive the HTTP mapping in main.py so that one handler
    covers the whole family:
        status_code: HTTP status returned to the client
        error_code:  machine-readable `error` field in the response body
    """

    status_code = 503
    error_code = "inference_error"

    def __init__(
        self,
        message: str = "The classification service failed to process the request.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ServiceUnavailableError(InferenceError):
    """The availability probe failed: Ollama is down or unreachable."""

    error_code = "service_unavailable"

    def __init__(
        self,
        message: str = "Ollama service is not available. Please ensure Ollama is running.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ResourceNotReadyError(InferenceError):
    """Ollama answered the probe, but the configured model is not installed."""

    error_code = "model_not_ready"

    def __init__(self, model: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["model"] = model
        super().__init__(
            message=f"Model '{model}' is not available. Please run: ollama pull {model}",
            context=ctx,
        )
        self.model = model


class QueueFullError(InferenceError):
    """
    Admission rejected at submit time.

    Raised synchronously by InferenceGateway.submit(); the caller never
    waits. `retry_after` is a hint for the Retry-After header.
    """

    error_code = "queue_full"

    def __init__(self, retry_after: int = 30, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(
            message="Request queue is full. Please try again later.",
            context=ctx,
        )
        self.retry_after = retry_after


class QueueTimeoutError(InferenceError):
    """A queued request reached the head of the queue after its wait budget expired."""

    status_code = 408
    error_code = "queue_timeout"

    def __init__(self, waited_seconds: float, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["waited_seconds"] = round(waited_seconds, 2)
        super().__init__(
            message="Request timed out in queue. The classification service is busy, please try again.",
            context=ctx,
        )
        self.waited_seconds = waited_seconds


class TransportError(InferenceError):
    """
    Network-level failure during the generate call.

    `kind` is one of TRANSPORT_MESSAGES' keys. Callers branch on the class,
    the kind is for logs and the response body.
    """

    error_code = "transport_error"

    CONNECTION_REFUSED = "connection_refused"
    DNS_NOT_FOUND = "dns_not_found"
    NETWORK_UNREACHABLE = "network_unreachable"
    TIMEOUT = "timeout"
    GENERIC = "generic"

    TRANSPORT_MESSAGES = {
        CONNECTION_REFUSED: (
            "Cannot connect to Ollama service. Please ensure Ollama is running "
            "and accessible at the configured URL."
        ),
        DNS_NOT_FOUND: (
            "Ollama service URL not found. Please check your OLLAMA_API_URL configuration."
        ),
        NETWORK_UNREACHABLE: (
            "Network unreachable. Please check your network connection and "
            "Ollama service configuration."
        ),
        TIMEOUT: (
            "Request to Ollama service timed out. The image might be too large or "
            "complex, or the service may be overloaded."
        ),
        GENERIC: "Ollama service error. Please try again later.",
    }

    def __init__(
        self,
        kind: str = GENERIC,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["kind"] = kind
        super().__init__(
            message=message or self.TRANSPORT_MESSAGES.get(kind, self.TRANSPORT_MESSAGES[self.GENERIC]),
            context=ctx,
        )
        self.kind = kind
        if kind == self.TIMEOUT:
            self.status_code = 504


class UpstreamHTTPError(TransportError):
    """Ollama answered, but with an HTTP error status (404, 400, 5xx)."""

    status_code = 502
    error_code = "upstream_error"

    def __init__(self, upstream_status: int, context: Optional[Dict[str, Any]] = None):
        if upstream_status == 404:
            message = "Ollama API endpoint not found. Please check your Ollama installation and version."
        elif upstream_status == 400:
            message = "Ollama API rejected the request. The image or prompt may be invalid."
        elif upstream_status >= 500:
            message = "Ollama service is experiencing internal issues. Please try again later."
        else:
            message = f"Ollama API returned unexpected status {upstream_status}."
        ctx = context or {}
        ctx["upstream_status"] = upstream_status
        super().__init__(kind=self.GENERIC, message=message, context=ctx)
        self.upstream_status = upstream_status


class MalformedResponseError(InferenceError):
    """
    The generate call succeeded at transport level but the payload failed
    validation (empty body, non-200 status, missing or null `response`).
    Distinct from TransportError: the service answered, but with garbage.
    """

    status_code = 502
    error_code = "malformed_response"

    def __init__(
        self,
        message: str = "Ollama API returned an invalid response.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
