"""
Error taxonomy and classification for Meta Graph API calls.

Provides typed errors, provider error-code mapping and the structured
error result handed back to agents.
"""

from enum import Enum
from typing import Optional, Dict, Any, Mapping
from dataclasses import dataclass


class ErrorCategory(str, Enum):
    """Error category classification."""

    CREDENTIAL_MISSING = "credential_missing"
    REFRESH_FAILED = "refresh_failed"
    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSIENT_NETWORK = "transient_network"
    PROVIDER_SERVER_ERROR = "provider_server_error"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION_INVALID = "authentication_invalid"
    VALIDATION = "validation"
    PERMANENT_PROVIDER_ERROR = "permanent_provider_error"
    EXHAUSTED_RETRIES = "exhausted_retries"


@dataclass
class ErrorDetail:
    """Detailed error information."""

    category: ErrorCategory
    code: str
    message: str
    http_status: int
    retryable: bool
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API response."""
        result = {
            "category": self.category.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


class MetaAPIError(Exception):
    """Base exception for all Meta API runtime errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        code: str,
        http_status: int = 500,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
        provider_error: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(message)
        self.error_detail = ErrorDetail(
            category=category,
            code=code,
            message=message,
            http_status=http_status,
            retryable=retryable,
            details=details or {}
        )
        self.operation = operation
        self.attempts = 1
        self.provider_error: Dict[str, Any] = dict(provider_error or {})

    @property
    def category(self) -> ErrorCategory:
        return self.error_detail.category

    @property
    def retryable(self) -> bool:
        return self.error_detail.retryable

    @property
    def http_status(self) -> int:
        return self.error_detail.http_status

    @property
    def provider_code(self) -> Optional[int]:
        return self.provider_error.get("code")

    @property
    def provider_subcode(self) -> Optional[int]:
        return self.provider_error.get("error_subcode")

    @property
    def provider_type(self) -> Optional[str]:
        return self.provider_error.get("type")

    @property
    def fbtrace_id(self) -> Optional[str]:
        return self.provider_error.get("fbtrace_id")


class CredentialMissingError(MetaAPIError):
    """No access token is configured."""

    def __init__(self, message: str = "No Meta access token configured", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.CREDENTIAL_MISSING,
            code="CREDENTIAL_MISSING",
            http_status=401,
            retryable=False,
            details=details
        )


class RefreshFailedError(MetaAPIError):
    """Token refresh or long-lived exchange failed."""

    def __init__(self, message: str = "Token refresh failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.REFRESH_FAILED,
            code="REFRESH_FAILED",
            http_status=401,
            retryable=False,
            details=details
        )


class QuotaExceededError(MetaAPIError):
    """Local quota window is blocked beyond the allowed wait."""

    def __init__(
        self,
        message: str = "Quota exceeded",
        scope_key: Optional[str] = None,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        error_details = details or {}
        if scope_key:
            error_details["scope_key"] = scope_key
        if retry_after is not None:
            error_details["retry_after"] = round(retry_after, 3)

        super().__init__(
            message=message,
            category=ErrorCategory.QUOTA_EXCEEDED,
            code="QUOTA_EXCEEDED",
            http_status=429,
            retryable=False,
            details=error_details
        )
        self.scope_key = scope_key
        self.retry_after = retry_after


class TransientNetworkError(MetaAPIError):
    """Transport failure or timeout before a response was received."""

    def __init__(self, message: str = "Network error", operation: Optional[str] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.TRANSIENT_NETWORK,
            code="TRANSIENT_NETWORK_ERROR",
            http_status=503,
            retryable=True,
            operation=operation
        )


class ProviderServerError(MetaAPIError):
    """HTTP 5xx or a provider error flagged as transient."""

    def __init__(
        self,
        message: str = "Meta API server error",
        http_status: int = 500,
        provider_error: Optional[Mapping[str, Any]] = None,
        operation: Optional[str] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.PROVIDER_SERVER_ERROR,
            code="PROVIDER_SERVER_ERROR",
            http_status=http_status,
            retryable=True,
            operation=operation,
            provider_error=provider_error
        )


class ProviderRateLimitedError(MetaAPIError):
    """Provider-side throttling (HTTP 429 or a throttling error code)."""

    def __init__(
        self,
        message: str = "Meta API rate limit reached",
        http_status: int = 429,
        retry_after: Optional[float] = None,
        provider_error: Optional[Mapping[str, Any]] = None,
        operation: Optional[str] = None
    ):
        details = {"retry_after": retry_after} if retry_after is not None else None
        super().__init__(
            message=message,
            category=ErrorCategory.RATE_LIMITED,
            code="PROVIDER_RATE_LIMITED",
            http_status=http_status,
            retryable=True,
            details=details,
            operation=operation,
            provider_error=provider_error
        )
        self.retry_after = retry_after


class ProviderAuthInvalidError(MetaAPIError):
    """Access token rejected by the provider."""

    def __init__(
        self,
        message: str = "Meta access token is invalid",
        http_status: int = 401,
        provider_error: Optional[Mapping[str, Any]] = None,
        operation: Optional[str] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.AUTHENTICATION_INVALID,
            code="PROVIDER_AUTH_INVALID",
            http_status=http_status,
            retryable=False,
            operation=operation,
            provider_error=provider_error
        )


class ProviderValidationError(MetaAPIError):
    """Request rejected because of invalid parameters."""

    def __init__(
        self,
        message: str = "Invalid parameter",
        http_status: int = 400,
        provider_error: Optional[Mapping[str, Any]] = None,
        operation: Optional[str] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            code="PROVIDER_VALIDATION_ERROR",
            http_status=http_status,
            retryable=False,
            operation=operation,
            provider_error=provider_error
        )


class ProviderPermanentError(MetaAPIError):
    """Any other non-retryable provider failure (permissions, not found, ...)."""

    def __init__(
        self,
        message: str = "Meta API request failed",
        http_status: int = 400,
        provider_error: Optional[Mapping[str, Any]] = None,
        operation: Optional[str] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.PERMANENT_PROVIDER_ERROR,
            code="PROVIDER_PERMANENT_ERROR",
            http_status=http_status,
            retryable=False,
            operation=operation,
            provider_error=provider_error
        )


class ExhaustedRetriesError(MetaAPIError):
    """Retryable failure persisted through every allowed attempt."""

    def __init__(self, last_error: MetaAPIError, attempts: int):
        super().__init__(
            message=f"Gave up after {attempts} attempts: {last_error}",
            category=ErrorCategory.EXHAUSTED_RETRIES,
            code="EXHAUSTED_RETRIES",
            http_status=last_error.http_status,
            retryable=False,
            details={
                "attempts": attempts,
                "last_error": last_error.error_detail.to_dict(),
            },
            operation=last_error.operation,
            provider_error=last_error.provider_error
        )
        self.last_error = last_error
        self.attempts = attempts


# Meta Graph API error codes
TRANSIENT_CODES = frozenset({1, 2})
RATE_LIMIT_CODES = frozenset({4, 17, 32, 613} | set(range(80000, 80015)))
AUTH_INVALID_CODES = frozenset({102, 190, 463, 467})
VALIDATION_CODES = frozenset({100})
PERMISSION_CODES = frozenset({10} | set(range(200, 300)))

# "No payment method" subcode returned on ad set / ad creation
PAYMENT_SUBCODES = frozenset({1359188})


def _parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def classify_response(
    status_code: int,
    body: Any,
    operation: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> MetaAPIError:
    """
    Map a failed HTTP response to a typed error.

    Args:
        status_code: HTTP status of the response
        body: Decoded JSON body (or raw text when not JSON)
        operation: "METHOD endpoint" description of the call
        headers: Response headers (used for Retry-After)

    Returns:
        Classified MetaAPIError instance
    """
    error_obj: Dict[str, Any] = {}
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error_obj = body["error"]

    code = error_obj.get("code")
    message = error_obj.get("message") or (
        body if isinstance(body, str) and body else f"HTTP {status_code}"
    )

    if code in AUTH_INVALID_CODES or status_code == 401:
        return ProviderAuthInvalidError(message, status_code, error_obj, operation)

    if code in RATE_LIMIT_CODES or status_code == 429:
        return ProviderRateLimitedError(
            message,
            status_code,
            retry_after=_parse_retry_after(headers),
            provider_error=error_obj,
            operation=operation,
        )

    if status_code >= 500 or code in TRANSIENT_CODES or error_obj.get("is_transient"):
        return ProviderServerError(message, status_code, error_obj, operation)

    if code in VALIDATION_CODES or (status_code == 400 and error_obj.get("error_user_msg")):
        return ProviderValidationError(message, status_code, error_obj, operation)

    return ProviderPermanentError(message, status_code, error_obj, operation)


def classify_transport_error(exception: Exception, operation: Optional[str] = None) -> MetaAPIError:
    """
    Map a transport-level exception (connect failure, timeout) to our error.

    Args:
        exception: Exception raised by the HTTP transport
        operation: "METHOD endpoint" description of the call

    Returns:
        TransientNetworkError instance
    """
    message = str(exception) or exception.__class__.__name__
    return TransientNetworkError(f"{exception.__class__.__name__}: {message}", operation)


def _hint_for(error: MetaAPIError) -> Optional[str]:
    text = str(error.provider_error.get("message") or error).lower()

    if (
        error.provider_subcode in PAYMENT_SUBCODES
        or any(word in text for word in ("payment", "billing", "funding"))
    ):
        return (
            "This appears to be a payment method issue. "
            "Add a valid payment method in Meta Ads Manager."
        )

    if error.provider_code in PERMISSION_CODES or "permission" in text:
        return (
            "This appears to be a permissions issue. "
            "You may need admin access to the ad account."
        )

    return None


def to_error_result(error: MetaAPIError) -> Dict[str, Any]:
    """
    Build the structured error result returned to an agent.

    Args:
        error: Terminal error raised by the runtime

    Returns:
        Dictionary with classification, provider fields and optional hint
    """
    result: Dict[str, Any] = {
        "success": False,
        "error": error.error_detail.to_dict(),
        "attempts": error.attempts,
    }
    if error.operation:
        result["operation"] = error.operation
    if error.provider_error:
        result["provider_error"] = {
            key: error.provider_error.get(key)
            for key in ("message", "type", "code", "error_subcode", "fbtrace_id")
            if key in error.provider_error
        }

    hint = _hint_for(error)
    if hint:
        result["hint"] = hint

    return result
