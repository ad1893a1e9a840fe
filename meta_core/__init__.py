"""Core modules for the Meta Ads API client runtime."""

from meta_core.errors import (
    ErrorCategory,
    MetaAPIError,
    CredentialMissingError,
    RefreshFailedError,
    QuotaExceededError,
    TransientNetworkError,
    ProviderServerError,
    ProviderRateLimitedError,
    ProviderAuthInvalidError,
    ProviderValidationError,
    ProviderPermanentError,
    ExhaustedRetriesError,
    classify_response,
    to_error_result,
)
from meta_core.settings import MetaSettings, get_settings
from meta_core.quota import QuotaTracker, QuotaTier, QuotaTierName, CallCost, QUOTA_TIERS
from meta_core.backoff import BackoffExecutor, BackoffPolicy, RetryStats
from meta_core.pagination import PaginatedResult, PaginationNormalizer
from meta_core.credentials import (
    Credential,
    CredentialManager,
    CredentialState,
    TokenStatus,
    normalize_scope_id,
)
from meta_core.storage import (
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    UserSession,
    UserSessionStore,
    UserTokenRecord,
)
from meta_core.client import MetaAPIClient, create_meta_api_client

__all__ = [
    # Errors
    "ErrorCategory",
    "MetaAPIError",
    "CredentialMissingError",
    "RefreshFailedError",
    "QuotaExceededError",
    "TransientNetworkError",
    "ProviderServerError",
    "ProviderRateLimitedError",
    "ProviderAuthInvalidError",
    "ProviderValidationError",
    "ProviderPermanentError",
    "ExhaustedRetriesError",
    "classify_response",
    "to_error_result",
    # Settings
    "MetaSettings",
    "get_settings",
    # Quota
    "QuotaTracker",
    "QuotaTier",
    "QuotaTierName",
    "CallCost",
    "QUOTA_TIERS",
    # Backoff
    "BackoffExecutor",
    "BackoffPolicy",
    "RetryStats",
    # Pagination
    "PaginatedResult",
    "PaginationNormalizer",
    # Credentials
    "Credential",
    "CredentialManager",
    "CredentialState",
    "TokenStatus",
    "normalize_scope_id",
    # Storage
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "UserSession",
    "UserSessionStore",
    "UserTokenRecord",
    # Client
    "MetaAPIClient",
    "create_meta_api_client",
]
