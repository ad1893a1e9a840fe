"""
Credential Manager for Meta access tokens.

Owns the active access token, its validation and long-lived exchange,
OAuth helpers, and the headers that authenticate outbound calls.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from meta_core.backoff import decode_response_body
from meta_core.errors import (
    CredentialMissingError,
    ErrorCategory,
    RefreshFailedError,
    classify_response,
    classify_transport_error,
)
from meta_core.settings import MetaSettings
from meta_core.storage import UserSessionStore, ensure_utc

logger = logging.getLogger(__name__)


ACCOUNT_PREFIX = "act_"
USER_AGENT = "meta-ads-runtime/0.1.0"
OAUTH_DIALOG_BASE = "https://www.facebook.com"
DEFAULT_OAUTH_SCOPES: List[str] = ["ads_management", "ads_read", "business_management"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_scope_id(account_id: str) -> str:
    """
    Canonicalize an ad account id to its act_-prefixed form.

    Args:
        account_id: Raw ("123") or prefixed ("act_123") account id

    Returns:
        Prefixed account id; already-prefixed ids are returned unchanged
    """
    account_id = str(account_id).strip()
    if not account_id:
        raise ValueError("Account id must not be empty")
    if account_id.startswith(ACCOUNT_PREFIX):
        return account_id
    return f"{ACCOUNT_PREFIX}{account_id}"


class CredentialState(str, Enum):
    """Lifecycle state of the active credential."""

    UNCONFIGURED = "unconfigured"
    VALID = "valid"
    NEAR_EXPIRY = "near_expiry"
    REFRESHING = "refreshing"
    FAILED = "failed"


class TokenStatus(str, Enum):
    """Result of a token introspection call."""

    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN = "unknown"


@dataclass
class Credential:
    """Access token plus the application identity needed to manage it."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    app_id: Optional[str] = None
    app_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    auto_refresh: bool = False
    api_version: str = "v23.0"
    base_url: str = "https://graph.facebook.com"

    def __post_init__(self) -> None:
        self.expires_at = ensure_utc(self.expires_at)

    @property
    def graph_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.api_version}"


TokenSaver = Callable[[Credential], Awaitable[None]]


class CredentialManager:
    """
    Manages one caller's Meta credential.

    Refresh is serialized with a lock: a caller that waited on a refresh
    started by someone else sees the fresh token and returns without a
    second exchange.
    """

    def __init__(
        self,
        credential: Credential,
        http_client: Optional[httpx.AsyncClient] = None,
        token_saver: Optional[TokenSaver] = None,
        refresh_threshold_seconds: float = 86400.0,
        validation_interval_seconds: float = 300.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize Credential Manager.

        Args:
            credential: Initial credential
            http_client: Shared async HTTP client (one is created if omitted)
            token_saver: Coroutine persisting refreshed credentials
            refresh_threshold_seconds: Remaining lifetime that counts as near expiry
            validation_interval_seconds: How long a successful validation is trusted
            clock: Source of the current UTC time
        """
        self.credential = credential
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=30.0)
        self._token_saver = token_saver
        self.refresh_threshold = timedelta(seconds=refresh_threshold_seconds)
        self.validation_interval = timedelta(seconds=validation_interval_seconds)
        self._clock = clock
        self._refresh_lock = asyncio.Lock()
        self._validated_at: Optional[datetime] = None
        self.state = CredentialState.VALID if credential.access_token else CredentialState.UNCONFIGURED
        logger.info(
            f"CredentialManager initialized (state={self.state.value}, "
            f"auto_refresh={credential.auto_refresh}, app_id configured={bool(credential.app_id)})"
        )

    @classmethod
    def from_settings(
        cls,
        settings: MetaSettings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "CredentialManager":
        """
        Build the single-tenant manager from configuration.

        Args:
            settings: Runtime settings
            http_client: Shared async HTTP client

        Returns:
            Configured CredentialManager
        """
        credential = Credential(
            access_token=settings.access_token,
            app_id=settings.app_id,
            app_secret=settings.app_secret,
            redirect_uri=settings.redirect_uri,
            auto_refresh=settings.auto_refresh,
            api_version=settings.api_version,
            base_url=settings.base_url,
        )
        return cls(
            credential,
            http_client=http_client,
            refresh_threshold_seconds=settings.refresh_threshold_seconds,
            validation_interval_seconds=settings.validation_interval_seconds,
        )

    @classmethod
    async def for_user(
        cls,
        user_id: str,
        session_store: UserSessionStore,
        settings: MetaSettings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> Optional["CredentialManager"]:
        """
        Build a manager from a user's stored tokens.

        Refreshed tokens are written back to the store.

        Args:
            user_id: User identifier
            session_store: Per-user token storage
            settings: Runtime settings (application identity, endpoint)
            http_client: Shared async HTTP client

        Returns:
            CredentialManager, or None if the user has no stored tokens
        """
        tokens = await session_store.get_user_tokens(user_id)
        if tokens is None:
            logger.warning(f"No stored tokens for user {user_id}")
            return None

        credential = Credential(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            app_id=settings.app_id,
            app_secret=settings.app_secret,
            redirect_uri=settings.redirect_uri,
            auto_refresh=True,
            api_version=settings.api_version,
            base_url=settings.base_url,
        )

        async def save(updated: Credential) -> None:
            record = tokens.model_copy(update={
                "access_token": updated.access_token,
                "refresh_token": updated.refresh_token,
                "expires_at": updated.expires_at,
            })
            await session_store.store_user_tokens(user_id, record)

        return cls(
            credential,
            http_client=http_client,
            token_saver=save,
            refresh_threshold_seconds=settings.refresh_threshold_seconds,
            validation_interval_seconds=settings.validation_interval_seconds,
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._owns_client:
            await self._http.aclose()

    # Token access

    def current_token(self) -> str:
        """
        Get the active access token.

        Raises:
            CredentialMissingError: If no token is configured
        """
        if not self.credential.access_token:
            raise CredentialMissingError(
                "No Meta access token configured. Set META_ACCESS_TOKEN or complete the OAuth flow."
            )
        return self.credential.access_token

    def auth_headers(self) -> Dict[str, str]:
        """
        Headers authenticating an outbound call.

        Returns:
            Bearer authorization plus the client user agent
        """
        return {
            "Authorization": f"Bearer {self.current_token()}",
            "User-Agent": USER_AGENT,
        }

    def normalize_scope_id(self, account_id: str) -> str:
        """Canonicalize an ad account id (see module-level normalize_scope_id)."""
        return normalize_scope_id(account_id)

    def is_near_expiry(self) -> bool:
        """Whether the token expires within the refresh threshold."""
        expires_at = ensure_utc(self.credential.expires_at)
        if expires_at is None:
            return False
        return expires_at - ensure_utc(self._clock()) <= self.refresh_threshold

    def mark_unverified(self) -> None:
        """Forget the last successful validation so the next call re-checks the token."""
        self._validated_at = None

    def _needs_check(self) -> bool:
        if self.credential.auto_refresh and self.is_near_expiry():
            return True
        if self._validated_at is None:
            return True
        return self._clock() - self._validated_at >= self.validation_interval

    # Refresh

    async def refresh_if_needed(self) -> str:
        """
        Ensure the token is live, exchanging it when required.

        Returns:
            The access token to use

        Raises:
            CredentialMissingError: If no token is configured
            RefreshFailedError: If the exchange failed now or earlier
        """
        if self.state == CredentialState.FAILED:
            raise RefreshFailedError(
                "Token refresh previously failed; reconfigure the access token",
                details={"state": self.state.value},
            )

        token = self.current_token()
        if not self._needs_check():
            return token

        async with self._refresh_lock:
            if self.state == CredentialState.FAILED:
                raise RefreshFailedError(
                    "Token refresh previously failed; reconfigure the access token",
                    details={"state": self.state.value},
                )
            if self.credential.access_token != token or not self._needs_check():
                logger.debug("Token already refreshed by a concurrent caller")
                return self.current_token()

            return await self._check_and_refresh(token)

    async def _check_and_refresh(self, token: str) -> str:
        status = await self.validate_token()

        if status == TokenStatus.UNKNOWN:
            logger.warning("Token validity could not be confirmed; using current token")
            return token

        near_expiry = self.is_near_expiry()
        if status == TokenStatus.VALID and not near_expiry:
            self.state = CredentialState.VALID
            self._validated_at = self._clock()
            return token

        if status == TokenStatus.VALID:
            self.state = CredentialState.NEAR_EXPIRY

        if not self.credential.auto_refresh:
            if status == TokenStatus.INVALID:
                logger.warning("Access token is invalid and auto-refresh is disabled")
            else:
                self._validated_at = self._clock()
                logger.info("Access token is near expiry and auto-refresh is disabled")
            return token

        logger.warning(f"Refreshing access token (status={status.value}, near_expiry={near_expiry})")
        self.state = CredentialState.REFRESHING
        try:
            return await self.exchange_for_long_lived_token()
        except RefreshFailedError:
            self.state = CredentialState.FAILED
            raise

    async def validate_token(self) -> TokenStatus:
        """
        Introspect the token with a lightweight /me call.

        Returns:
            VALID or INVALID when the provider answered conclusively,
            UNKNOWN on transport failures or unrelated errors
        """
        url = f"{self.credential.graph_url}/me"
        try:
            response = await self._http.get(url, params={"fields": "id"}, headers=self.auth_headers())
        except httpx.TransportError as e:
            logger.warning(f"Token validation request failed: {e}")
            return TokenStatus.UNKNOWN

        if response.is_success:
            body = decode_response_body(response)
            return TokenStatus.VALID if isinstance(body, dict) and body.get("id") else TokenStatus.UNKNOWN

        error = classify_response(response.status_code, decode_response_body(response), "GET me")
        if error.category == ErrorCategory.AUTHENTICATION_INVALID:
            logger.warning(f"Access token rejected by provider: {error}")
            return TokenStatus.INVALID

        logger.warning(f"Token validation inconclusive ({error.category.value}): {error}")
        return TokenStatus.UNKNOWN

    async def exchange_for_long_lived_token(self) -> str:
        """
        Exchange the current token for a long-lived one.

        Returns:
            The new access token

        Raises:
            RefreshFailedError: Missing app identity or provider rejection
        """
        missing = [
            name for name, value in (
                ("app_id", self.credential.app_id),
                ("app_secret", self.credential.app_secret),
                ("redirect_uri", self.credential.redirect_uri),
            ) if not value
        ]
        if missing:
            raise RefreshFailedError(
                f"Cannot exchange token: missing {', '.join(missing)}. "
                "Set META_APP_ID, META_APP_SECRET and META_REDIRECT_URI.",
                details={"missing": missing},
            )

        params = {
            "grant_type": "fb_exchange_token",
            "client_id": self.credential.app_id,
            "client_secret": self.credential.app_secret,
            "fb_exchange_token": self.current_token(),
        }
        body = await self._token_endpoint(params, "exchange")
        return await self._install_token(body)

    async def exchange_code_for_token(self, code: str) -> str:
        """
        Trade an OAuth authorization code for an access token and install it.

        Args:
            code: Code from the OAuth redirect

        Returns:
            The new access token
        """
        self._require_oauth_config(need_secret=True)
        params = {
            "client_id": self.credential.app_id,
            "client_secret": self.credential.app_secret,
            "redirect_uri": self.credential.redirect_uri,
            "code": code,
        }
        body = await self._token_endpoint(params, "code exchange")
        return await self._install_token(body)

    async def _token_endpoint(self, params: Dict[str, Any], purpose: str) -> Dict[str, Any]:
        url = f"{self.credential.graph_url}/oauth/access_token"
        try:
            response = await self._http.get(url, params=params, headers={"User-Agent": USER_AGENT})
        except httpx.TransportError as e:
            raise RefreshFailedError(f"Token {purpose} request failed: {e}") from e

        body = decode_response_body(response)
        if not response.is_success or not isinstance(body, dict) or not body.get("access_token"):
            error = classify_response(response.status_code, body, "GET oauth/access_token")
            raise RefreshFailedError(
                f"Token {purpose} rejected: {error}",
                details={"provider_error": error.provider_error, "http_status": response.status_code},
            )
        return body

    async def _install_token(self, body: Dict[str, Any]) -> str:
        expires_in = body.get("expires_in")
        now = self._clock()
        self.credential.access_token = body["access_token"]
        self.credential.expires_at = now + timedelta(seconds=int(expires_in)) if expires_in else None
        self.state = CredentialState.VALID
        self._validated_at = now
        logger.info(
            f"Installed new access token (expires_at={self.credential.expires_at.isoformat() if self.credential.expires_at else 'unknown'})"
        )

        if self._token_saver is not None:
            try:
                await self._token_saver(self.credential)
            except Exception as e:
                logger.error(f"Failed to persist refreshed token: {e}")

        return self.credential.access_token

    # Introspection and OAuth

    async def get_token_info(self) -> Dict[str, Any]:
        """
        Fetch token metadata from /debug_token.

        Returns:
            Provider token data (app_id, scopes, expires_at, is_valid, ...)
        """
        if not (self.credential.app_id and self.credential.app_secret):
            raise CredentialMissingError("META_APP_ID and META_APP_SECRET are required to inspect tokens")

        url = f"{self.credential.graph_url}/debug_token"
        params = {
            "input_token": self.current_token(),
            "access_token": f"{self.credential.app_id}|{self.credential.app_secret}",
        }
        try:
            response = await self._http.get(url, params=params, headers={"User-Agent": USER_AGENT})
        except httpx.TransportError as e:
            raise classify_transport_error(e, "GET debug_token") from e
        body = decode_response_body(response)
        if not response.is_success:
            raise classify_response(response.status_code, body, "GET debug_token", response.headers)
        return body.get("data", {}) if isinstance(body, dict) else {}

    def generate_auth_url(self, state: str, scopes: Optional[List[str]] = None) -> str:
        """
        Build the OAuth dialog URL.

        Args:
            state: CSRF state parameter
            scopes: Permissions to request (defaults to ads management scopes)

        Returns:
            Absolute dialog URL
        """
        self._require_oauth_config(need_secret=False)
        params = {
            "client_id": self.credential.app_id,
            "redirect_uri": self.credential.redirect_uri,
            "scope": ",".join(scopes or DEFAULT_OAUTH_SCOPES),
            "response_type": "code",
            "state": state,
        }
        return f"{OAUTH_DIALOG_BASE}/{self.credential.api_version}/dialog/oauth?{urlencode(params)}"

    def _require_oauth_config(self, need_secret: bool) -> None:
        required = [("app_id", self.credential.app_id), ("redirect_uri", self.credential.redirect_uri)]
        if need_secret:
            required.append(("app_secret", self.credential.app_secret))
        missing = [name for name, value in required if not value]
        if missing:
            raise CredentialMissingError(
                f"OAuth requires {', '.join(missing)} to be configured",
                details={"missing": missing},
            )

    # Reconfiguration

    def reconfigure(
        self,
        access_token: str,
        expires_at: Optional[datetime] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        """
        Install a new token, leaving any failed state.

        Args:
            access_token: New access token
            expires_at: Expiry, if known
            refresh_token: Optional refresh token
        """
        self.credential.access_token = access_token
        self.credential.expires_at = ensure_utc(expires_at)
        self.credential.refresh_token = refresh_token
        self._validated_at = None
        self.state = CredentialState.VALID if access_token else CredentialState.UNCONFIGURED
        logger.info(f"Credential reconfigured (state={self.state.value})")

    def revoke(self) -> None:
        """Drop the token locally; calls fail with CredentialMissingError until reconfigured."""
        self.credential.access_token = None
        self.credential.refresh_token = None
        self.credential.expires_at = None
        self._validated_at = None
        self.state = CredentialState.UNCONFIGURED
        logger.info("Credential revoked")

    def get_status(self) -> Dict[str, Any]:
        """
        Describe the credential without exposing secrets.

        Returns:
            Dictionary with state and configuration flags
        """
        expires_at = self.credential.expires_at
        return {
            "state": self.state.value,
            "token_configured": bool(self.credential.access_token),
            "expires_at": expires_at.isoformat() if expires_at else None,
            "near_expiry": self.is_near_expiry(),
            "auto_refresh": self.credential.auto_refresh,
            "app_id_configured": bool(self.credential.app_id),
            "app_secret_configured": bool(self.credential.app_secret),
            "redirect_uri_configured": bool(self.credential.redirect_uri),
            "api_version": self.credential.api_version,
        }


