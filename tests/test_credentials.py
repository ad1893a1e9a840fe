"""Tests for credential manager module."""

import asyncio
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from meta_core.credentials import (
    Credential,
    CredentialManager,
    CredentialState,
    TokenStatus,
    USER_AGENT,
    normalize_scope_id,
)
from meta_core.errors import CredentialMissingError, RefreshFailedError, TransientNetworkError
from meta_core.settings import MetaSettings
from meta_core.storage import InMemoryKeyValueStore, UserSessionStore, UserTokenRecord

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
REDIRECT_URI = "https://example.com/callback"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


class GraphStub:
    """Routes mocked Graph API requests by path and records them."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def paths(self):
        return [request.url.path for request in self.requests]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        await asyncio.sleep(0)
        route = self.routes[request.url.path]
        if isinstance(route, httpx.Response):
            return httpx.Response(route.status_code, headers=route.headers, content=route.content)
        return route(request)


def me_ok():
    return httpx.Response(200, json={"id": "1001"})


def me_invalid():
    return httpx.Response(400, json={
        "error": {"message": "Error validating access token", "type": "OAuthException", "code": 190}
    })


def exchanged(token="long-lived", expires_in=5184000):
    return httpx.Response(200, json={"access_token": token, "token_type": "bearer", "expires_in": expires_in})


def build_manager(stub, clock, **credential_fields):
    """Create a manager whose HTTP client is backed by the stub."""
    fields = {"access_token": "short-lived"}
    fields.update(credential_fields)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return CredentialManager(Credential(**fields), http_client=http_client, clock=clock)


class TestNormalizeScopeId:
    """Tests for account id normalization."""

    def test_adds_prefix(self):
        assert normalize_scope_id("123") == "act_123"

    def test_idempotent(self):
        assert normalize_scope_id("act_123") == "act_123"
        assert normalize_scope_id(normalize_scope_id("123")) == "act_123"

    def test_strips_whitespace(self):
        assert normalize_scope_id(" 123 ") == "act_123"

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            normalize_scope_id("")


class TestTokenAccess:
    """Tests for current_token and auth_headers."""

    def test_missing_token(self):
        """Test that an unconfigured manager refuses to hand out headers."""
        manager = CredentialManager(Credential(), http_client=httpx.AsyncClient())

        assert manager.state == CredentialState.UNCONFIGURED
        with pytest.raises(CredentialMissingError):
            manager.current_token()
        with pytest.raises(CredentialMissingError):
            manager.auth_headers()

    def test_auth_headers(self):
        """Test bearer header and user agent marker."""
        manager = CredentialManager(Credential(access_token="tok"), http_client=httpx.AsyncClient())

        headers = manager.auth_headers()

        assert headers["Authorization"] == "Bearer tok"
        assert headers["User-Agent"] == USER_AGENT

    def test_status_hides_secrets(self):
        """Test status reports configuration flags without secrets."""
        manager = CredentialManager(
            Credential(access_token="tok", app_id="app", app_secret="shh"),
            http_client=httpx.AsyncClient(),
        )

        status = manager.get_status()

        assert status["state"] == "valid"
        assert status["token_configured"] is True
        assert status["app_secret_configured"] is True
        assert "tok" not in str(status.values())
        assert "shh" not in str(status.values())


class TestRefreshIfNeeded:
    """Tests for validation and refresh."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.mark.asyncio
    async def test_valid_token_cached_for_interval(self, clock):
        """Test that a successful validation is trusted until the interval passes."""
        stub = GraphStub({"/v23.0/me": me_ok()})
        manager = build_manager(stub, clock)

        assert await manager.refresh_if_needed() == "short-lived"
        assert await manager.refresh_if_needed() == "short-lived"
        assert stub.paths() == ["/v23.0/me"]

        clock.now += timedelta(seconds=301)
        await manager.refresh_if_needed()
        assert stub.paths() == ["/v23.0/me", "/v23.0/me"]

    @pytest.mark.asyncio
    async def test_validation_sends_bearer_token(self, clock):
        stub = GraphStub({"/v23.0/me": me_ok()})
        manager = build_manager(stub, clock)

        assert await manager.validate_token() == TokenStatus.VALID

        request = stub.requests[0]
        assert request.headers["Authorization"] == "Bearer short-lived"
        assert request.url.params["fields"] == "id"

    @pytest.mark.asyncio
    async def test_invalid_token_without_auto_refresh(self, clock):
        """Test that the current token is kept when auto-refresh is off."""
        stub = GraphStub({"/v23.0/me": me_invalid()})
        manager = build_manager(stub, clock, app_id="app", app_secret="shh")

        assert await manager.refresh_if_needed() == "short-lived"
        assert "/v23.0/oauth/access_token" not in stub.paths()

    @pytest.mark.asyncio
    async def test_invalid_token_exchanged(self, clock):
        """Test that an invalid token is exchanged when auto-refresh is on."""
        stub = GraphStub({"/v23.0/me": me_invalid(), "/v23.0/oauth/access_token": exchanged()})
        manager = build_manager(
            stub, clock, app_id="app", app_secret="shh", redirect_uri=REDIRECT_URI, auto_refresh=True
        )

        token = await manager.refresh_if_needed()

        assert token == "long-lived"
        assert manager.current_token() == "long-lived"
        assert manager.state == CredentialState.VALID
        assert manager.credential.expires_at == NOW + timedelta(seconds=5184000)

        params = stub.requests[-1].url.params
        assert params["grant_type"] == "fb_exchange_token"
        assert params["client_id"] == "app"
        assert params["fb_exchange_token"] == "short-lived"

    @pytest.mark.asyncio
    async def test_near_expiry_exchanged(self, clock):
        """Test that a valid token close to expiry is exchanged."""
        stub = GraphStub({"/v23.0/me": me_ok(), "/v23.0/oauth/access_token": exchanged()})
        manager = build_manager(
            stub, clock, app_id="app", app_secret="shh", redirect_uri=REDIRECT_URI, auto_refresh=True,
            expires_at=NOW + timedelta(hours=1),
        )

        assert manager.is_near_expiry() is True
        assert await manager.refresh_if_needed() == "long-lived"
        assert manager.is_near_expiry() is False

    @pytest.mark.asyncio
    async def test_missing_app_identity_fails_then_short_circuits(self, clock):
        """Test that a failed refresh is terminal without further network calls."""
        stub = GraphStub({"/v23.0/me": me_invalid()})
        manager = build_manager(stub, clock, auto_refresh=True)

        with pytest.raises(RefreshFailedError) as exc_info:
            await manager.refresh_if_needed()

        assert exc_info.value.error_detail.details["missing"] == ["app_id", "app_secret", "redirect_uri"]
        assert manager.state == CredentialState.FAILED
        calls_before = len(stub.requests)

        with pytest.raises(RefreshFailedError):
            await manager.refresh_if_needed()
        assert len(stub.requests) == calls_before

    @pytest.mark.asyncio
    async def test_exchange_requires_redirect_uri(self, clock):
        """Test that the exchange is not attempted without a redirect URI."""
        stub = GraphStub({"/v23.0/me": me_invalid(), "/v23.0/oauth/access_token": exchanged()})
        manager = build_manager(stub, clock, app_id="app", app_secret="shh", auto_refresh=True)

        with pytest.raises(RefreshFailedError) as exc_info:
            await manager.refresh_if_needed()

        assert exc_info.value.error_detail.details["missing"] == ["redirect_uri"]
        assert "/v23.0/oauth/access_token" not in stub.paths()
        assert manager.state == CredentialState.FAILED

    def test_naive_expiry_treated_as_utc(self, clock):
        """Test that expiries without a timezone compare against the UTC clock."""
        manager = build_manager(
            GraphStub({}), clock, expires_at=NOW.replace(tzinfo=None) + timedelta(hours=1)
        )

        assert manager.credential.expires_at == NOW + timedelta(hours=1)
        assert manager.is_near_expiry() is True

        manager.reconfigure("fresh-token", expires_at=NOW.replace(tzinfo=None) + timedelta(days=30))

        assert manager.credential.expires_at.tzinfo is not None
        assert manager.is_near_expiry() is False

    @pytest.mark.asyncio
    async def test_provider_rejects_exchange(self, clock):
        """Test that a rejected exchange ends in the failed state."""
        stub = GraphStub({
            "/v23.0/me": me_invalid(),
            "/v23.0/oauth/access_token": httpx.Response(400, json={
                "error": {"message": "Invalid client_secret", "code": 1}
            }),
        })
        manager = build_manager(
            stub, clock, app_id="app", app_secret="wrong", redirect_uri=REDIRECT_URI, auto_refresh=True
        )

        with pytest.raises(RefreshFailedError):
            await manager.refresh_if_needed()
        assert manager.state == CredentialState.FAILED

    @pytest.mark.asyncio
    async def test_reconfigure_leaves_failed_state(self, clock):
        """Test that installing a new token recovers from the failed state."""
        stub = GraphStub({"/v23.0/me": me_invalid()})
        manager = build_manager(stub, clock, auto_refresh=True)
        with pytest.raises(RefreshFailedError):
            await manager.refresh_if_needed()

        stub.routes["/v23.0/me"] = me_ok()
        manager.reconfigure("fresh-token")

        assert manager.state == CredentialState.VALID
        assert await manager.refresh_if_needed() == "fresh-token"

    @pytest.mark.asyncio
    async def test_unknown_status_is_not_cached(self, clock):
        """Test that an inconclusive validation is retried on the next call."""
        def unreachable(request):
            raise httpx.ConnectError("unreachable", request=request)

        stub = GraphStub({"/v23.0/me": unreachable})
        manager = build_manager(stub, clock)

        assert await manager.validate_token() == TokenStatus.UNKNOWN
        assert await manager.refresh_if_needed() == "short-lived"
        await manager.refresh_if_needed()

        assert stub.paths().count("/v23.0/me") == 3

    @pytest.mark.asyncio
    async def test_server_error_is_unknown(self, clock):
        stub = GraphStub({"/v23.0/me": httpx.Response(500, json={"error": {"message": "oops"}})})
        manager = build_manager(stub, clock)

        assert await manager.validate_token() == TokenStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_concurrent_refresh_exchanges_once(self, clock):
        """Test that concurrent callers share a single exchange."""
        stub = GraphStub({"/v23.0/me": me_invalid(), "/v23.0/oauth/access_token": exchanged()})
        manager = build_manager(
            stub, clock, app_id="app", app_secret="shh", redirect_uri=REDIRECT_URI, auto_refresh=True
        )

        tokens = await asyncio.gather(*(manager.refresh_if_needed() for _ in range(5)))

        assert tokens == ["long-lived"] * 5
        assert stub.paths().count("/v23.0/oauth/access_token") == 1

    @pytest.mark.asyncio
    async def test_mark_unverified_forces_check(self, clock):
        stub = GraphStub({"/v23.0/me": me_ok()})
        manager = build_manager(stub, clock)
        await manager.refresh_if_needed()

        manager.mark_unverified()
        await manager.refresh_if_needed()

        assert stub.paths() == ["/v23.0/me", "/v23.0/me"]


class TestOAuthHelpers:
    """Tests for OAuth URL, code exchange and token introspection."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    def test_generate_auth_url(self, clock):
        manager = build_manager(
            GraphStub({}), clock, app_id="app", redirect_uri="https://example.com/callback"
        )

        url = manager.generate_auth_url("state-123")

        parts = urlsplit(url)
        query = parse_qs(parts.query)
        assert parts.netloc == "www.facebook.com"
        assert parts.path == "/v23.0/dialog/oauth"
        assert query["client_id"] == ["app"]
        assert query["redirect_uri"] == ["https://example.com/callback"]
        assert query["scope"] == ["ads_management,ads_read,business_management"]
        assert query["state"] == ["state-123"]

    def test_generate_auth_url_requires_redirect(self, clock):
        manager = build_manager(GraphStub({}), clock, app_id="app")

        with pytest.raises(CredentialMissingError) as exc_info:
            manager.generate_auth_url("s")
        assert exc_info.value.error_detail.details["missing"] == ["redirect_uri"]

    @pytest.mark.asyncio
    async def test_exchange_code_for_token(self, clock):
        stub = GraphStub({"/v23.0/oauth/access_token": exchanged("user-token", expires_in=3600)})
        manager = build_manager(
            stub, clock, access_token=None, app_id="app", app_secret="shh",
            redirect_uri="https://example.com/callback",
        )

        token = await manager.exchange_code_for_token("auth-code")

        assert token == "user-token"
        assert manager.state == CredentialState.VALID
        assert stub.requests[0].url.params["code"] == "auth-code"

    @pytest.mark.asyncio
    async def test_get_token_info(self, clock):
        stub = GraphStub({"/v23.0/debug_token": httpx.Response(200, json={
            "data": {"app_id": "app", "is_valid": True, "scopes": ["ads_read"]}
        })})
        manager = build_manager(stub, clock, app_id="app", app_secret="shh")

        info = await manager.get_token_info()

        assert info["is_valid"] is True
        params = stub.requests[0].url.params
        assert params["input_token"] == "short-lived"
        assert params["access_token"] == "app|shh"

    @pytest.mark.asyncio
    async def test_get_token_info_transport_failure(self, clock):
        """Test that an unreachable debug_token endpoint surfaces a typed network error."""
        def unreachable(request):
            raise httpx.ConnectError("unreachable", request=request)

        stub = GraphStub({"/v23.0/debug_token": unreachable})
        manager = build_manager(stub, clock, app_id="app", app_secret="shh")

        with pytest.raises(TransientNetworkError) as exc_info:
            await manager.get_token_info()
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_get_token_info_requires_app_credentials(self, clock):
        manager = build_manager(GraphStub({}), clock)

        with pytest.raises(CredentialMissingError):
            await manager.get_token_info()

    def test_revoke(self, clock):
        manager = build_manager(GraphStub({}), clock)

        manager.revoke()

        assert manager.state == CredentialState.UNCONFIGURED
        with pytest.raises(CredentialMissingError):
            manager.current_token()


class TestForUser:
    """Tests for per-user managers backed by the session store."""

    @pytest.fixture
    def settings(self):
        return MetaSettings(_env_file=None, app_id="app", app_secret="shh", redirect_uri=REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_missing_user(self, settings):
        sessions = UserSessionStore(InMemoryKeyValueStore())

        assert await CredentialManager.for_user("ghost", sessions, settings) is None

    @pytest.mark.asyncio
    async def test_refreshed_token_written_back(self, settings):
        """Test that a refreshed token is persisted to the user's record."""
        sessions = UserSessionStore(InMemoryKeyValueStore())
        await sessions.store_user_tokens("u1", UserTokenRecord(access_token="old", scope=["ads_read"]))
        stub = GraphStub({"/v23.0/me": me_invalid(), "/v23.0/oauth/access_token": exchanged()})
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub))

        manager = await CredentialManager.for_user("u1", sessions, settings, http_client=http_client)
        await manager.refresh_if_needed()

        record = await sessions.get_user_tokens("u1")
        assert record.access_token == "long-lived"
        assert record.scope == ["ads_read"]
        assert record.expires_at is not None

    @pytest.mark.asyncio
    async def test_stored_naive_expiry_does_not_break_refresh(self, settings):
        """Test that a token record saved with a naive expiry still refreshes cleanly."""
        sessions = UserSessionStore(InMemoryKeyValueStore())
        naive_expiry = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(days=30)
        await sessions.store_user_tokens("u1", UserTokenRecord(access_token="old", expires_at=naive_expiry))
        stub = GraphStub({"/v23.0/me": me_ok()})
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub))

        manager = await CredentialManager.for_user("u1", sessions, settings, http_client=http_client)

        assert manager.credential.expires_at.tzinfo is not None
        assert await manager.refresh_if_needed() == "old"
        assert stub.paths() == ["/v23.0/me"]
