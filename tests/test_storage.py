"""Tests for session storage module."""

import json
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock
from meta_core.storage import (
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    SESSION_TTL_SECONDS,
    TOKEN_TTL_SECONDS,
    UserSession,
    UserSessionStore,
    UserTokenRecord,
)


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestInMemoryKeyValueStore:
    """Tests for InMemoryKeyValueStore."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return InMemoryKeyValueStore(clock=clock)

    @pytest.mark.asyncio
    async def test_set_get_delete(self, store):
        """Test basic round trip and deletion."""
        await store.set("k", {"a": 1})
        assert await store.get("k") == {"a": 1}

        await store.delete("k")
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_expiry_on_read(self, store, clock):
        """Test values disappear once their expiry passes."""
        await store.set("k", "v", ex=10)

        clock.now += 9
        assert await store.get("k") == "v"

        clock.now += 1
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_missing_key(self, store):
        """Test deleting an absent key is a no-op."""
        await store.delete("missing")


class TestRedisKeyValueStore:
    """Tests for RedisKeyValueStore with a mocked client."""

    @pytest.fixture
    def mock_redis(self):
        """Create mock Redis client."""
        return AsyncMock()

    @pytest.fixture
    def store(self, mock_redis):
        return RedisKeyValueStore(mock_redis)

    @pytest.mark.asyncio
    async def test_set_with_expiry_uses_setex(self, store, mock_redis):
        """Test expiring writes go through SETEX with JSON payloads."""
        await store.set("user_tokens:u1", {"access_token": "t"}, ex=60)

        mock_redis.setex.assert_awaited_once_with("user_tokens:u1", 60, json.dumps({"access_token": "t"}))
        mock_redis.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_set_without_expiry(self, store, mock_redis):
        """Test non-expiring writes use SET."""
        await store.set("k", [1, 2])

        mock_redis.set.assert_awaited_once_with("k", "[1, 2]")

    @pytest.mark.asyncio
    async def test_get_decodes_bytes(self, store, mock_redis):
        """Test stored bytes are JSON-decoded."""
        mock_redis.get = AsyncMock(side_effect=lambda key: {
            "k": b'{"a": 1}',
        }.get(key, None))

        assert await store.get("k") == {"a": 1}
        assert await store.get("other") is None

    @pytest.mark.asyncio
    async def test_delete(self, store, mock_redis):
        await store.delete("k")

        mock_redis.delete.assert_awaited_once_with("k")


class TestUserSessionStore:
    """Tests for UserSessionStore."""

    @pytest.fixture
    def backend(self):
        return InMemoryKeyValueStore()

    @pytest.fixture
    def sessions(self, backend):
        return UserSessionStore(backend)

    @pytest.mark.asyncio
    async def test_session_round_trip_touches_last_used(self, sessions):
        """Test sessions are stored and last_used is refreshed on read."""
        stale = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await sessions.store_user_session(
            UserSession(user_id="u1", name="Dana", meta_user_id="99", last_used=stale)
        )

        session = await sessions.get_user_session("u1")

        assert session.user_id == "u1"
        assert session.meta_user_id == "99"
        assert session.last_used > stale

        stored_again = await sessions.get_user_session("u1")
        assert stored_again.last_used >= session.last_used

    @pytest.mark.asyncio
    async def test_missing_session(self, sessions):
        assert await sessions.get_user_session("nobody") is None

    @pytest.mark.asyncio
    async def test_tokens_stamped_on_write(self, sessions):
        """Test token records receive updated_at when stored."""
        await sessions.store_user_tokens(
            "u1", UserTokenRecord(access_token="tok", scope=["ads_read"])
        )

        tokens = await sessions.get_user_tokens("u1")

        assert tokens.access_token == "tok"
        assert tokens.scope == ["ads_read"]
        assert tokens.updated_at is not None

    @pytest.mark.asyncio
    async def test_delete_user_data(self, sessions):
        """Test both session and tokens are removed."""
        await sessions.store_user_session(UserSession(user_id="u1"))
        await sessions.store_user_tokens("u1", UserTokenRecord(access_token="tok"))

        await sessions.delete_user_data("u1")

        assert await sessions.get_user_session("u1") is None
        assert await sessions.get_user_tokens("u1") is None

    @pytest.mark.asyncio
    async def test_key_layout_and_expiry(self):
        """Test records are written under prefixed keys with their TTLs."""
        backend = AsyncMock()
        sessions = UserSessionStore(backend)

        await sessions.store_user_session(UserSession(user_id="u1"))
        await sessions.store_user_tokens("u1", UserTokenRecord(access_token="tok"))

        keys = [(c.args[0], c.kwargs["ex"]) for c in backend.set.await_args_list]
        assert keys == [
            ("user_session:u1", SESSION_TTL_SECONDS),
            ("user_tokens:u1", TOKEN_TTL_SECONDS),
        ]
