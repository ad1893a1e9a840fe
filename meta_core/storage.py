"""
Per-user session and token storage for multi-tenant deployments.

Backends implement a small key-value interface; Redis is used in
production and an in-memory store for single-process use and tests.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


SESSION_PREFIX = "user_session:"
TOKEN_PREFIX = "user_tokens:"
SESSION_TTL_SECONDS = 7 * 24 * 60 * 60  # 7 days
TOKEN_TTL_SECONDS = 60 * 24 * 60 * 60  # 60 days


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so expiry arithmetic never mixes kinds."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class KeyValueStore(Protocol):
    """Minimal async key-value interface for session backends."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class RedisKeyValueStore:
    """JSON-encoded values in Redis."""

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize store.

        Args:
            redis_client: Redis async client
        """
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(redis.from_url(url, decode_responses=False))

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return json.loads(raw)

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> None:
        payload = json.dumps(value)
        if ex:
            await self.redis.setex(key, ex, payload)
        else:
            await self.redis.set(key, payload)

    async def delete(self, key: str) -> None:
        await self.redis.delete(key)


class InMemoryKeyValueStore:
    """Process-local store honouring expiry on read."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> None:
        expires_at = self._clock() + ex if ex else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class UserSession(BaseModel):
    """Authenticated user of a multi-tenant deployment."""

    user_id: str
    name: str = ""
    email: Optional[str] = None
    meta_user_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiration: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    last_used: datetime = Field(default_factory=_utcnow)

    @field_validator("token_expiration", "created_at", "last_used")
    @classmethod
    def normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class UserTokenRecord(BaseModel):
    """Meta token material stored for a user."""

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: Optional[datetime] = None
    scope: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    @field_validator("expires_at", "updated_at")
    @classmethod
    def normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class UserSessionStore:
    """Reads and writes session and token records for users."""

    def __init__(self, store: KeyValueStore):
        """
        Initialize session store.

        Args:
            store: Key-value backend
        """
        self.store = store

    async def store_user_session(self, session: UserSession) -> None:
        """
        Store user session data.

        Args:
            session: Session to persist
        """
        await self.store.set(
            f"{SESSION_PREFIX}{session.user_id}",
            session.model_dump(mode="json"),
            ex=SESSION_TTL_SECONDS,
        )

    async def get_user_session(self, user_id: str) -> Optional[UserSession]:
        """
        Get a user session, touching its last-used timestamp.

        Args:
            user_id: User identifier

        Returns:
            Session or None if absent/expired
        """
        raw = await self.store.get(f"{SESSION_PREFIX}{user_id}")
        if raw is None:
            return None

        session = UserSession.model_validate(raw)
        session.last_used = _utcnow()
        await self.store_user_session(session)
        return session

    async def store_user_tokens(self, user_id: str, tokens: UserTokenRecord) -> None:
        """
        Store a user's Meta tokens, stamping updated_at.

        Args:
            user_id: User identifier
            tokens: Token record to persist
        """
        record = tokens.model_copy(update={"updated_at": _utcnow()})
        await self.store.set(
            f"{TOKEN_PREFIX}{user_id}",
            record.model_dump(mode="json"),
            ex=TOKEN_TTL_SECONDS,
        )
        logger.debug(f"Stored tokens for user {user_id}")

    async def get_user_tokens(self, user_id: str) -> Optional[UserTokenRecord]:
        """
        Get a user's Meta tokens.

        Args:
            user_id: User identifier

        Returns:
            Token record or None
        """
        raw = await self.store.get(f"{TOKEN_PREFIX}{user_id}")
        if raw is None:
            return None
        return UserTokenRecord.model_validate(raw)

    async def delete_user_data(self, user_id: str) -> None:
        """
        Delete a user's session and tokens.

        Args:
            user_id: User identifier
        """
        await self.store.delete(f"{SESSION_PREFIX}{user_id}")
        await self.store.delete(f"{TOKEN_PREFIX}{user_id}")
        logger.info(f"Deleted session data for user {user_id}")
