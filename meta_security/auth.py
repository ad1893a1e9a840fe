"""
Inbound authentication for multi-tenant deployments.

Resolves a bearer credential (signed session token or service API key)
to the stored user session whose Meta tokens the runtime should use.
"""

import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from meta_core.storage import UserSession, UserSessionStore

logger = logging.getLogger(__name__)


API_KEY_PREFIX = "apikey_"
API_KEY_PATTERN = re.compile(r"^apikey_(.+)_([a-f0-9]{32,})$")


class SessionTokenConfig:
    """Session token and API key configuration."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        expiry_days: int = 7,
        api_key_secret: Optional[str] = None,
    ):
        """
        Initialize session token configuration.

        Args:
            secret: Signing secret for session tokens
            algorithm: JWT algorithm (default HS256)
            expiry_days: Session token lifetime in days
            api_key_secret: Shared secret embedded in service API keys
        """
        if not secret:
            raise ValueError("Session token secret must not be empty")
        self.secret = secret
        self.algorithm = algorithm
        self.expiry_days = expiry_days
        self.api_key_secret = api_key_secret


# Global auth state (initialized by the embedding application)
_session_config: Optional[SessionTokenConfig] = None
_session_store: Optional[UserSessionStore] = None


def init_auth(config: SessionTokenConfig, session_store: UserSessionStore) -> None:
    """Initialize global session configuration and store."""
    global _session_config, _session_store
    _session_config = config
    _session_store = session_store
    logger.info("Session authentication initialized")


def get_session_config() -> SessionTokenConfig:
    """Get session token configuration."""
    if _session_config is None:
        raise RuntimeError("Session authentication not initialized")
    return _session_config


def get_session_store() -> UserSessionStore:
    """Get the session store used for authentication."""
    if _session_store is None:
        raise RuntimeError("Session authentication not initialized")
    return _session_store


def create_session_token(user_id: str, config: Optional[SessionTokenConfig] = None) -> str:
    """
    Create a signed session token for a user.

    Args:
        user_id: User identifier
        config: Session configuration (uses global if not provided)

    Returns:
        JWT string
    """
    if config is None:
        config = get_session_config()

    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "iat": now,
        "exp": now + timedelta(days=config.expiry_days),
    }
    return jwt.encode(payload, config.secret, algorithm=config.algorithm)


def verify_session_token(token: str, config: Optional[SessionTokenConfig] = None) -> Optional[str]:
    """
    Verify a session token.

    Args:
        token: JWT string
        config: Session configuration (uses global if not provided)

    Returns:
        User id, or None if the token is invalid or expired
    """
    if config is None:
        config = get_session_config()

    try:
        payload = jwt.decode(token, config.secret, algorithms=[config.algorithm])
    except jwt.ExpiredSignatureError:
        logger.info("Session token has expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Session token verification failed: {e}")
        return None

    user_id = payload.get("sub")
    return user_id if isinstance(user_id, str) and user_id else None


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """
    Extract the token from an Authorization header.

    Args:
        auth_header: Raw header value

    Returns:
        Token, or None if the header is missing or not a bearer credential
    """
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header[len("Bearer "):].strip()
    return token or None


async def authenticate_api_key(
    api_key: str,
    session_store: UserSessionStore,
    expected_secret: Optional[str],
) -> Optional[UserSession]:
    """
    Authenticate a service-to-service API key.

    Keys have the form apikey_{user_id}_{secret}; the secret is compared
    in constant time.

    Args:
        api_key: Key presented by the caller
        session_store: Store holding user sessions
        expected_secret: Configured API key secret

    Returns:
        The user's session, or None
    """
    if not expected_secret:
        logger.warning("API key authentication attempted but no API key secret is configured")
        return None

    match = API_KEY_PATTERN.match(api_key)
    if not match:
        return None

    user_id, provided_secret = match.groups()
    if not hmac.compare_digest(provided_secret.encode(), expected_secret.encode()):
        logger.warning(f"API key secret mismatch for user {user_id}")
        return None

    return await session_store.get_user_session(user_id)


async def authenticate_user(
    auth_header: Optional[str],
    session_store: Optional[UserSessionStore] = None,
    config: Optional[SessionTokenConfig] = None,
) -> Optional[UserSession]:
    """
    Resolve an Authorization header to a user session.

    Args:
        auth_header: Raw Authorization header
        session_store: Store holding user sessions (uses global if not provided)
        config: Session configuration (uses global if not provided)

    Returns:
        Session, or None if the credential is missing or invalid
    """
    if session_store is None:
        session_store = get_session_store()
    if config is None:
        config = get_session_config()

    token = extract_bearer_token(auth_header)
    if token is None:
        return None

    if token.startswith(API_KEY_PREFIX):
        return await authenticate_api_key(token, session_store, config.api_key_secret)

    user_id = verify_session_token(token, config)
    if user_id is None:
        return None

    return await session_store.get_user_session(user_id)


def generate_oauth_state() -> str:
    """Generate a CSRF state value for the OAuth redirect."""
    return secrets.token_hex(32)


def validate_oauth_state(state: Optional[str], expected_state: Optional[str]) -> bool:
    """Compare OAuth state values in constant time."""
    if not state or not expected_state:
        return False
    return hmac.compare_digest(state.encode(), expected_state.encode())


# HTTP Bearer security scheme
security = HTTPBearer(auto_error=False)


async def get_current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> UserSession:
    """
    FastAPI dependency to get the current authenticated user session.

    Args:
        credentials: HTTP Bearer credentials

    Returns:
        Stored user session

    Raises:
        HTTPException: If authentication fails
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    session = await authenticate_user(f"Bearer {credentials.credentials}")
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session
