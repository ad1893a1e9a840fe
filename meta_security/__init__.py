"""Security modules for inbound authentication."""

from meta_security.auth import (
    SessionTokenConfig,
    init_auth,
    get_session_config,
    get_session_store,
    create_session_token,
    verify_session_token,
    extract_bearer_token,
    authenticate_api_key,
    authenticate_user,
    generate_oauth_state,
    validate_oauth_state,
    get_current_session,
)

__all__ = [
    "SessionTokenConfig",
    "init_auth",
    "get_session_config",
    "get_session_store",
    "create_session_token",
    "verify_session_token",
    "extract_bearer_token",
    "authenticate_api_key",
    "authenticate_user",
    "generate_oauth_state",
    "validate_oauth_state",
    "get_current_session",
]
