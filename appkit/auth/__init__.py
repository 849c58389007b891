from appkit.auth.authenticator import (
    AUTH_META_KEY,
    SUBJECT_META_KEY,
    Authenticator,
    AuthErrorResponse,
    create_auth_context,
    extract_bearer_token,
    inject_auth_context,
    validate_scopes,
)
from appkit.auth.discovery import (
    discover_auth_server_metadata,
    get_jwks_uri,
    protected_resource_metadata,
)
from appkit.auth.errors import ErrorCode, OAuthError
from appkit.auth.keys import CachedKey, KeyCache, key_cache
from appkit.auth.types import AuthContext, TokenVerifier, ValidatedToken
from appkit.auth.verifier import JwtVerifier

__all__ = [
    "AUTH_META_KEY",
    "SUBJECT_META_KEY",
    "AuthContext",
    "AuthErrorResponse",
    "Authenticator",
    "CachedKey",
    "ErrorCode",
    "JwtVerifier",
    "KeyCache",
    "OAuthError",
    "TokenVerifier",
    "ValidatedToken",
    "create_auth_context",
    "discover_auth_server_metadata",
    "extract_bearer_token",
    "get_jwks_uri",
    "inject_auth_context",
    "key_cache",
    "protected_resource_metadata",
    "validate_scopes",
]
