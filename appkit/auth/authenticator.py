"""
Bearer-token authentication for inbound tool calls.

This is the Authentication (AuthN) layer plus static scope enforcement:
- Extracts the bearer token from the ``Authorization`` header
- Verifies it, either against the authorization server's JWKS or through a
  caller-supplied ``TokenVerifier`` (chosen once, at startup)
- Checks that every configured required scope was granted
- Injects the derived ``AuthContext`` into the call's ``_meta``

Any failure short-circuits the request before a handler runs and is rendered
as an RFC 6750 error: a JSON body plus a ``WWW-Authenticate`` challenge.

Injected ``_meta`` keys:
    "openai/subject": verified subject, ALWAYS overwriting a client value
    "appkit/auth":    the full AuthContext
"""

import asyncio
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from appkit.auth.discovery import get_jwks_uri
from appkit.auth.errors import ErrorCode, OAuthError
from appkit.auth.keys import KeyCache
from appkit.auth.types import AuthContext, TokenVerifier, ValidatedToken
from appkit.auth.verifier import JwtVerifier
from appkit.config import OAuthConfig

logger = logging.getLogger("appkit.auth")

SUBJECT_META_KEY = "openai/subject"
AUTH_META_KEY = "appkit/auth"


@dataclass(frozen=True)
class AuthErrorResponse:
    """Transport-neutral rendering of an authentication failure."""

    status_code: int
    headers: dict[str, str]
    body: dict[str, Any]


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def extract_bearer_token(headers: Mapping[str, str]) -> str:
    """
    Extract the token from ``Authorization: Bearer <token>``.

    Missing header, wrong scheme and empty token all fail the same way, as
    ``invalid_token`` (401). The scheme is matched case-insensitively per
    RFC 6750.
    """
    authorization = _header(headers, "authorization")
    if not authorization:
        raise OAuthError(ErrorCode.INVALID_TOKEN, "Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        raise OAuthError(
            ErrorCode.INVALID_TOKEN,
            "Invalid Authorization header format. Expected: Bearer <token>",
        )

    token = token.strip()
    if not token:
        raise OAuthError(ErrorCode.INVALID_TOKEN, "Empty bearer token")
    return token


def validate_scopes(token_scopes: list[str], required_scopes: list[str] | None) -> None:
    """
    Require every scope in ``required_scopes``.

    All missing scopes are reported together, and the challenge advertises
    the complete required list so the client can re-authorise once.
    """
    if not required_scopes:
        return

    granted = set(token_scopes)
    missing = [scope for scope in required_scopes if scope not in granted]
    if missing:
        raise OAuthError(
            ErrorCode.INSUFFICIENT_SCOPE,
            f"Token missing required scopes: {', '.join(missing)}",
            www_authenticate_params={"scope": " ".join(required_scopes)},
        )


def create_auth_context(validated: ValidatedToken) -> AuthContext:
    """Turn a verified token into the AuthContext handed to tools."""
    extra = validated.extra or {}
    return AuthContext(
        subject=extra.get("subject") or extra.get("sub") or "",
        scopes=list(validated.scopes),
        expires_at=validated.expires_at,
        client_id=validated.client_id,
        issuer=extra.get("issuer") or extra.get("iss"),
        audience=extra.get("audience") or extra.get("aud"),
        token=validated.token,
        extra=dict(extra),
    )


def inject_auth_context(meta: dict[str, Any] | None, auth_context: AuthContext) -> dict[str, Any]:
    """Write the auth context into ``meta``, overwriting any caller-supplied subject."""
    if meta is None:
        meta = {}
    meta[SUBJECT_META_KEY] = auth_context.subject
    meta[AUTH_META_KEY] = auth_context
    return meta


class Authenticator:
    """
    Orchestrates token extraction, verification, scope checks and injection.

    Usage:
        authenticator = Authenticator(oauth_config)
        await authenticator.start()            # picks the verification path
        auth = await authenticator.authenticate(request.headers)

    Args:
        config: Validated OAuth configuration
        key_cache: Key cache for JWKS verification (a per-authenticator cache
                   built from the config knobs when omitted)
        http_client: Optional ``httpx.AsyncClient`` for discovery and key fetches
    """

    def __init__(
        self,
        config: OAuthConfig,
        key_cache: KeyCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self._http_client = http_client
        self._key_cache = key_cache or KeyCache(
            ttl=config.jwks_cache_ttl,
            requests_per_minute=config.jwks_requests_per_minute,
            timeout=config.jwks_timeout,
            http_client=http_client,
        )
        self._verifier: TokenVerifier | None = None
        self._start_lock = asyncio.Lock()

    @property
    def realm(self) -> str:
        return self.config.protected_resource

    @property
    def started(self) -> bool:
        return self._verifier is not None

    async def start(self) -> None:
        """
        Select the verification path.

        A custom ``token_verifier`` wins; otherwise the JWKS URI is taken from
        the config or discovered from the authorization server metadata.
        """
        async with self._start_lock:
            if self._verifier is not None:
                return
            if self.config.token_verifier is not None:
                self._verifier = self.config.token_verifier
                logger.info("Using custom token verifier")
                return

            jwks_uri = await get_jwks_uri(
                self.config.authorization_server,
                self.config.jwks_uri,
                timeout=self.config.jwks_timeout,
                http_client=self._http_client,
                production=self.config.production,
            )
            self._verifier = JwtVerifier(self.config, jwks_uri, self._key_cache)
            logger.info("Using JWKS token verification", extra={"log_data": {"jwks_uri": jwks_uri}})

    async def authenticate(self, headers: Mapping[str, str]) -> AuthContext:
        """
        Authenticate a request from its headers.

        Raises:
            OAuthError: For every failure. Unexpected exceptions from a custom
                        verifier are wrapped as ``invalid_token``.
        """
        request_id = uuid.uuid4().hex[:8]
        try:
            token = extract_bearer_token(headers)
            if self._verifier is None:
                await self.start()
            try:
                validated = await self._verifier.verify_access_token(token)
            except OAuthError:
                raise
            except Exception as exc:
                raise OAuthError(ErrorCode.INVALID_TOKEN, "Token verification failed") from exc

            validate_scopes(validated.scopes, self.config.scopes)
            auth_context = create_auth_context(validated)
        except OAuthError as exc:
            logger.warning(
                "Authentication failed",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        "decision": "rejected",
                        "reason": exc.code,
                        "description": exc.description,
                    }
                },
            )
            raise

        logger.info(
            "Authentication successful",
            extra={
                "log_data": {
                    "request_id": request_id,
                    "subject": auth_context.subject,
                    "client_id": auth_context.client_id,
                    "scopes": auth_context.scopes,
                    "decision": "authenticated",
                }
            },
        )
        return auth_context

    async def authenticate_request(
        self, headers: Mapping[str, str], meta: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Authenticate and return ``meta`` with the auth context injected."""
        auth_context = await self.authenticate(headers)
        return inject_auth_context(meta, auth_context)

    def error_response(self, error: BaseException) -> AuthErrorResponse:
        """Render any failure as an RFC 6750 response, wrapping non-OAuth errors."""
        if not isinstance(error, OAuthError):
            error = OAuthError(ErrorCode.INVALID_TOKEN, "Authentication failed")
        return AuthErrorResponse(
            status_code=error.status_code,
            headers={"WWW-Authenticate": error.to_www_authenticate_header(self.realm)},
            body=error.to_json(),
        )
