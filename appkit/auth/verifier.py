"""
JWT verification against a JWKS key source.

Verification steps for every token:
1. Decode the (unverified) header and read the key id (``kid``)
2. Resolve the public key for that ``kid`` through the key cache
3. Verify signature, algorithm allow-list, audience and expiry with PyJWT
   (5 seconds of clock skew tolerated)
4. Check the issuer, accepting the configured value with or without a
   trailing slash (some providers publish ``https://issuer/``)
5. Extract ``sub``, ``client_id``/``azp``, ``exp`` and the scopes

Every failure is an ``OAuthError`` with code ``invalid_token``. Descriptions
come from PyJWT or from us and never echo the token itself.
"""

import logging
from typing import Any

import jwt

from appkit.auth.errors import ErrorCode, OAuthError
from appkit.auth.keys import KeyCache, KeyFetchError, key_cache as default_key_cache
from appkit.auth.types import ValidatedToken
from appkit.config import OAuthConfig

logger = logging.getLogger("appkit.auth.verifier")

CLOCK_TOLERANCE_SECONDS = 5


def _invalid(description: str) -> OAuthError:
    return OAuthError(ErrorCode.INVALID_TOKEN, description)


def parse_scopes(claim: Any) -> list[str]:
    """
    Normalise the ``scope`` claim.

    Accepts the RFC 8693 space-separated string form as well as a list of
    strings. Anything else is rejected rather than coerced.
    """
    if claim is None:
        return []
    if isinstance(claim, str):
        return [scope for scope in claim.split(" ") if scope]
    if isinstance(claim, list) and all(isinstance(scope, str) for scope in claim):
        return list(claim)
    raise _invalid("Invalid scope claim: must be a string or a list of strings")


class JwtVerifier:
    """
    Verifies bearer JWTs with keys from ``jwks_uri``.

    Args:
        config: OAuth configuration (issuer, audience, algorithms)
        jwks_uri: Resolved key-set URL
        key_cache: Cache to resolve keys through (process-wide by default)
    """

    def __init__(self, config: OAuthConfig, jwks_uri: str, key_cache: KeyCache | None = None):
        self._config = config
        self._jwks_uri = jwks_uri
        self._key_cache = key_cache if key_cache is not None else default_key_cache

    @property
    def jwks_uri(self) -> str:
        return self._jwks_uri

    async def verify_access_token(self, token: str) -> ValidatedToken:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError:
            raise _invalid("Malformed JWT token")

        kid = header.get("kid")
        if not kid:
            raise _invalid("JWT missing key ID (kid) in header")

        try:
            signing_key = await self._key_cache.get_signing_key(self._jwks_uri, kid)
        except KeyFetchError as exc:
            logger.warning(
                "Signing key resolution failed",
                extra={"log_data": {"kid": kid, "reason": type(exc).__name__}},
            )
            raise _invalid(f"Failed to get signing key: {exc}") from exc

        # A key that advertises an algorithm may only verify tokens signed with it.
        if signing_key.algorithm and header.get("alg") != signing_key.algorithm:
            raise _invalid("Token verification failed: algorithm does not match signing key")

        audience = self._config.audience
        if audience is None:
            audience = self._config.protected_resource

        try:
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=self._config.algorithms,
                audience=audience,
                leeway=CLOCK_TOLERANCE_SECONDS,
                # Issuer is compared below to tolerate a trailing slash.
                options={"verify_iss": False},
            )
        except jwt.ExpiredSignatureError:
            raise _invalid("Token expired")
        except jwt.ImmatureSignatureError:
            raise _invalid("Token not yet valid (nbf claim)")
        except jwt.InvalidTokenError as exc:
            raise _invalid(f"Token verification failed: {exc}")

        issuer = payload.get("iss")
        expected_issuer = self._config.authorization_server.rstrip("/")
        if issuer not in (expected_issuer, f"{expected_issuer}/"):
            raise _invalid("Token verification failed: Invalid issuer")

        client_id = payload.get("client_id") or payload.get("azp")
        if not client_id:
            raise _invalid("JWT missing required claim: client_id or azp")

        subject = payload.get("sub")
        if not subject:
            raise _invalid("JWT missing required claim: sub")

        expires_at = payload.get("exp")
        if not expires_at:
            raise _invalid("JWT missing required claim: exp")

        return ValidatedToken(
            token=token,
            client_id=client_id,
            scopes=parse_scopes(payload.get("scope")),
            expires_at=int(expires_at),
            extra={
                "subject": subject,
                "issuer": issuer,
                "audience": payload.get("aud"),
                **payload,
            },
        )
