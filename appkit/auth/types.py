"""Token and auth-context data types shared by the verifier and authenticator."""

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class ValidatedToken:
    """
    Result of verifying a bearer token.

    Produced once per call by a verifier and never persisted.

    Attributes:
        token: The raw bearer token
        client_id: OAuth client that obtained the token (``client_id``/``azp``)
        scopes: Granted scopes
        expires_at: Expiry as epoch seconds
        extra: Remaining claims; ``subject``, ``issuer`` and ``audience`` are
               read from here when building the AuthContext
    """

    token: str
    client_id: str
    scopes: list[str]
    expires_at: int
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthContext:
    """Request-scoped, read-only view of a validated token exposed to handlers."""

    subject: str
    scopes: list[str]
    expires_at: int
    client_id: str
    issuer: str | None = None
    audience: str | list[str] | None = None
    token: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class TokenVerifier(Protocol):
    """Custom verification strategy, used instead of JWKS when configured."""

    async def verify_access_token(self, token: str) -> ValidatedToken: ...
