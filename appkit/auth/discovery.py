"""
OAuth metadata documents.

Two read-only documents are involved:

- **Authorization server metadata** (RFC 8414), consumed: fetched from
  ``{authorization_server}/.well-known/oauth-authorization-server`` to find
  the issuer's ``jwks_uri`` when none is configured explicitly.
- **Protected resource metadata** (RFC 9728), produced: describes this
  service and the authorization server(s) it trusts.

Discovery failures are configuration problems on our side, so they surface
as ``invalid_request`` with HTTP 500 rather than as token errors.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from appkit.auth.errors import ErrorCode, OAuthError
from appkit.config import OAuthConfig

logger = logging.getLogger("appkit.auth.discovery")

DISCOVERY_PATH = "/.well-known/oauth-authorization-server"
PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"


@dataclass(frozen=True)
class AuthorizationServerMetadata:
    """Subset of RFC 8414 metadata used by the relying party."""

    issuer: str
    jwks_uri: str
    token_endpoint: str | None = None
    authorization_endpoint: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def _discovery_error(description: str) -> OAuthError:
    return OAuthError(ErrorCode.INVALID_REQUEST, description, 500)


async def discover_auth_server_metadata(
    authorization_server: str,
    timeout: float = 5.0,
    http_client: httpx.AsyncClient | None = None,
    production: bool = False,
) -> AuthorizationServerMetadata:
    """
    Fetch and validate the authorization server metadata document.

    Validation rules:
    1. ``issuer`` and ``jwks_uri`` are required
    2. ``issuer`` must equal ``authorization_server`` exactly (a mismatch is a
       hard failure, checked before any key is ever fetched)
    3. In production, ``jwks_uri`` must use https://

    Raises:
        OAuthError: invalid_request / 500 on any failure. Timeouts are
                    reported as "... timed out after Nms".
    """
    url = f"{authorization_server}{DISCOVERY_PATH}"
    headers = {"Accept": "application/json"}

    try:
        if http_client is not None:
            response = await http_client.get(url, headers=headers, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(url, headers=headers)
    except httpx.TimeoutException as exc:
        raise _discovery_error(
            f"Authorization server metadata discovery timed out after {int(timeout * 1000)}ms"
        ) from exc
    except httpx.HTTPError as exc:
        raise _discovery_error(f"Authorization server metadata discovery failed: {exc}") from exc

    if not response.is_success:
        raise _discovery_error(
            "Authorization server metadata discovery failed: "
            f"HTTP {response.status_code} {response.reason_phrase}"
        )

    try:
        metadata = response.json()
    except ValueError as exc:
        raise _discovery_error("Authorization server metadata is not valid JSON") from exc

    if not isinstance(metadata, dict) or not metadata.get("issuer"):
        raise _discovery_error("Authorization server metadata missing required 'issuer' field")
    if not metadata.get("jwks_uri"):
        raise _discovery_error("Authorization server metadata missing required 'jwks_uri' field")

    if metadata["issuer"] != authorization_server:
        raise _discovery_error(
            f"Issuer mismatch: expected '{authorization_server}', got '{metadata['issuer']}'"
        )

    if production and not metadata["jwks_uri"].startswith("https://"):
        raise _discovery_error("JWKS URI must use HTTPS in production")

    logger.info(
        "Authorization server metadata discovered",
        extra={"log_data": {"issuer": metadata["issuer"], "jwks_uri": metadata["jwks_uri"]}},
    )
    return AuthorizationServerMetadata(
        issuer=metadata["issuer"],
        jwks_uri=metadata["jwks_uri"],
        token_endpoint=metadata.get("token_endpoint"),
        authorization_endpoint=metadata.get("authorization_endpoint"),
        raw=metadata,
    )


async def get_jwks_uri(
    authorization_server: str,
    explicit_jwks_uri: str | None = None,
    timeout: float = 5.0,
    http_client: httpx.AsyncClient | None = None,
    production: bool = False,
) -> str:
    """Return the explicit JWKS URI if given, otherwise discover it."""
    if explicit_jwks_uri:
        return explicit_jwks_uri

    metadata = await discover_auth_server_metadata(
        authorization_server, timeout=timeout, http_client=http_client, production=production
    )
    return metadata.jwks_uri


def protected_resource_metadata(config: OAuthConfig) -> dict[str, Any]:
    """Build this service's RFC 9728 protected resource metadata document."""
    document: dict[str, Any] = {
        "resource": config.protected_resource,
        "authorization_servers": [config.authorization_server],
        "bearer_methods_supported": ["header"],
    }
    if config.scopes:
        document["scopes_supported"] = list(config.scopes)
    return document
