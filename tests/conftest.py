"""
Shared test fixtures for the appkit test suite.

Key fixtures:
- rsa_key / jwks: An RSA signing key and the JWKS document publishing it
- make_token: A factory to mint RS256 tokens with any claims
- make_auth_header: The same, wrapped as "Bearer <token>"
- auth_server: An in-memory authorization server (httpx.MockTransport) serving
  RFC 8414 metadata and the JWKS, counting requests per path
- clock: A manually advanced monotonic clock for key cache TTL tests
- oauth_config: An OAuthConfig pointing at the in-memory authorization server

No network is used anywhere: every HTTP call goes through MockTransport.
"""

import datetime
import json
from collections import Counter
from typing import Any, Callable

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from appkit.config import OAuthConfig

AUTH_SERVER = "https://auth.example.com"
RESOURCE = "https://api.example.com"
JWKS_URI = f"{AUTH_SERVER}/.well-known/jwks.json"
KID = "test-key-1"


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------


def _public_jwk(private_key, kid: str) -> dict[str, Any]:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return jwk


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key():
    """A second key, for rotation and wrong-signature tests."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def jwks(rsa_key) -> dict[str, Any]:
    return {"keys": [_public_jwk(rsa_key, KID)]}


@pytest.fixture
def make_jwk():
    return _public_jwk


# ---------------------------------------------------------------------------
# Token factory fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def make_token(rsa_key):
    """
    Factory fixture to mint signed JWT access tokens.

    Usage in tests:
        def test_something(make_token):
            token = make_token(sub="alice", scope="read write")
    """

    def _make_token(
        sub: str | None = "alice",
        scope: str | list[str] | None = "read",
        client_id: str | None = "client-123",
        issuer: str | None = AUTH_SERVER,
        audience: str | list[str] | None = RESOURCE,
        exp_seconds: float = 3600,
        kid: str | None = KID,
        key=None,
        algorithm: str = "RS256",
        extra_claims: dict | None = None,
        include_exp: bool = True,
    ) -> str:
        """
        Args:
            sub / client_id / issuer / audience / scope: Claims (None omits them)
            exp_seconds: Seconds until expiration (negative = already expired)
            kid: Key id placed in the JWT header (None omits it)
            key: Signing key (defaults to the published rsa_key)
            algorithm: JWT algorithm
            extra_claims: Additional claims merged into the payload
            include_exp: Whether to include the exp claim
        """
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict[str, Any] = {"iat": now}

        if sub is not None:
            payload["sub"] = sub
        if scope is not None:
            payload["scope"] = scope
        if client_id is not None:
            payload["client_id"] = client_id
        if issuer is not None:
            payload["iss"] = issuer
        if audience is not None:
            payload["aud"] = audience
        if include_exp:
            payload["exp"] = now + datetime.timedelta(seconds=exp_seconds)
        if extra_claims:
            payload.update(extra_claims)

        headers = {"kid": kid} if kid is not None else None
        return jwt.encode(payload, key or rsa_key, algorithm=algorithm, headers=headers)

    return _make_token


@pytest.fixture
def make_auth_header(make_token):
    """Convenience fixture that returns a full "Bearer <token>" string."""

    def _make_auth_header(**kwargs) -> str:
        return f"Bearer {make_token(**kwargs)}"

    return _make_auth_header


# ---------------------------------------------------------------------------
# In-memory authorization server
# ---------------------------------------------------------------------------


class FakeAuthServer:
    """
    Serves RFC 8414 metadata and a JWKS through ``httpx.MockTransport``.

    Attributes are mutable so tests can rotate keys or break the server:
        jwks: JWKS document served at JWKS_URI
        metadata: Metadata document served at the discovery path
        fail_with: Exception raised for every request (e.g. httpx.ReadTimeout)
        status_code: Status for every response
        requests: Counter of requested paths
    """

    def __init__(self, jwks: dict[str, Any]):
        self.jwks = jwks
        self.metadata: dict[str, Any] = {
            "issuer": AUTH_SERVER,
            "jwks_uri": JWKS_URI,
            "token_endpoint": f"{AUTH_SERVER}/oauth/token",
            "authorization_endpoint": f"{AUTH_SERVER}/oauth/authorize",
        }
        self.fail_with: Exception | None = None
        self.status_code = 200
        self.requests: Counter = Counter()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests[request.url.path] += 1
        if self.fail_with is not None:
            raise self.fail_with
        if request.url.path == "/.well-known/oauth-authorization-server":
            return httpx.Response(self.status_code, json=self.metadata)
        if request.url.path == "/.well-known/jwks.json":
            return httpx.Response(self.status_code, json=self.jwks)
        return httpx.Response(404, json={"error": "not_found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def jwks_fetches(self) -> int:
        return self.requests["/.well-known/jwks.json"]

    @property
    def discovery_fetches(self) -> int:
        return self.requests["/.well-known/oauth-authorization-server"]


@pytest.fixture
def auth_server(jwks) -> FakeAuthServer:
    return FakeAuthServer(jwks)


@pytest.fixture
async def http_client(auth_server):
    async with auth_server.client() as client:
        yield client


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_oauth_config() -> Callable[..., OAuthConfig]:
    def _make_oauth_config(**overrides: Any) -> OAuthConfig:
        values: dict[str, Any] = {
            "protected_resource": RESOURCE,
            "authorization_server": AUTH_SERVER,
        }
        values.update(overrides)
        return OAuthConfig(**values)

    return _make_oauth_config


@pytest.fixture
def oauth_config(make_oauth_config) -> OAuthConfig:
    return make_oauth_config(jwks_uri=JWKS_URI)
