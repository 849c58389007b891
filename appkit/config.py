"""
Application configuration.

Two layers live here:

- ``Settings``: process configuration loaded from environment variables with
  pydantic-settings (``APPKIT_`` prefix, optional ``.env`` file). This is what
  the server entry point reads at startup.
- ``OAuthConfig``: the validated OAuth relying-party configuration consumed by
  the Authenticator. It can be built from ``Settings`` or constructed directly
  in code (e.g. to pass a custom token verifier).

In production these values are injected by the deployment environment:
- APPKIT_PROTECTED_RESOURCE, APPKIT_AUTHORIZATION_SERVER come from config
- APPKIT_ENVIRONMENT=production enables the HTTPS-only JWKS check
"""

from typing import Annotated, Any
from urllib.parse import urlparse

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


def _require_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"must be a valid http(s) URL, got '{value}'")
    return value


HttpUrlStr = Annotated[str, AfterValidator(_require_url)]


class OAuthConfig(BaseModel):
    """
    OAuth 2.0 protected-resource configuration.

    The service is a relying party only: it verifies bearer tokens issued by
    ``authorization_server`` and never issues tokens itself.

    Attributes:
        protected_resource: This service's resource identifier. Used as the
            ``realm`` in WWW-Authenticate and as the default expected audience.
        authorization_server: Issuer URL. Token ``iss`` must match it.
        jwks_uri: Explicit key-set URL. When empty, it is discovered from the
            authorization server's metadata document.
        algorithms: Signing algorithm allow-list.
        audience: Expected ``aud`` (defaults to ``protected_resource``).
        scopes: Scopes every token must carry before a handler runs.
        token_verifier: Optional custom verifier object with an async
            ``verify_access_token(token)`` method. When set, JWKS
            verification is never used.
        production: Enforces an https:// key-source URL during discovery.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    protected_resource: HttpUrlStr
    authorization_server: HttpUrlStr
    jwks_uri: HttpUrlStr | None = None
    algorithms: list[str] = Field(default_factory=lambda: ["RS256"], min_length=1)
    audience: str | list[str] | None = None
    scopes: list[str] = Field(default_factory=list)
    token_verifier: Any = None
    production: bool = False

    # Key cache knobs (seconds / requests per minute)
    jwks_cache_ttl: float = 600.0
    jwks_requests_per_minute: int = 10
    jwks_timeout: float = 5.0


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Each field maps to an environment variable with the APPKIT_ prefix,
    e.g. ``port`` reads APPKIT_PORT and ``required_scopes`` reads
    APPKIT_REQUIRED_SCOPES (a JSON list).
    """

    # --- Server settings ---
    app_name: str = "appkit"
    app_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # "production" turns on the https-only check for discovered JWKS URIs.
    environment: str = "development"

    # --- OAuth settings ---
    # OAuth is enabled only when both of these are set.
    protected_resource: str = ""
    authorization_server: str = ""
    jwks_uri: str = ""
    jwt_algorithms: list[str] = ["RS256"]
    jwt_audience: str = ""
    required_scopes: list[str] = []

    # --- Key cache ---
    jwks_cache_ttl: float = 600.0
    jwks_requests_per_minute: int = 10
    jwks_timeout: float = 5.0

    model_config = {
        "env_prefix": "APPKIT_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def oauth_config(self) -> OAuthConfig | None:
        """Build the OAuth configuration, or None when OAuth is not configured."""
        if not self.protected_resource or not self.authorization_server:
            return None
        return OAuthConfig(
            protected_resource=self.protected_resource,
            authorization_server=self.authorization_server,
            jwks_uri=self.jwks_uri or None,
            algorithms=self.jwt_algorithms,
            audience=self.jwt_audience or None,
            scopes=self.required_scopes,
            production=self.is_production,
            jwks_cache_ttl=self.jwks_cache_ttl,
            jwks_requests_per_minute=self.jwks_requests_per_minute,
            jwks_timeout=self.jwks_timeout,
        )


# Singleton instance: import this from other modules.
settings = Settings()
