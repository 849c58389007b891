"""
RFC 6750 bearer-token error variant.

An ``OAuthError`` carries both the machine-readable error code and the logic
to render the ``WWW-Authenticate`` challenge, so the escaping rules can be
tested without any HTTP framework involved.
"""

from typing import Any


class ErrorCode:
    """Standard RFC 6750 error codes."""

    INVALID_REQUEST = "invalid_request"
    INVALID_TOKEN = "invalid_token"
    INSUFFICIENT_SCOPE = "insufficient_scope"


_DEFAULT_STATUS = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.INSUFFICIENT_SCOPE: 403,
}


def escape_quoted_string(value: str) -> str:
    """Escape backslashes and double quotes for an RFC 7230 quoted-string."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


class OAuthError(Exception):
    """
    Authentication or authorization failure.

    The description is sent to the client, so it must never contain the raw
    token or signature material.

    Attributes:
        code: RFC 6750 error code (see ``ErrorCode``)
        description: Human-readable error description
        status_code: HTTP status (defaults from the code: 400/401/403)
        www_authenticate_params: Extra challenge parameters, e.g. ``scope``
    """

    def __init__(
        self,
        code: str,
        description: str,
        status_code: int | None = None,
        www_authenticate_params: dict[str, str] | None = None,
    ):
        self.code = code
        self.description = description
        self.status_code = status_code if status_code is not None else _DEFAULT_STATUS.get(code, 401)
        self.www_authenticate_params = www_authenticate_params
        super().__init__(description)

    def to_www_authenticate_header(self, realm: str) -> str:
        """
        Build the ``WWW-Authenticate`` header value.

        Example:
            >>> OAuthError("invalid_token", "Token expired").to_www_authenticate_header(
            ...     "https://api.example.com")
            'Bearer realm="https://api.example.com", error="invalid_token", error_description="Token expired"'
        """
        params = [f'realm="{escape_quoted_string(realm)}"']

        # invalid_request signals a server-side/config problem; no error params.
        if self.code != ErrorCode.INVALID_REQUEST:
            params.append(f'error="{self.code}"')
            params.append(f'error_description="{escape_quoted_string(self.description)}"')

        for key, value in (self.www_authenticate_params or {}).items():
            params.append(f'{key}="{escape_quoted_string(value)}"')

        return "Bearer " + ", ".join(params)

    def to_json(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.description}
        if self.www_authenticate_params:
            error["details"] = dict(self.www_authenticate_params)
        return {"error": error}
