"""
Application error types.

Every failure that leaves the execution pipeline is an ``AppError`` carrying
a machine-readable code. Authentication failures are a separate family
(``appkit.auth.errors.OAuthError``) because they are rendered as HTTP
challenges rather than tool results.
"""

import json
from typing import Any

from pydantic import ValidationError


class ErrorCode:
    """Machine-readable error codes for ``AppError``."""

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_OUTPUT = "INVALID_OUTPUT"

    # Tool errors
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    TOOL_EXECUTION_ERROR = "TOOL_EXECUTION_ERROR"

    # Configuration errors
    INVALID_CONFIG = "INVALID_CONFIG"

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(Exception):
    """
    Base error with a code, a message and optional structured details.

    Attributes:
        code: One of the ``ErrorCode`` constants
        message: Human-readable description, safe to send to the caller
        details: Optional structured details (e.g. validation issues)
    """

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)

    def format_message(self) -> str:
        if not self.details:
            return self.message
        rendered = ", ".join(
            f"{key}: {json.dumps(value, default=str)}" for key, value in self.details.items()
        )
        return f"{self.message} ({rendered})"

    def to_response(self) -> dict[str, Any]:
        """Render as an error tool result (``isError`` envelope)."""
        return {
            "content": [{"type": "text", "text": self.format_message()}],
            "isError": True,
        }

    def to_json(self) -> dict[str, Any]:
        # Never includes a traceback: this is what callers see.
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


def format_validation_error(
    error: ValidationError, code: str = ErrorCode.VALIDATION_ERROR
) -> AppError:
    """Convert a pydantic ValidationError into an AppError with per-field issues."""
    issues = [
        {
            "path": list(issue["loc"]),
            "message": issue["msg"],
            "code": issue["type"],
        }
        for issue in error.errors()
    ]
    summary = "; ".join(
        f"{'.'.join(str(p) for p in issue['path']) or '<root>'}: {issue['message']}"
        for issue in issues
    )
    return AppError(code, f"Validation failed: {summary}", {"issues": issues})


def wrap_error(error: BaseException, code: str = ErrorCode.INTERNAL_ERROR) -> AppError:
    """Return ``error`` unchanged if it is an AppError, otherwise wrap it."""
    if isinstance(error, AppError):
        return error
    wrapped = AppError(code, str(error) or type(error).__name__)
    wrapped.__cause__ = error
    return wrapped
