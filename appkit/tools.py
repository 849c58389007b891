"""
Tool definitions and per-call context.

A tool is a named, schema-described operation:

    greet = define_tool(
        name="greet",
        description="Greet someone by name",
        input=GreetInput,            # pydantic model (or any TypeAdapter-able type)
        output=GreetOutput,          # optional output contract
        handler=greet_handler,       # (input, context) -> result, sync or async
    )

Handlers may return, next to the declared structured output, a few
out-of-band keys that are stripped before output validation:

    "_text":         narration text for the model (defaults to the JSON output)
    "_meta":         extra response metadata
    "_close_widget": ask the host to close the widget that triggered the call

Client-supplied ``_meta`` is parsed into a ``ToolContext``; the ``state``
dict on it is created fresh for every call and shared only by that call's
plugin hooks, middleware and handler.
"""

import math
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from appkit.auth.authenticator import AUTH_META_KEY, SUBJECT_META_KEY
from appkit.auth.types import AuthContext

Visibility = Literal["model", "app", "both"]

TEXT_KEY = "_text"
META_KEY = "_meta"
CLOSE_WIDGET_KEY = "_close_widget"
CLOSE_WIDGET_META_KEY = "openai/closeWidget"
DIRECTIVE_KEYS = (TEXT_KEY, META_KEY, CLOSE_WIDGET_KEY)

Handler = Callable[[Any, "ToolContext"], Any | Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    """
    Immutable description of one tool.

    Attributes:
        name: Unique tool name
        description: Model-facing description
        input: Input contract (pydantic model or type)
        handler: Callable ``(validated_input, context) -> result``
        output: Optional output contract
        title: Display title (defaults to the name)
        visibility: Who may invoke it: "model", "app" or "both"
        ui: Optional UI resource reference
        invoking_message / invoked_message: Host status strings
        annotations: Extra protocol-agnostic annotations
    """

    name: str
    description: str
    input: Any
    handler: Handler
    output: Any = None
    title: str | None = None
    visibility: Visibility = "both"
    ui: str | None = None
    invoking_message: str | None = None
    invoked_message: str | None = None
    annotations: Mapping[str, Any] = field(default_factory=dict)


def define_tool(**kwargs: Any) -> ToolDefinition:
    """Build a ToolDefinition; keyword arguments are its fields."""
    return ToolDefinition(**kwargs)


@dataclass(frozen=True)
class UserLocation:
    city: str | None = None
    region: str | None = None
    country: str | None = None
    timezone: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass
class ToolContext:
    """
    Per-call context handed to plugins, middleware and the handler.

    Everything except ``state`` is read-only by convention.
    """

    locale: str | None = None
    user_agent: str | None = None
    subject: str | None = None
    widget_session_id: str | None = None
    user_location: UserLocation | None = None
    auth: AuthContext | None = None
    state: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


def _string(meta: Mapping[str, Any], key: str) -> str | None:
    value = meta.get(key)
    return value if isinstance(value, str) else None


def _finite_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except (OverflowError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _user_location(value: Any) -> UserLocation | None:
    if not isinstance(value, Mapping):
        return None
    strings = {
        key: value[key]
        for key in ("city", "region", "country", "timezone")
        if isinstance(value.get(key), str)
    }
    numbers = {}
    for key in ("latitude", "longitude"):
        number = _finite_float(value.get(key))
        if number is not None:
            numbers[key] = number
    return UserLocation(**strings, **numbers)


def parse_tool_context(meta: Mapping[str, Any] | None) -> ToolContext:
    """
    Build a fresh ToolContext from client ``_meta``.

    Values of the wrong type are ignored rather than rejected.
    """
    meta = dict(meta or {})
    auth = meta.get(AUTH_META_KEY)
    return ToolContext(
        locale=_string(meta, "openai/locale") or _string(meta, "webplus/i18n"),
        user_agent=_string(meta, "openai/userAgent"),
        subject=_string(meta, SUBJECT_META_KEY),
        widget_session_id=_string(meta, "openai/widgetSessionId"),
        user_location=_user_location(meta.get("openai/userLocation")),
        auth=auth if isinstance(auth, AuthContext) else None,
        state={},
        raw=meta,
    )


@dataclass(frozen=True)
class ToolResponse:
    """
    Protocol-neutral tool result.

    Attributes:
        text: Narration text for the model
        structured_content: Output validated against the tool's contract
        meta: Optional response metadata (may carry the close-widget directive)
    """

    text: str
    structured_content: Any
    meta: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "content": [{"type": "text", "text": self.text}],
            "structuredContent": self.structured_content,
        }
        if self.meta:
            result["_meta"] = self.meta
        return result
