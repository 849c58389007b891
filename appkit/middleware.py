"""
Continuation-style middleware around tool handlers.

A middleware is an async callable ``(context, next) -> None``. It either
awaits ``next()`` (doing work before and/or after) or stops the chain by
writing a response into ``context.state["response"]`` without calling it:

    async def audit(context, next):
        started = time.perf_counter()
        await next()
        context.state["elapsed"] = time.perf_counter() - started

Order is registration order: the first registered middleware is the
outermost one. The innermost continuation is the tool handler.

The chain is composed once when it is frozen (at app start); per call only
the small dispatch closures are created.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from appkit.tools import ToolContext

logger = logging.getLogger("appkit.middleware")

RESPONSE_STATE_KEY = "response"

Next = Callable[[], Awaitable[None]]
Middleware = Callable[["MiddlewareContext", Next], Awaitable[None]]


@dataclass
class MiddlewareContext:
    """
    Passed by reference through the chain.

    Attributes:
        tool_name: Name of the tool being called
        input: Validated tool input
        metadata: The call's ToolContext
        state: The call's mutable state bag (same dict as ``metadata.state``)
    """

    tool_name: str
    input: Any
    metadata: ToolContext
    state: dict[str, Any] = field(default_factory=dict)


class MultipleNextCallsError(Exception):
    def __init__(self, middleware_index: int):
        self.middleware_index = middleware_index
        super().__init__(f"Middleware at index {middleware_index} called next() multiple times")


class MiddlewareTimeoutError(Exception):
    def __init__(self, timeout: float, middleware_index: int | None = None):
        timeout_ms = int(timeout * 1000)
        if middleware_index is not None:
            message = f"Middleware at index {middleware_index} timed out after {timeout_ms}ms"
        else:
            message = f"Middleware chain timed out after {timeout_ms}ms"
        super().__init__(message)


class FrozenRegistryError(RuntimeError):
    """Raised when registering after the registry has been frozen."""


def _compose(middleware: tuple[Middleware, ...]) -> Callable[[MiddlewareContext, Next], Awaitable[None]]:
    async def run(context: MiddlewareContext, terminal: Next) -> None:
        async def dispatch(index: int) -> None:
            if index == len(middleware):
                await terminal()
                return

            called = False

            async def next_() -> None:
                nonlocal called
                if called:
                    raise MultipleNextCallsError(index)
                called = True
                await dispatch(index + 1)

            await middleware[index](context, next_)

        await dispatch(0)

    return run


class MiddlewareChain:
    """Ordered, append-only list of middleware, frozen once serving starts."""

    def __init__(self) -> None:
        self._middleware: list[Middleware] = []
        self._composed: Callable[[MiddlewareContext, Next], Awaitable[None]] | None = None

    @property
    def frozen(self) -> bool:
        return self._composed is not None

    def use(self, middleware: Middleware) -> None:
        if self.frozen:
            raise FrozenRegistryError("Cannot register middleware after the chain is frozen")
        self._middleware.append(middleware)

    def freeze(self) -> None:
        if self._composed is None:
            self._composed = _compose(tuple(self._middleware))

    def has_middleware(self) -> bool:
        return bool(self._middleware)

    def __len__(self) -> int:
        return len(self._middleware)

    async def execute(self, context: MiddlewareContext, handler: Next) -> None:
        """Run the chain with ``handler`` as the innermost continuation."""
        if not self._middleware:
            await handler()
            return
        composed = self._composed or _compose(tuple(self._middleware))
        await composed(context, handler)


# ---------------------------------------------------------------------------
# Common middleware patterns
# ---------------------------------------------------------------------------


def compose_middleware(middleware: list[Middleware]) -> Middleware:
    """Combine several middleware into one, preserving order."""
    composed = _compose(tuple(middleware))

    async def combined(context: MiddlewareContext, next: Next) -> None:
        await composed(context, next)

    return combined


def create_error_handler(
    handler: Callable[[Exception, MiddlewareContext], Any],
) -> Middleware:
    """Observe errors raised further down the chain, then re-raise them."""

    async def error_handler(context: MiddlewareContext, next: Next) -> None:
        try:
            await next()
        except Exception as exc:
            outcome = handler(exc, context)
            if asyncio.iscoroutine(outcome):
                await outcome
            raise

    return error_handler


def create_conditional_middleware(
    condition: Callable[[MiddlewareContext], bool], middleware: Middleware
) -> Middleware:
    """Run ``middleware`` only when ``condition(context)`` is true."""

    async def conditional(context: MiddlewareContext, next: Next) -> None:
        if condition(context):
            await middleware(context, next)
        else:
            await next()

    return conditional


def create_timeout_middleware(timeout: float) -> Middleware:
    """Fail the rest of the chain with MiddlewareTimeoutError after ``timeout`` seconds."""

    async def timeout_middleware(context: MiddlewareContext, next: Next) -> None:
        try:
            await asyncio.wait_for(next(), timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Middleware chain timed out",
                extra={"log_data": {"tool": context.tool_name, "timeout": timeout}},
            )
            raise MiddlewareTimeoutError(timeout) from exc

    return timeout_middleware
