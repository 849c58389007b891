"""
Plugins and the plugin manager.

A plugin is a named bundle of optional hook functions. Hooks may be plain
functions or coroutines. The manager runs a hook across all plugins in
registration order, awaiting each one before the next, so before/after
ordering is deterministic.

Failure rules per hook:

    on_init            raises PluginError (startup must not continue)
    before_tool_call   propagates: aborts the call before the handler runs
    on_shutdown        concurrent, bounded by a timeout, failures logged
    everything else    isolated: logged, never fails the call, and the
                       remaining plugins still run

When the manager is given an EventEmitter, every hook failure except a
``before_tool_call`` one is also published as an ``error`` event with
``source="plugin:<name>:<hook>"``.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from appkit.events import EventEmitter
from appkit.tools import ToolContext

logger = logging.getLogger("appkit.plugins")

HookFn = Callable[..., Any]


# ---------------------------------------------------------------------------
# Hook contexts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PluginInitContext:
    config: Any
    tools: dict[str, Any]


@dataclass(frozen=True)
class PluginStartContext:
    transport: str
    port: int | None = None


@dataclass(frozen=True)
class PluginShutdownContext:
    graceful: bool
    timeout: float


@dataclass(frozen=True)
class ToolCallContext:
    tool_name: str
    input: Any
    metadata: ToolContext


@dataclass(frozen=True)
class RequestContext:
    method: str
    path: str
    headers: dict[str, str]
    metadata: ToolContext | None = None


@dataclass(frozen=True)
class ResponseContext:
    method: str
    path: str
    headers: dict[str, str]
    status_code: int
    body: Any = None


@dataclass(frozen=True)
class UILoadContext:
    ui_key: str
    uri: str


# ---------------------------------------------------------------------------
# Plugin definition
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Plugin:
    """
    Attributes:
        name: Plugin name (used in logs)
        version: Optional version string
        config: Plugin configuration
        config_schema: Optional pydantic model ``config`` must satisfy
        on_* / before_* / after_*: Optional hook callables
    """

    name: str
    version: str | None = None
    config: Any = None
    config_schema: type[BaseModel] | None = None

    on_init: HookFn | None = None
    on_start: HookFn | None = None
    on_shutdown: HookFn | None = None

    before_tool_call: HookFn | None = None
    after_tool_call: HookFn | None = None
    on_tool_error: HookFn | None = None

    on_request: HookFn | None = None
    on_response: HookFn | None = None

    on_ui_load: HookFn | None = None


class PluginError(Exception):
    """A plugin failed in a way that must stop the caller."""

    def __init__(self, plugin_name: str, hook: str, cause: BaseException):
        self.plugin_name = plugin_name
        self.hook = hook
        super().__init__(f"Plugin '{plugin_name}' {hook} failed: {cause}")


def create_plugin(**definition: Any) -> Plugin:
    """
    Build a Plugin, validating ``config`` against ``config_schema`` if given.

    A validated config replaces the raw one, so defaults declared on the
    schema are filled in.
    """
    schema = definition.get("config_schema")
    if schema is not None and definition.get("config") is not None:
        try:
            definition["config"] = schema.model_validate(definition["config"])
        except ValidationError as exc:
            raise ValueError(
                f"Invalid config for plugin '{definition.get('name')}': {exc}"
            ) from exc
    return Plugin(**definition)


async def _call(hook: HookFn, *args: Any) -> None:
    outcome = hook(*args)
    if inspect.isawaitable(outcome):
        await outcome


class PluginManager:
    """Runs lifecycle and tool hooks across registered plugins."""

    def __init__(self, plugins: list[Plugin] | None = None, events: EventEmitter | None = None):
        self._plugins: list[Plugin] = list(plugins or [])
        self._events = events
        self._frozen = False

    @property
    def plugins(self) -> tuple[Plugin, ...]:
        return tuple(self._plugins)

    def register(self, plugin: Plugin) -> None:
        if self._frozen:
            raise RuntimeError("Cannot register plugins after the app has started")
        self._plugins.append(plugin)

    def freeze(self) -> None:
        self._frozen = True

    # ----- Lifecycle hooks -----

    async def init(self, context: PluginInitContext) -> None:
        for plugin in self._plugins:
            if plugin.on_init is None:
                continue
            try:
                await _call(plugin.on_init, context)
            except Exception as exc:
                await self._report(plugin, "on_init", exc)
                raise PluginError(plugin.name, "on_init", exc) from exc

    async def start(self, context: PluginStartContext) -> None:
        await self.execute_hook("on_start", context)

    async def shutdown(self, context: PluginShutdownContext) -> None:
        async def _shutdown(plugin: Plugin) -> None:
            try:
                await asyncio.wait_for(_call(plugin.on_shutdown, context), context.timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Plugin shutdown timed out",
                    extra={"log_data": {"plugin": plugin.name, "timeout": context.timeout}},
                )
            except Exception as exc:
                logger.exception(
                    "Plugin shutdown failed", extra={"log_data": {"plugin": plugin.name}}
                )
                await self._report(plugin, "on_shutdown", exc)

        await asyncio.gather(
            *(_shutdown(plugin) for plugin in self._plugins if plugin.on_shutdown is not None)
        )

    # ----- Tool hooks -----

    async def before_tool_call(self, context: ToolCallContext) -> None:
        """Run ``before_tool_call`` hooks; the first failure aborts the call."""
        for plugin in self._plugins:
            if plugin.before_tool_call is not None:
                await _call(plugin.before_tool_call, context)

    async def after_tool_call(self, context: ToolCallContext, result: Any) -> None:
        await self.execute_hook("after_tool_call", context, result)

    async def on_tool_error(self, context: ToolCallContext, error: BaseException) -> None:
        await self.execute_hook("on_tool_error", context, error)

    # ----- HTTP / UI hooks -----

    async def on_request(self, context: RequestContext) -> None:
        await self.execute_hook("on_request", context)

    async def on_response(self, context: ResponseContext) -> None:
        await self.execute_hook("on_response", context)

    async def on_ui_load(self, context: UILoadContext) -> None:
        await self.execute_hook("on_ui_load", context)

    async def execute_hook(self, hook_name: str, *args: Any) -> None:
        """Run ``hook_name`` on every plugin, isolating and logging failures."""
        for plugin in self._plugins:
            hook = getattr(plugin, hook_name, None)
            if hook is None:
                continue
            try:
                await _call(hook, *args)
            except Exception as exc:
                logger.exception(
                    "Plugin hook failed",
                    extra={"log_data": {"plugin": plugin.name, "hook": hook_name}},
                )
                await self._report(plugin, hook_name, exc)

    async def _report(self, plugin: Plugin, hook_name: str, error: BaseException) -> None:
        if self._events is not None:
            await self._events.emit(
                "error", {"error": error, "source": f"plugin:{plugin.name}:{hook_name}"}
            )
