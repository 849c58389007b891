"""
Application object: the process-wide configuration of tools, plugins,
middleware and event listeners, plus the pipeline built from them.

Lifecycle:

    app = create_app(AppConfig(name="demo", version="1.0.0", tools=[greet]))
    app.use(my_middleware)                 # startup phase: registries are mutable
    app.on("tool:error", alert)
    await app.start(transport="http", port=8080)
    # serving: plugin and middleware registries are frozen (read-only)
    response = await app.call_tool("greet", {"name": "Alice"}, meta)
    await app.shutdown()
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from appkit.adapters import ProtocolAdapter, get_adapter
from appkit.config import OAuthConfig
from appkit.errors import AppError, ErrorCode
from appkit.events import AnyEventHandler, EventEmitter, EventHandler, Unsubscribe
from appkit.middleware import Middleware, MiddlewareChain
from appkit.pipeline import ExecutionPipeline
from appkit.plugins import (
    Plugin,
    PluginInitContext,
    PluginManager,
    PluginShutdownContext,
    PluginStartContext,
)
from appkit.tools import ToolDefinition, ToolResponse

logger = logging.getLogger("appkit.app")


@dataclass(frozen=True)
class AppConfig:
    """
    Static application configuration, validated on construction.

    ``tools`` may be a list of ToolDefinitions or a mapping of name to
    definition; it is normalised to a mapping keyed by tool name.
    """

    name: str
    version: str
    tools: Mapping[str, ToolDefinition] | list[ToolDefinition]
    plugins: list[Plugin] = field(default_factory=list)
    oauth: OAuthConfig | None = None
    protocol: str = "mcp"

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise AppError(ErrorCode.INVALID_CONFIG, "Config.name is required and must be a non-empty string")
        if not isinstance(self.version, str) or not self.version:
            raise AppError(
                ErrorCode.INVALID_CONFIG, "Config.version is required and must be a non-empty string"
            )
        if self.tools is None:
            raise AppError(ErrorCode.INVALID_CONFIG, "Config.tools is required")

        if isinstance(self.tools, Mapping):
            items = list(self.tools.values())
        else:
            items = list(self.tools)

        registry: dict[str, ToolDefinition] = {}
        for tool in items:
            if not isinstance(tool, ToolDefinition):
                raise AppError(ErrorCode.INVALID_CONFIG, f"Invalid tool definition: {tool!r}")
            if tool.name in registry:
                raise AppError(ErrorCode.INVALID_CONFIG, f"Duplicate tool name '{tool.name}'")
            registry[tool.name] = tool
        object.__setattr__(self, "tools", registry)


class App:
    """
    A configured application: tools, plugins, middleware and events.

    Plugins and middleware are registered before ``start()``; afterwards both
    registries are frozen and only event listeners may still be added. Tool
    calls go through ``call_tool()`` or a transport built by ``appkit.server``.
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self.tools: dict[str, ToolDefinition] = dict(config.tools)
        self.events = EventEmitter()
        self.plugins = PluginManager(config.plugins, self.events)
        self.middleware = MiddlewareChain()
        # Selected once; never re-resolved per call.
        self.adapter: ProtocolAdapter = get_adapter(config.protocol)
        self.pipeline = ExecutionPipeline(self.tools, self.plugins, self.middleware, self.events)
        self._started = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def version(self) -> str:
        return self.config.version

    @property
    def started(self) -> bool:
        return self._started

    # ----- Startup-phase registration -----

    def use(self, middleware: Middleware) -> None:
        if self._started:
            raise AppError(ErrorCode.INVALID_CONFIG, "Cannot add middleware after the app has started")
        self.middleware.use(middleware)

    def register_plugin(self, plugin: Plugin) -> None:
        if self._started:
            raise AppError(ErrorCode.INVALID_CONFIG, "Cannot add plugins after the app has started")
        self.plugins.register(plugin)

    def on(self, event: str, handler: EventHandler) -> Unsubscribe:
        return self.events.on(event, handler)

    def once(self, event: str, handler: EventHandler) -> Unsubscribe:
        return self.events.once(event, handler)

    def on_any(self, handler: AnyEventHandler) -> Unsubscribe:
        return self.events.on_any(handler)

    # ----- Lifecycle -----

    async def start(self, transport: str = "http", port: int | None = None) -> None:
        """Initialise plugins, freeze registries and announce the start."""
        if self._started:
            return

        await self.plugins.init(PluginInitContext(config=self.config, tools=self.tools))
        self.plugins.freeze()
        self.middleware.freeze()
        self._started = True

        logger.info(
            "App started",
            extra={
                "log_data": {
                    "app": self.name,
                    "version": self.version,
                    "transport": transport,
                    "tools": sorted(self.tools),
                    "middleware": len(self.middleware),
                    "plugins": [plugin.name for plugin in self.plugins.plugins],
                }
            },
        )
        await self.events.emit("app:init", {"config": self.config})
        await self.events.emit("app:start", {"transport": transport, "port": port})
        await self.plugins.start(PluginStartContext(transport=transport, port=port))

    async def shutdown(self, graceful: bool = True, timeout: float = 5.0) -> None:
        await self.events.emit("app:shutdown", {"graceful": graceful})
        await self.plugins.shutdown(PluginShutdownContext(graceful=graceful, timeout=timeout))

    async def call_tool(
        self,
        name: str,
        arguments: Mapping[str, Any] | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> ToolResponse:
        return await self.pipeline.call(name, arguments, meta)


def create_app(config: AppConfig) -> App:
    """Create an App from a validated AppConfig."""
    return App(config)
