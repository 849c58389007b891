"""
Built-in logging plugin.

Logs app lifecycle and every tool call (before/after/error) through the
``appkit.plugins.logging`` logger. Usage:

    app = create_app(AppConfig(..., plugins=[logging_plugin(level="debug")]))
"""

import logging
from typing import Any, Literal

from pydantic import BaseModel

from appkit.plugins import (
    Plugin,
    PluginInitContext,
    PluginShutdownContext,
    PluginStartContext,
    ToolCallContext,
    create_plugin,
)

logger = logging.getLogger("appkit.plugins.logging")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class LoggingPluginConfig(BaseModel):
    level: Literal["debug", "info", "warn", "error"] = "info"


def logging_plugin(level: str = "info") -> Plugin:
    config = LoggingPluginConfig(level=level)
    threshold = _LEVELS[config.level]

    def log(level_no: int, message: str, data: dict[str, Any] | None = None) -> None:
        if level_no < threshold:
            return
        logger.log(level_no, message, extra={"log_data": data or {}})

    def on_init(context: PluginInitContext) -> None:
        log(logging.INFO, "App initialized", {"tools": sorted(context.tools)})

    def on_start(context: PluginStartContext) -> None:
        log(logging.INFO, "App started", {"transport": context.transport, "port": context.port})

    def on_shutdown(context: PluginShutdownContext) -> None:
        log(logging.INFO, "App shutting down", {"graceful": context.graceful})

    def before_tool_call(context: ToolCallContext) -> None:
        log(logging.DEBUG, "Tool call started", {"tool": context.tool_name, "input": context.input})
        log(logging.INFO, "Tool called", {"tool": context.tool_name})

    def after_tool_call(context: ToolCallContext, result: Any) -> None:
        log(logging.INFO, "Tool call succeeded", {"tool": context.tool_name})
        log(logging.DEBUG, "Tool result", {"tool": context.tool_name, "result": result})

    def on_tool_error(context: ToolCallContext, error: BaseException) -> None:
        log(logging.ERROR, "Tool call failed", {"tool": context.tool_name, "error": str(error)})

    return create_plugin(
        name="logging",
        version="1.0.0",
        config=config.model_dump(),
        config_schema=LoggingPluginConfig,
        on_init=on_init,
        on_start=on_start,
        on_shutdown=on_shutdown,
        before_tool_call=before_tool_call,
        after_tool_call=after_tool_call,
        on_tool_error=on_tool_error,
    )
