"""Tool-serving application core: bearer authentication plus the tool execution pipeline."""

from appkit.app import App, AppConfig, create_app
from appkit.config import OAuthConfig
from appkit.errors import AppError, ErrorCode
from appkit.events import EventEmitter
from appkit.logging_plugin import logging_plugin
from appkit.middleware import MiddlewareChain, MiddlewareContext
from appkit.pipeline import ExecutionPipeline
from appkit.plugins import Plugin, PluginManager, create_plugin
from appkit.tools import ToolContext, ToolDefinition, ToolResponse, define_tool

__all__ = [
    "App",
    "AppConfig",
    "AppError",
    "ErrorCode",
    "EventEmitter",
    "ExecutionPipeline",
    "MiddlewareChain",
    "MiddlewareContext",
    "OAuthConfig",
    "Plugin",
    "PluginManager",
    "ToolContext",
    "ToolDefinition",
    "ToolResponse",
    "create_app",
    "create_plugin",
    "define_tool",
    "logging_plugin",
]
