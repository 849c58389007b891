"""
MCP transport binding built on FastMCP v2.

This module exposes an ``App`` over Streamable HTTP:
- Every tool in the app is listed through FastMCP (schemas and annotations
  come from the tool definitions and the app's protocol adapter)
- Every ``tools/call`` is dispatched into the app's execution pipeline
- When OAuth is configured, every request to the MCP endpoint must carry a
  valid bearer token; failures are answered with an RFC 6750 challenge
- ``/health`` and ``/.well-known/oauth-protected-resource`` are plain HTTP
  routes and never require a token

Request flow for one tool call:

    1. BearerAuthMiddleware (Starlette) authenticates the HTTP request and
       stores the AuthContext on ``request.state.auth``
    2. FastMCP routes the JSON-RPC ``tools/call`` to PipelineMiddleware
    3. PipelineMiddleware reads the call's ``_meta``, injects the verified
       auth context and runs ``App.call_tool``
    4. The ToolResponse is returned as a FastMCP ToolResult; AppErrors become
       error results (``isError: true``)

Running the server:
    python -m appkit.server
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext
from fastmcp.server.middleware import Middleware as FastMCPMiddleware
from fastmcp.server.middleware import MiddlewareContext as FastMCPMiddlewareContext
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import CallToolRequestParams, TextContent, ToolAnnotations
from pydantic import Field, TypeAdapter
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp
import uvicorn

from appkit.app import App, AppConfig, create_app
from appkit.auth.authenticator import Authenticator, inject_auth_context
from appkit.auth.discovery import PROTECTED_RESOURCE_PATH, protected_resource_metadata
from appkit.auth.types import AuthContext
from appkit.config import settings
from appkit.errors import AppError
from appkit.log import configure_logging
from appkit.plugins import PluginManager, RequestContext, ResponseContext
from appkit.tools import ToolDefinition, ToolResponse

logger = logging.getLogger("appkit.server")

MCP_PATH = "/mcp"


# ---------------------------------------------------------------------------
# HTTP layer: bearer authentication and request/response hooks
# ---------------------------------------------------------------------------


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """
    Authenticates every request to the MCP endpoint.

    Unauthenticated requests never reach FastMCP: they are answered here with
    the OAuth error body and a ``WWW-Authenticate`` header. Plugin
    ``on_request`` / ``on_response`` hooks run for every request that passes
    through, including rejected ones.
    """

    def __init__(
        self,
        app: ASGIApp,
        authenticator: Authenticator | None = None,
        plugins: PluginManager | None = None,
        protected_path: str = MCP_PATH,
    ):
        super().__init__(app)
        self.authenticator = authenticator
        self.plugins = plugins or PluginManager()
        self.protected_path = protected_path

    def _is_protected(self, path: str) -> bool:
        return path == self.protected_path or path.startswith(self.protected_path + "/")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        headers = dict(request.headers)
        await self.plugins.on_request(
            RequestContext(method=request.method, path=request.url.path, headers=headers)
        )

        response: Response | None = None
        if self.authenticator is not None and self._is_protected(request.url.path):
            try:
                request.state.auth = await self.authenticator.authenticate(request.headers)
            except Exception as exc:
                rendered = self.authenticator.error_response(exc)
                response = JSONResponse(
                    rendered.body, status_code=rendered.status_code, headers=rendered.headers
                )

        if response is None:
            response = await call_next(request)

        await self.plugins.on_response(
            ResponseContext(
                method=request.method,
                path=request.url.path,
                headers=dict(response.headers),
                status_code=response.status_code,
            )
        )
        return response


def _request_auth() -> AuthContext | None:
    """Return the AuthContext stored by BearerAuthMiddleware, if any."""
    try:
        request = get_http_request()
    except RuntimeError:
        # No HTTP request (e.g. stdio transport)
        return None
    auth = getattr(request.state, "auth", None)
    return auth if isinstance(auth, AuthContext) else None


def _call_meta(message: CallToolRequestParams) -> dict[str, Any]:
    if message.meta is None:
        return {}
    return message.meta.model_dump(by_alias=True, exclude_none=True)


def to_tool_result(response: ToolResponse) -> ToolResult:
    structured = response.structured_content
    if structured is not None and not isinstance(structured, Mapping):
        structured = {"result": structured}
    return ToolResult(
        content=[TextContent(type="text", text=response.text)],
        structured_content=structured,
        meta=response.meta,
    )


async def dispatch_tool_call(
    app: App,
    name: str,
    arguments: Mapping[str, Any] | None,
    meta: dict[str, Any] | None = None,
) -> ToolResult:
    """
    Run one call through the pipeline with the request's verified identity.

    The verified subject always replaces any client-supplied
    ``openai/subject``.
    """
    meta = dict(meta or {})
    auth = _request_auth()
    if auth is not None:
        inject_auth_context(meta, auth)

    try:
        response = await app.call_tool(name, arguments, meta)
    except AppError as exc:
        raise ToolError(exc.format_message()) from exc
    return to_tool_result(response)


# ---------------------------------------------------------------------------
# MCP layer: tool listing and dispatch
# ---------------------------------------------------------------------------


class PipelineMiddleware(FastMCPMiddleware):
    """Sends every ``tools/call`` through the app's execution pipeline."""

    def __init__(self, app: App):
        self.app = app

    async def on_call_tool(
        self,
        context: FastMCPMiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        message = context.message
        if message.name not in self.app.tools:
            return await call_next(context)
        return await dispatch_tool_call(self.app, message.name, message.arguments, _call_meta(message))


class PipelineTool(Tool):
    """
    A listed tool whose calls are handled by the app pipeline.

    Calls normally arrive through PipelineMiddleware (which has the request
    ``_meta``); ``run`` covers servers built without it.
    """

    app: Any = Field(exclude=True)

    async def run(self, arguments: dict[str, Any]) -> ToolResult:
        return await dispatch_tool_call(self.app, self.name, arguments)


def _object_schema(contract: Any) -> dict[str, Any] | None:
    if contract is None:
        return None
    schema = TypeAdapter(contract).json_schema()
    return schema if schema.get("type") == "object" else None


def build_tool(app: App, definition: ToolDefinition) -> PipelineTool:
    tool_meta = app.adapter.build_tool_meta(definition, app.name)
    meta = dict(tool_meta["_meta"])
    if definition.invoking_message:
        meta["openai/toolInvocation/invoking"] = definition.invoking_message
    if definition.invoked_message:
        meta["openai/toolInvocation/invoked"] = definition.invoked_message

    return PipelineTool(
        app=app,
        name=definition.name,
        title=definition.title,
        description=definition.description,
        parameters=TypeAdapter(definition.input).json_schema(),
        output_schema=_object_schema(definition.output),
        annotations=ToolAnnotations(**tool_meta["annotations"]),
        meta=meta or None,
    )


def build_mcp(app: App) -> FastMCP:
    """Create the FastMCP server listing ``app``'s tools and its plain HTTP routes."""
    mcp = FastMCP(name=app.name, version=app.version, middleware=[PipelineMiddleware(app)])
    for definition in app.tools.values():
        mcp.add_tool(build_tool(app, definition))

    @mcp.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> Response:
        """Liveness check: is the server process alive and responsive?"""
        return JSONResponse({"status": "ok", "name": app.name, "version": app.version})

    oauth = app.config.oauth
    if oauth is not None:

        @mcp.custom_route(PROTECTED_RESOURCE_PATH, methods=["GET"])
        async def protected_resource(request: Request) -> Response:
            return JSONResponse(protected_resource_metadata(oauth))

    return mcp


def build_server(app: App, authenticator: Authenticator | None = None) -> Starlette:
    """
    Build the Streamable HTTP ASGI app for ``app``.

    Args:
        app: The application whose tools are served
        authenticator: Bearer authenticator; built from ``app.config.oauth``
                       when omitted. Without either, the MCP endpoint is open.
    """
    if authenticator is None and app.config.oauth is not None:
        authenticator = Authenticator(app.config.oauth)

    mcp = build_mcp(app)
    return mcp.http_app(
        path=MCP_PATH,
        transport="streamable-http",
        middleware=[
            Middleware(
                BearerAuthMiddleware,
                authenticator=authenticator,
                plugins=app.plugins,
                protected_path=MCP_PATH,
            )
        ],
    )


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------


async def prepare_server(app: App, authenticator: Authenticator | None = None) -> Starlette:
    """
    Resolve the verification path, start ``app`` and return its ASGI server.

    Discovery runs here, so a misconfigured authorization server stops the
    process before it accepts connections.
    """
    if authenticator is None and app.config.oauth is not None:
        authenticator = Authenticator(app.config.oauth)
    if authenticator is not None:
        await authenticator.start()
    asgi_app = build_server(app, authenticator)
    await app.start(transport="http", port=settings.port)
    return asgi_app


async def serve(app: App) -> None:
    """Start the app, serve it until interrupted, then shut it down."""
    asgi_app = await prepare_server(app)
    logger.info(
        "Starting MCP server on %s:%d (transport=streamable-http, auth=%s)",
        settings.host,
        settings.port,
        "enabled" if app.config.oauth is not None else "disabled",
    )
    config = uvicorn.Config(
        asgi_app, host=settings.host, port=settings.port, log_level=settings.log_level
    )
    try:
        await uvicorn.Server(config).serve()
    finally:
        await app.shutdown()


def main(app: App | None = None) -> None:
    configure_logging(settings.log_level)
    if app is None:
        app = create_app(
            AppConfig(
                name=settings.app_name,
                version=settings.app_version,
                tools=[],
                oauth=settings.oauth_config(),
            )
        )
    asyncio.run(serve(app))


if __name__ == "__main__":
    main()
