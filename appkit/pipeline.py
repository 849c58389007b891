"""
Tool execution pipeline.

Stages for one call, strictly in this order:

    1. Input validation       arguments -> tool input contract
    2. Context build          _meta (+ injected auth) -> ToolContext, fresh state bag
       -> emit "tool:called"
    3. Plugin before hooks    failure aborts the call
    4. Middleware chain       the handler is the innermost continuation
    5. Plugin after / error   isolated, never change the outcome
    6. Output shaping         strip _text/_meta/_close_widget, validate the rest
    7. Response assembly
       -> emit "tool:success" or "tool:error" (exactly once, with duration)

Input validation failures are raised before anything else happens and are
never seen by hooks or events. Everything after the context build leaves
through a single error path, so every call that got that far emits exactly
one success or failure event.

Errors leaving the pipeline are AppErrors. Handler failures are wrapped in a
generic "Tool execution failed: ..." message; the original exception is kept
as ``__cause__`` and is what error hooks and events see.
"""

import inspect
import json
import logging
import time
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError

from appkit.errors import AppError, ErrorCode, format_validation_error
from appkit.events import EventEmitter
from appkit.middleware import (
    RESPONSE_STATE_KEY,
    MiddlewareChain,
    MiddlewareContext,
    MultipleNextCallsError,
)
from appkit.plugins import PluginManager, ToolCallContext
from appkit.tools import (
    CLOSE_WIDGET_KEY,
    CLOSE_WIDGET_META_KEY,
    DIRECTIVE_KEYS,
    META_KEY,
    TEXT_KEY,
    ToolContext,
    ToolDefinition,
    ToolResponse,
    parse_tool_context,
)

logger = logging.getLogger("appkit.pipeline")


class ToolNotFoundError(AppError):
    def __init__(self, name: str):
        super().__init__(ErrorCode.TOOL_NOT_FOUND, f"Tool '{name}' not found")


class ToolInputError(AppError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.INVALID_INPUT, message, details)


class ToolOutputError(AppError):
    """
    The handler returned data that violates its output contract.

    The message callers see is the same generic wrapper used for handler
    failures; ``code`` and ``details`` keep the distinction for logs/events.
    """

    def __init__(self, detail: str, details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.INVALID_OUTPUT, f"Tool execution failed: {detail}", details)


class PipelineConfigurationError(AppError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.INTERNAL_ERROR, message)


class ToolExecutionError(AppError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.TOOL_EXECUTION_ERROR, f"Tool execution failed: {message}")


def _to_json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


class ExecutionPipeline:
    """
    Runs tool calls through validation, hooks, middleware and the handler.

    Args:
        tools: Tool definitions keyed by name
        plugins: Plugin manager (empty by default)
        middleware: Middleware chain (empty by default)
        events: Event emitter for tool lifecycle events
    """

    def __init__(
        self,
        tools: Mapping[str, ToolDefinition],
        plugins: PluginManager | None = None,
        middleware: MiddlewareChain | None = None,
        events: EventEmitter | None = None,
    ):
        self._tools = dict(tools)
        self._plugins = plugins or PluginManager()
        self._middleware = middleware or MiddlewareChain()
        self._events = events or EventEmitter()

        # Contracts are compiled once per tool.
        self._input_adapters = {name: TypeAdapter(tool.input) for name, tool in self._tools.items()}
        self._output_adapters = {
            name: TypeAdapter(tool.output)
            for name, tool in self._tools.items()
            if tool.output is not None
        }

    @property
    def tools(self) -> dict[str, ToolDefinition]:
        return dict(self._tools)

    async def call(
        self,
        name: str,
        arguments: Mapping[str, Any] | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> ToolResponse:
        """
        Execute tool ``name``.

        Raises:
            ToolNotFoundError: Unknown tool
            ToolInputError: Arguments violate the input contract
            ToolOutputError: Handler output violates the output contract
            PipelineConfigurationError: Middleware consumed the call without
                                        producing a response
            ToolExecutionError: Any other failure in hooks, middleware or handler
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)

        try:
            parsed = self._input_adapters[name].validate_python(dict(arguments or {}))
        except ValidationError as exc:
            error = format_validation_error(exc, ErrorCode.INVALID_INPUT)
            logger.info(
                "Tool input rejected",
                extra={"log_data": {"tool": name, "issues": error.details["issues"]}},
            )
            raise ToolInputError(error.message, error.details) from exc

        context = parse_tool_context(meta)
        call_context = ToolCallContext(tool_name=name, input=parsed, metadata=context)
        await self._events.emit("tool:called", {"tool_name": name, "input": parsed, "context": context})
        started = time.perf_counter()

        try:
            await self._plugins.before_tool_call(call_context)
            result = await self._run_chain(tool, parsed, context)
        except Exception as exc:
            await self._plugins.on_tool_error(call_context, exc)
            wrapped = await self._fail(name, exc, started)
            if wrapped is exc:
                raise
            raise wrapped from exc

        await self._plugins.after_tool_call(call_context, result)

        try:
            response = self._shape_response(tool, result)
        except ToolOutputError as exc:
            await self._fail(name, exc, started)
            raise

        duration = (time.perf_counter() - started) * 1000
        logger.info(
            "Tool call succeeded",
            extra={"log_data": {"tool": name, "duration_ms": round(duration, 3)}},
        )
        await self._events.emit(
            "tool:success",
            {"tool_name": name, "result": response.structured_content, "duration": duration},
        )
        return response

    async def _run_chain(self, tool: ToolDefinition, parsed: Any, context: ToolContext) -> Any:
        mw_context = MiddlewareContext(
            tool_name=tool.name, input=parsed, metadata=context, state=context.state
        )
        # The handler result is captured here, outside the chain's own return value.
        captured: dict[str, Any] = {}

        async def run_handler() -> None:
            outcome = tool.handler(parsed, context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            captured["result"] = outcome

        await self._middleware.execute(mw_context, run_handler)

        if "result" in captured:
            return captured["result"]
        if RESPONSE_STATE_KEY in context.state:
            return context.state[RESPONSE_STATE_KEY]
        raise PipelineConfigurationError(
            f"Middleware completed without calling next() or setting a response for tool '{tool.name}'"
        )

    def _shape_response(self, tool: ToolDefinition, result: Any) -> ToolResponse:
        text: Any = None
        extra_meta: Any = None
        close_widget = False
        payload = result

        if isinstance(result, Mapping):
            text = result.get(TEXT_KEY)
            extra_meta = result.get(META_KEY)
            close_widget = bool(result.get(CLOSE_WIDGET_KEY))
            payload = {key: value for key, value in result.items() if key not in DIRECTIVE_KEYS}

        adapter = self._output_adapters.get(tool.name)
        if adapter is not None:
            try:
                validated = adapter.validate_python(payload)
            except ValidationError as exc:
                error = format_validation_error(exc, ErrorCode.INVALID_OUTPUT)
                raise ToolOutputError(error.message, error.details) from exc
            structured = adapter.dump_python(validated, mode="json")
        elif isinstance(payload, BaseModel):
            structured = payload.model_dump(mode="json")
        else:
            structured = payload

        meta = dict(extra_meta) if isinstance(extra_meta, Mapping) else {}
        if close_widget:
            meta[CLOSE_WIDGET_META_KEY] = True

        if not isinstance(text, str):
            text = _to_json_text(structured)

        return ToolResponse(text=text, structured_content=structured, meta=meta or None)

    async def _fail(self, name: str, error: Exception, started: float) -> AppError:
        if isinstance(error, (ToolOutputError, PipelineConfigurationError)):
            wrapped: AppError = error
        elif isinstance(error, MultipleNextCallsError):
            wrapped = PipelineConfigurationError(str(error))
        elif isinstance(error, AppError):
            wrapped = ToolExecutionError(error.message)
        else:
            wrapped = ToolExecutionError(str(error) or type(error).__name__)

        duration = (time.perf_counter() - started) * 1000
        logger.error(
            "Tool call failed",
            exc_info=error,
            extra={
                "log_data": {
                    "tool": name,
                    "code": wrapped.code,
                    "error_type": type(error).__name__,
                    "duration_ms": round(duration, 3),
                }
            },
        )
        await self._events.emit(
            "tool:error",
            {"tool_name": name, "error": error, "code": wrapped.code, "duration": duration},
        )
        return wrapped
