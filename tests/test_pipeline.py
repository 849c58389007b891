"""
Tests for the tool execution pipeline: stage order, response shaping, error
wrapping and event/hook guarantees.
"""

import asyncio

import pytest
from pydantic import BaseModel

from appkit.auth.authenticator import AUTH_META_KEY, SUBJECT_META_KEY
from appkit.auth.types import AuthContext
from appkit.errors import AppError, ErrorCode
from appkit.events import EventEmitter
from appkit.middleware import RESPONSE_STATE_KEY, MiddlewareChain
from appkit.pipeline import (
    ExecutionPipeline,
    PipelineConfigurationError,
    ToolExecutionError,
    ToolInputError,
    ToolNotFoundError,
    ToolOutputError,
)
from appkit.plugins import PluginManager, create_plugin
from appkit.tools import define_tool


class GreetInput(BaseModel):
    name: str


class GreetOutput(BaseModel):
    message: str


def greet_handler(data: GreetInput, context):
    return {"message": f"Hello, {data.name}!"}


greet = define_tool(
    name="greet",
    description="Greet someone by name",
    input=GreetInput,
    output=GreetOutput,
    handler=greet_handler,
)


class Recorder:
    """Collects events and hook invocations in the order they happen."""

    def __init__(self):
        self.log: list[str] = []
        self.events: dict[str, list[dict]] = {}

    def listen(self, emitter: EventEmitter) -> None:
        def on_any(event, payload):
            self.log.append(f"event:{event}")
            self.events.setdefault(event, []).append(payload)

        emitter.on_any(on_any)

    def plugin(self, **overrides):
        hooks = {
            "before_tool_call": lambda context: self.log.append("before"),
            "after_tool_call": lambda context, result: self.log.append("after"),
            "on_tool_error": lambda context, error: self.log.append(f"error:{type(error).__name__}"),
        }
        hooks.update(overrides)
        return create_plugin(name="recorder", **hooks)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_pipeline(recorder):
    def _make_pipeline(*tools, middleware=(), plugins=None):
        chain = MiddlewareChain()
        for item in middleware:
            chain.use(item)
        chain.freeze()
        events = EventEmitter()
        recorder.listen(events)
        manager = PluginManager(plugins if plugins is not None else [recorder.plugin()])
        return ExecutionPipeline({tool.name: tool for tool in tools or (greet,)}, manager, chain, events)

    return _make_pipeline


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSuccessfulCalls:
    async def test_greet(self, make_pipeline, recorder):
        """The greet tool returns text and structured content."""
        response = await make_pipeline().call("greet", {"name": "Alice"})

        assert response.structured_content == {"message": "Hello, Alice!"}
        assert response.text == '{"message":"Hello, Alice!"}'
        assert response.meta is None
        assert response.to_dict() == {
            "content": [{"type": "text", "text": '{"message":"Hello, Alice!"}'}],
            "structuredContent": {"message": "Hello, Alice!"},
        }

    async def test_stage_order(self, make_pipeline, recorder):
        """Events, hooks, middleware and handler run in a fixed order."""

        async def middleware(context, next):
            recorder.log.append("middleware")
            await next()

        def handler(data, context):
            recorder.log.append("handler")
            return {"message": "hi"}

        tool = define_tool(name="greet", description="", input=GreetInput, output=GreetOutput, handler=handler)

        await make_pipeline(tool, middleware=[middleware]).call("greet", {"name": "A"})

        assert recorder.log == [
            "event:tool:called",
            "before",
            "middleware",
            "handler",
            "after",
            "event:tool:success",
        ]

    async def test_success_event_payload(self, make_pipeline, recorder):
        """tool:success carries the result and a duration."""
        await make_pipeline().call("greet", {"name": "Alice"})

        (payload,) = recorder.events["tool:success"]
        assert payload["tool_name"] == "greet"
        assert payload["result"] == {"message": "Hello, Alice!"}
        assert payload["duration"] >= 0

    async def test_async_handler(self, make_pipeline):
        """Coroutine handlers are awaited."""

        async def handler(data, context):
            await asyncio.sleep(0)
            return {"message": data.name.upper()}

        tool = define_tool(name="shout", description="", input=GreetInput, output=GreetOutput, handler=handler)

        response = await make_pipeline(tool).call("shout", {"name": "bob"})

        assert response.structured_content == {"message": "BOB"}

    async def test_tool_without_output_contract(self, make_pipeline):
        """Without an output contract the result is passed through."""
        tool = define_tool(
            name="echo", description="", input=GreetInput, handler=lambda data, context: [data.name, 1]
        )

        response = await make_pipeline(tool).call("echo", {"name": "ü"})

        assert response.structured_content == ["ü", 1]
        assert response.text == '["ü",1]'


# ---------------------------------------------------------------------------
# Response directives
# ---------------------------------------------------------------------------


class TestDirectives:
    async def test_text_meta_and_close_widget_are_stripped(self, make_pipeline):
        """Out-of-band keys move to text and meta."""

        def handler(data, context):
            return {
                "message": "done",
                "_text": "All done!",
                "_meta": {"trace": "abc"},
                "_close_widget": True,
            }

        tool = define_tool(name="finish", description="", input=GreetInput, output=GreetOutput, handler=handler)

        response = await make_pipeline(tool).call("finish", {"name": "x"})

        assert response.structured_content == {"message": "done"}
        assert response.text == "All done!"
        assert response.meta == {"trace": "abc", "openai/closeWidget": True}

    async def test_directives_do_not_trip_strict_output_contracts(self, make_pipeline):
        """Out-of-band keys are removed before output validation."""

        class Strict(BaseModel):
            model_config = {"extra": "forbid"}
            message: str

        tool = define_tool(
            name="strict",
            description="",
            input=GreetInput,
            output=Strict,
            handler=lambda data, context: {"message": "ok", "_text": "fine"},
        )

        response = await make_pipeline(tool).call("strict", {"name": "x"})

        assert response.structured_content == {"message": "ok"}


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class TestContext:
    async def test_handler_receives_parsed_meta(self, make_pipeline):
        """The handler's context reflects the client _meta."""
        seen = {}

        def handler(data, context):
            seen["context"] = context
            return {"message": "ok"}

        tool = define_tool(name="ctx", description="", input=GreetInput, output=GreetOutput, handler=handler)
        auth = AuthContext(subject="alice", scopes=["read"], expires_at=0, client_id="c")

        await make_pipeline(tool).call(
            "ctx",
            {"name": "x"},
            {
                "webplus/i18n": "de-DE",
                "openai/userAgent": "host/1.0",
                "openai/widgetSessionId": "w-1",
                "openai/userLocation": {"city": "Berlin", "latitude": 52.5, "longitude": "bad"},
                SUBJECT_META_KEY: "alice",
                AUTH_META_KEY: auth,
            },
        )

        context = seen["context"]
        assert context.locale == "de-DE"
        assert context.user_agent == "host/1.0"
        assert context.widget_session_id == "w-1"
        assert context.user_location.city == "Berlin"
        assert context.user_location.latitude == 52.5
        assert context.user_location.longitude is None
        assert context.subject == "alice"
        assert context.auth is auth

    async def test_openai_locale_wins_over_legacy_key(self, make_pipeline):
        """openai/locale takes precedence over webplus/i18n."""
        seen = {}

        def handler(data, context):
            seen["locale"] = context.locale
            return {"message": "ok"}

        tool = define_tool(name="ctx", description="", input=GreetInput, output=GreetOutput, handler=handler)

        await make_pipeline(tool).call(
            "ctx", {"name": "x"}, {"openai/locale": "fr-FR", "webplus/i18n": "de-DE"}
        )

        assert seen["locale"] == "fr-FR"

    async def test_unrepresentable_coordinates_are_ignored(self, make_pipeline):
        """Coordinates that are not finite floats are dropped, not raised."""
        seen = {}

        def handler(data, context):
            seen["location"] = context.user_location
            return {"message": "ok"}

        tool = define_tool(name="ctx", description="", input=GreetInput, output=GreetOutput, handler=handler)

        response = await make_pipeline(tool).call(
            "ctx",
            {"name": "x"},
            {"openai/userLocation": {"city": "Oslo", "latitude": 10**400, "longitude": float("nan")}},
        )

        assert response.structured_content == {"message": "ok"}
        assert seen["location"].city == "Oslo"
        assert seen["location"].latitude is None
        assert seen["location"].longitude is None

    async def test_state_bag_is_shared_within_a_call_and_isolated_across_calls(self, make_pipeline):
        """Concurrent calls never see each other's state."""

        async def tag(context, next):
            context.state["input_name"] = context.input.name
            await asyncio.sleep(0)
            await next()

        async def handler(data, context):
            await asyncio.sleep(0)
            return {"message": context.state["input_name"]}

        tool = define_tool(name="tag", description="", input=GreetInput, output=GreetOutput, handler=handler)
        pipeline = make_pipeline(tool, middleware=[tag])

        responses = await asyncio.gather(
            *(pipeline.call("tag", {"name": f"user-{i}"}) for i in range(20))
        )

        assert [r.structured_content["message"] for r in responses] == [f"user-{i}" for i in range(20)]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestInputErrors:
    async def test_unknown_tool(self, make_pipeline, recorder):
        """An unregistered name is TOOL_NOT_FOUND."""
        with pytest.raises(ToolNotFoundError, match="Tool 'nope' not found") as exc_info:
            await make_pipeline().call("nope", {})

        assert exc_info.value.code == ErrorCode.TOOL_NOT_FOUND
        assert recorder.log == []

    async def test_invalid_input_runs_nothing(self, make_pipeline, recorder):
        """Invalid input fails before any hook or handler."""
        with pytest.raises(ToolInputError) as exc_info:
            await make_pipeline().call("greet", {"name": 42})

        error = exc_info.value
        assert error.code == ErrorCode.INVALID_INPUT
        assert error.message.startswith("Validation failed: name:")
        assert error.details["issues"][0]["path"] == ["name"]
        assert recorder.log == []

    async def test_missing_arguments(self, make_pipeline):
        """None arguments are validated like an empty object."""
        with pytest.raises(ToolInputError, match="name"):
            await make_pipeline().call("greet", None)


class TestHandlerErrors:
    async def test_handler_exception_is_wrapped(self, make_pipeline, recorder):
        """Handler failures become ToolExecutionError."""

        def handler(data, context):
            raise RuntimeError("database unavailable")

        tool = define_tool(name="greet", description="", input=GreetInput, handler=handler)

        with pytest.raises(ToolExecutionError) as exc_info:
            await make_pipeline(tool).call("greet", {"name": "x"})

        error = exc_info.value
        assert error.code == ErrorCode.TOOL_EXECUTION_ERROR
        assert error.message == "Tool execution failed: database unavailable"
        assert isinstance(error.__cause__, RuntimeError)
        assert recorder.log == ["event:tool:called", "before", "error:RuntimeError", "event:tool:error"]

    async def test_error_event_carries_original_error(self, make_pipeline, recorder):
        """tool:error gets the error the handler raised."""
        boom = RuntimeError("boom")

        def handler(data, context):
            raise boom

        tool = define_tool(name="greet", description="", input=GreetInput, handler=handler)

        with pytest.raises(ToolExecutionError):
            await make_pipeline(tool).call("greet", {"name": "x"})

        (payload,) = recorder.events["tool:error"]
        assert payload["error"] is boom
        assert payload["code"] == ErrorCode.TOOL_EXECUTION_ERROR
        assert "tool:success" not in recorder.events

    async def test_app_error_from_handler_keeps_message(self, make_pipeline):
        """An AppError from the handler keeps its own message."""

        def handler(data, context):
            raise AppError(ErrorCode.VALIDATION_ERROR, "quota exceeded")

        tool = define_tool(name="greet", description="", input=GreetInput, handler=handler)

        with pytest.raises(ToolExecutionError, match="Tool execution failed: quota exceeded"):
            await make_pipeline(tool).call("greet", {"name": "x"})

    async def test_before_hook_failure_aborts_the_call(self, make_pipeline, recorder):
        """A failing before hook stops the handler from running."""
        handler_calls = []

        def handler(data, context):
            handler_calls.append(True)
            return {"message": "x"}

        def deny(context):
            raise PermissionError("not allowed")

        tool = define_tool(name="greet", description="", input=GreetInput, output=GreetOutput, handler=handler)
        pipeline = make_pipeline(tool, plugins=[recorder.plugin(before_tool_call=deny)])

        with pytest.raises(ToolExecutionError, match="not allowed"):
            await pipeline.call("greet", {"name": "x"})

        assert handler_calls == []
        assert recorder.events.keys() == {"tool:called", "tool:error"}

    async def test_after_hook_failure_does_not_change_outcome(self, make_pipeline, recorder):
        """A failing after hook leaves the result intact."""

        def broken(context, result):
            raise RuntimeError("after hook failed")

        pipeline = make_pipeline(plugins=[recorder.plugin(after_tool_call=broken)])

        response = await pipeline.call("greet", {"name": "Alice"})

        assert response.structured_content == {"message": "Hello, Alice!"}
        assert len(recorder.events["tool:success"]) == 1


class TestOutputErrors:
    async def test_invalid_output(self, make_pipeline, recorder):
        """Output that breaks the contract gets a generic message."""
        tool = define_tool(
            name="greet",
            description="",
            input=GreetInput,
            output=GreetOutput,
            handler=lambda data, context: {"msg": "wrong key"},
        )

        with pytest.raises(ToolOutputError) as exc_info:
            await make_pipeline(tool).call("greet", {"name": "x"})

        error = exc_info.value
        assert error.code == ErrorCode.INVALID_OUTPUT
        assert error.message.startswith("Tool execution failed: Validation failed: message:")
        assert recorder.log == ["event:tool:called", "before", "after", "event:tool:error"]
        assert recorder.events["tool:error"][0]["code"] == ErrorCode.INVALID_OUTPUT


class TestMiddlewareErrors:
    async def test_short_circuit_response(self, make_pipeline):
        """Middleware can answer through the response state key."""

        async def cached(context, next):
            context.state[RESPONSE_STATE_KEY] = {"message": "from cache"}

        response = await make_pipeline(middleware=[cached]).call("greet", {"name": "x"})

        assert response.structured_content == {"message": "from cache"}

    async def test_middleware_without_next_or_response(self, make_pipeline, recorder):
        """Skipping both next() and a response is a configuration error."""

        async def swallow(context, next):
            pass

        with pytest.raises(PipelineConfigurationError, match="without calling next") as exc_info:
            await make_pipeline(middleware=[swallow]).call("greet", {"name": "x"})

        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR
        assert len(recorder.events["tool:error"]) == 1

    async def test_double_next_is_a_configuration_error(self, make_pipeline, recorder):
        """Calling next() twice surfaces as INTERNAL_ERROR."""

        async def twice(context, next):
            await next()
            await next()

        with pytest.raises(PipelineConfigurationError, match="called next\\(\\) multiple times"):
            await make_pipeline(middleware=[twice]).call("greet", {"name": "x"})

        assert len(recorder.events["tool:error"]) == 1

    async def test_handler_result_wins_over_state_response(self, make_pipeline):
        """A handler result is not replaced by a stale state response."""

        async def both(context, next):
            context.state[RESPONSE_STATE_KEY] = {"message": "from state"}
            await next()

        response = await make_pipeline(middleware=[both]).call("greet", {"name": "Alice"})

        assert response.structured_content == {"message": "Hello, Alice!"}
