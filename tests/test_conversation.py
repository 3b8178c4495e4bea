import asyncio
import json
import logging

import pytest

from chat_loop.context import StaticContextProvider
from chat_loop.conversation import CancellationToken, Conversation, MessageStream
from chat_loop.exceptions import (
    MaxTurnsReached,
    ModelBackendError,
    ScriptExecutionError,
    ToolExecutionError,
    ToolNotFound,
    ToolValidationError,
)
from chat_loop.messages import Message, TokenUsage, ToolCallRequest
from chat_loop.model import ModelAdaptor, StreamChunk, ToolCallDelta
from chat_loop.output_store import OutputStore
from chat_loop.script.tool import ScriptTool
from chat_loop.tools import Tool, ToolInput
from chat_loop.usage import CallableUsageSink


# --- Test fixtures ---


class ScriptedModel(ModelAdaptor):
    """Streams one scripted list of chunks per model turn and records inputs."""

    def __init__(self, *turns):
        self.turns = list(turns)
        self.calls = []

    async def stream(self, messages, tools, **kwargs):
        self.calls.append({"messages": messages, "tools": tools, "kwargs": kwargs})
        chunks = self.turns.pop(0) if self.turns else [StreamChunk(content="done")]
        for chunk in chunks:
            yield chunk


class BrokenModel(ModelAdaptor):
    async def stream(self, messages, tools, **kwargs):
        yield StreamChunk(content="partial ")
        raise ModelBackendError("OpenAI API error (500): boom")


def text(content):
    return StreamChunk(content=content)


def tool_call(name, arguments="{}", call_id="call_1", index=0):
    return StreamChunk(
        tool_calls=[ToolCallDelta(index=index, id=call_id, name=name, arguments=arguments)]
    )


class EchoInput(ToolInput):
    text: str


class EchoTool(Tool):
    name = "echo"
    description = "Echoes input"
    input_model = EchoInput

    async def execute(self, text: str) -> str:
        return f"echo: {text}"


class DelayInput(ToolInput):
    label: str
    delay: float


class DelayTool(Tool):
    name = "delay"
    description = "Sleeps, then returns its label"
    input_model = DelayInput

    def __init__(self):
        self.finished = []

    async def execute(self, label: str, delay: float) -> dict:
        await asyncio.sleep(delay)
        self.finished.append(label)
        return {"label": label}


class BrokenTool(Tool):
    name = "broken"
    description = "Always fails"
    input_model = ToolInput

    async def execute(self) -> str:
        raise ToolExecutionError("Disk is full")


def contents(history, role):
    return [m.content for m in history if m.role == role]


# --- Streaming ---


class TestStreaming:
    @pytest.mark.asyncio
    async def test_chunks_form_one_assistant_message(self):
        conversation = Conversation(model=ScriptedModel([text("Hel"), text("lo")]))
        ends = []

        @conversation.hook("message_end")
        async def on_end(event):
            ends.append(event.full_text)

        result = await conversation.send_message("hi")

        assert result == "Hello"
        assert ends == ["Hello"]
        assert contents(conversation.history, "assistant") == ["Hello"]

    @pytest.mark.asyncio
    async def test_iteration_yields_chunks_in_order(self):
        conversation = Conversation(
            model=ScriptedModel([text("a"), text("b"), text("c")])
        )

        chunks = [chunk async for chunk in conversation.send_message("hi")]

        assert chunks == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_await_after_partial_iteration_returns_full_text(self):
        conversation = Conversation(
            model=ScriptedModel([text("one "), text("two "), text("three")])
        )

        stream = conversation.send_message("count")
        first = await stream.__anext__()
        result = await stream

        assert first == "one "
        assert result == "one two three"
        assert stream.text == "one two three"

    @pytest.mark.asyncio
    async def test_chunk_hook_tracks_running_text(self):
        conversation = Conversation(model=ScriptedModel([text("Hel"), text("lo")]))
        seen = []

        @conversation.hook("message_chunk")
        async def on_chunk(event):
            seen.append((event.chunk, event.full_text))

        await conversation.send_message("hi")

        assert seen == [("Hel", "Hel"), ("lo", "Hello")]

    @pytest.mark.asyncio
    async def test_model_receives_history_tools_and_params(self):
        model = ScriptedModel([text("ok")])
        conversation = Conversation(
            model=model, tools=[EchoTool()], system_prompt="Be brief.", temperature=0.2
        )

        await conversation.send_message("hi")

        call = model.calls[0]
        assert [m.role for m in call["messages"]] == ["system", "user"]
        assert [t.name for t in call["tools"]] == ["echo"]
        assert call["kwargs"] == {"temperature": 0.2}

    def test_send_message_sync(self):
        conversation = Conversation(model=ScriptedModel([text("sync ok")]))
        assert conversation.send_message_sync("hi") == "sync ok"

    @pytest.mark.asyncio
    async def test_attachments_stay_on_user_message(self):
        conversation = Conversation(model=ScriptedModel([text("ok")]))

        await conversation.send_message("see file", attachments=[{"name": "a.csv"}])

        user = [m for m in conversation.history if m.role == "user"][0]
        assert user.attachments == [{"name": "a.csv"}]


# --- Tool calls ---


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_text_and_tool_calls_share_one_message(self):
        model = ScriptedModel(
            [text("Let me echo."), tool_call("echo", '{"text": "hi"}')],
            [text("Echoed.")],
        )
        conversation = Conversation(model=model, tools=[EchoTool()])

        result = await conversation.send_message("echo hi")

        roles = [m.role for m in conversation.history]
        assert roles == ["user", "assistant", "tool", "assistant"]
        first = conversation.history[1]
        assert first.content == "Let me echo."
        assert first.tool_calls[0].name == "echo"
        assert conversation.history[2].content == "echo: hi"
        assert conversation.history[2].tool_call_id == "call_1"
        assert result == "Let me echo.Echoed."

    @pytest.mark.asyncio
    async def test_fragmented_arguments_are_joined(self):
        model = ScriptedModel(
            [
                StreamChunk(tool_calls=[ToolCallDelta(0, "call_1", "echo", '{"te')]),
                StreamChunk(tool_calls=[ToolCallDelta(0, None, None, 'xt": "x"}')]),
            ],
            [text("ok")],
        )
        conversation = Conversation(model=model, tools=[EchoTool()])

        await conversation.send_message("go")

        assert contents(conversation.history, "tool") == ["echo: x"]

    @pytest.mark.asyncio
    async def test_tools_run_sequentially_in_request_order(self):
        tool = DelayTool()
        model = ScriptedModel(
            [
                tool_call("delay", '{"label": "A", "delay": 0.03}', "call_a", 0),
                tool_call("delay", '{"label": "B", "delay": 0}', "call_b", 1),
                tool_call("delay", '{"label": "C", "delay": 0.01}', "call_c", 2),
            ],
            [text("done")],
        )
        conversation = Conversation(model=model, tools=[tool])

        await conversation.send_message("run all")

        tool_ids = [m.tool_call_id for m in conversation.history if m.role == "tool"]
        assert tool_ids == ["call_a", "call_b", "call_c"]
        assert tool.finished == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_unknown_tool_reports_error_and_continues(self):
        model = ScriptedModel([tool_call("missing")], [text("Sorry.")])
        conversation = Conversation(model=model, tools=[EchoTool()])

        result = await conversation.send_message("use missing")

        assert result == "Sorry."
        assert json.loads(contents(conversation.history, "tool")[0]) == {
            "error": 'Tool "missing" not found'
        }

    @pytest.mark.asyncio
    async def test_tool_failure_becomes_error_payload(self):
        model = ScriptedModel([tool_call("broken")], [text("It failed.")])
        conversation = Conversation(model=model, tools=[BrokenTool()])

        await conversation.send_message("break")

        assert json.loads(contents(conversation.history, "tool")[0]) == {
            "error": "Disk is full"
        }

    @pytest.mark.asyncio
    async def test_invalid_arguments_become_error_payload(self):
        model = ScriptedModel(
            [tool_call("echo", '{"wrong": 1}')], [tool_call("echo", "{not json")], [text("ok")]
        )
        conversation = Conversation(model=model, tools=[EchoTool()])

        await conversation.send_message("echo")

        errors = [json.loads(c) for c in contents(conversation.history, "tool")]
        assert len(errors) == 2
        assert all("error" in e for e in errors)

    @pytest.mark.asyncio
    async def test_missing_tool_call_id_is_generated(self):
        model = ScriptedModel([tool_call("echo", '{"text": "x"}', call_id=None)], [text("ok")])
        conversation = Conversation(model=model, tools=[EchoTool()])

        await conversation.send_message("go")

        assistant = conversation.history[1]
        tool_message = conversation.history[2]
        assert assistant.tool_calls[0].id.startswith("call_")
        assert tool_message.tool_call_id == assistant.tool_calls[0].id

    @pytest.mark.asyncio
    async def test_max_turns_reached(self):
        model = ScriptedModel(
            [tool_call("echo", '{"text": "1"}')],
            [tool_call("echo", '{"text": "2"}')],
            [tool_call("echo", '{"text": "3"}')],
        )
        conversation = Conversation(model=model, tools=[EchoTool()], max_turns=2)
        errors = []

        @conversation.hook("on_error")
        async def on_error(event):
            errors.append(event.error)

        with pytest.raises(MaxTurnsReached):
            await conversation.send_message("loop")

        assert len(errors) == 1
        assert isinstance(errors[0], MaxTurnsReached)

    def test_tool_registry(self):
        echo = EchoTool()
        conversation = Conversation(model=ScriptedModel(), tools=[echo])

        assert conversation.tool_registry == {"echo": echo}
        conversation.register_tool(BrokenTool())
        assert [t.name for t in conversation.get_tools()] == ["echo", "broken"]
        assert conversation.unregister_tool("broken") is True
        assert conversation.unregister_tool("broken") is False


# --- Cancellation ---


class TestCancellation:
    @pytest.mark.asyncio
    async def test_abort_mid_stream_keeps_partial_text(self):
        conversation = Conversation(
            model=ScriptedModel([text("Hel"), text("lo"), text(" world")])
        )
        cancels, ends, errors = [], [], []
        conversation.hooks.register_handler(
            "message_cancel", lambda e: cancels.append(e.partial_text)
        )
        conversation.hooks.register_handler("message_end", lambda e: ends.append(e))
        conversation.hooks.register_handler("on_error", lambda e: errors.append(e))

        stream = conversation.send_message("hi")
        chunks = []
        async for chunk in stream:
            chunks.append(chunk)
            conversation.abort()

        assert chunks == ["Hel"]
        assert stream.cancelled is True
        assert await stream == "Hel"
        assert cancels == ["Hel"]
        assert ends == []
        assert errors == []
        assert [(m.role, m.content) for m in conversation.history] == [
            ("user", "hi"),
            ("assistant", "Hel"),
        ]
        assert conversation.is_processing() is False

    @pytest.mark.asyncio
    async def test_abort_drops_incomplete_tool_calls(self):
        model = ScriptedModel(
            [
                text("Checking"),
                StreamChunk(tool_calls=[ToolCallDelta(0, "call_1", "echo", '{"te')]),
            ]
        )
        conversation = Conversation(model=model, tools=[EchoTool()])

        stream = conversation.send_message("hi")
        async for _ in stream:
            stream.abort()

        assert len(conversation.history) == 2
        partial = conversation.history[-1]
        assert partial.content == "Checking"
        assert partial.tool_calls is None

    @pytest.mark.asyncio
    async def test_abort_before_any_text_adds_nothing(self):
        model = ScriptedModel([text("never seen")])
        conversation = Conversation(model=model)

        stream = conversation.send_message("hi")
        stream.abort()
        result = await stream

        assert result == ""
        assert [m.role for m in conversation.history] == ["user"]

    def test_token(self):
        token = CancellationToken()
        assert token.cancelled is False
        token.cancel()
        assert token.cancelled is True


# --- Errors and usage ---


class TestErrorsAndUsage:
    @pytest.mark.asyncio
    async def test_backend_failure_reaches_error_hook_and_caller(self):
        conversation = Conversation(model=BrokenModel())
        errors = []

        @conversation.hook("on_error")
        async def on_error(event):
            errors.append((event.context, str(event.error)))

        with pytest.raises(ModelBackendError):
            await conversation.send_message("hi")

        assert errors == [("send_message", "OpenAI API error (500): boom")]
        assert conversation.is_processing() is False

    @pytest.mark.asyncio
    async def test_usage_is_reported(self):
        usage = TokenUsage(prompt_tokens=3, completion_tokens=2, total_tokens=5)
        reported = []
        conversation = Conversation(
            model=ScriptedModel([text("ok"), StreamChunk(usage=usage)]),
            conversation_id="c1",
            project_id="p1",
            usage_sink=CallableUsageSink(lambda *args: reported.append(args)),
        )

        await conversation.send_message("hi")

        assert reported == [("c1", "p1", usage)]

    @pytest.mark.asyncio
    async def test_usage_sink_failure_does_not_fail_turn(self):
        def explode(*args):
            raise RuntimeError("telemetry down")

        conversation = Conversation(
            model=ScriptedModel([text("ok"), StreamChunk(usage=TokenUsage(1, 1, 2))]),
            usage_sink=CallableUsageSink(explode),
        )

        assert await conversation.send_message("hi") == "ok"


# --- History ---


class TestHistory:
    def test_system_prompt_is_first(self):
        conversation = Conversation(model=ScriptedModel(), system_prompt="Be brief.")
        assert conversation.history[0].role == "system"
        assert conversation.history[0].content == "Be brief."

    def test_existing_system_message_wins(self):
        conversation = Conversation(
            model=ScriptedModel(),
            system_prompt="ignored",
            initial_history=[Message(role="system", content="from history")],
        )
        assert contents(conversation.history, "system") == ["from history"]

    @pytest.mark.asyncio
    async def test_trim_keeps_system_prompt(self):
        conversation = Conversation(
            model=ScriptedModel([text("a1")], [text("a2")]),
            system_prompt="sys",
            max_history_length=3,
        )

        await conversation.send_message("u1")
        await conversation.send_message("u2")

        assert [(m.role, m.content) for m in conversation.history] == [
            ("system", "sys"),
            ("user", "u2"),
            ("assistant", "a2"),
        ]

    @pytest.mark.asyncio
    async def test_trim_drops_orphaned_tool_results(self):
        conversation = Conversation(
            model=ScriptedModel(), system_prompt="sys", max_history_length=3
        )

        await conversation.set_history(
            [
                Message(role="system", content="sys"),
                Message(role="user", content="u1"),
                Message(
                    role="assistant",
                    content=None,
                    tool_calls=[ToolCallRequest(id="call_1", name="echo")],
                ),
                Message(role="tool", content="r", tool_call_id="call_1"),
                Message(role="user", content="u2"),
            ]
        )

        assert [m.role for m in conversation.history] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_clear_history(self):
        conversation = Conversation(model=ScriptedModel([text("a")]), system_prompt="sys")
        await conversation.send_message("u")

        await conversation.clear_history()
        assert [m.role for m in conversation.history] == ["system"]

        await conversation.clear_history(keep_system_prompt=False)
        assert conversation.history == []

    @pytest.mark.asyncio
    async def test_history_hook_fires_on_every_mutation(self):
        conversation = Conversation(model=ScriptedModel([text("a")]))
        sizes = []

        @conversation.hook("on_history")
        async def on_history(event):
            sizes.append(len(event.history))

        await conversation.send_message("u")
        await conversation.add_message(Message(role="user", content="again"))

        assert sizes == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_history_is_a_copy(self):
        conversation = Conversation(model=ScriptedModel())
        conversation.history.append(Message(role="user", content="sneaky"))
        assert conversation.history == []


# --- Context ---


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_assembles_system_prompt(self):
        provider = StaticContextProvider("Project {{project}} context")

        conversation = await Conversation.create(
            ScriptedModel(),
            system_prompt="Custom for {{user}}.",
            context_provider=provider,
            project_id="A1",
            url_params={"project": "Apollo", "user": "Sam"},
        )

        assert conversation.history[0].content == (
            "Project Apollo context\n\nCustom for Sam."
        )

    @pytest.mark.asyncio
    async def test_refresh_system_prompt(self):
        calls = []

        def template(conversation_id, project_id):
            calls.append(project_id)
            return f"context v{len(calls)}"

        conversation = await Conversation.create(
            ScriptedModel(), context_provider=StaticContextProvider(template)
        )
        await conversation.refresh_system_prompt()

        assert contents(conversation.history, "system") == ["context v2"]


# --- Script tool wiring ---


class TestScriptToolWiring:
    @pytest.mark.asyncio
    async def test_script_sub_calls_surface_through_tool_hooks(self):
        code = "r = await echo(text='hi')\nprogress('echoed')\nreturn {'echoed': r}"
        model = ScriptedModel(
            [tool_call("script", json.dumps({"purpose": "echo once", "code": code}))],
            [text("done")],
        )
        conversation = Conversation(model=model, tools=[EchoTool(), ScriptTool()])
        before, after, errors = [], [], []

        @conversation.hook("before_tool_call")
        async def on_before(event):
            before.append((event.tool_call_id, event.tool_name, event.status))

        @conversation.hook("after_tool_call")
        async def on_after(event):
            after.append((event.tool_call_id, event.tool_name, event.result))

        conversation.hooks.register_handler("on_tool_error", lambda e: errors.append(e))

        await conversation.send_message("use a script")

        assert before == [
            ("call_1", "script", "executing"),
            ("call_1-echo-1", "echo", "start"),
            ("call_1", "script", "progress"),
        ]
        assert after == [
            ("call_1-echo-1", "echo", "echo: hi"),
            ("call_1", "script", {"echoed": "echo: hi"}),
        ]
        assert errors == []
        result = json.loads(contents(conversation.history, "tool")[0])
        assert result == {"echoed": "echo: hi"}

    @pytest.mark.asyncio
    async def test_failing_script_reaches_tool_error_hook(self):
        code = "await broken()\nreturn 1"
        model = ScriptedModel(
            [tool_call("script", json.dumps({"purpose": "break it", "code": code}))],
            [text("done")],
        )
        conversation = Conversation(model=model, tools=[BrokenTool(), ScriptTool()])
        before, after, errors = [], [], []
        conversation.hooks.register_handler(
            "before_tool_call", lambda e: before.append((e.tool_name, e.status))
        )
        conversation.hooks.register_handler("after_tool_call", lambda e: after.append(e))
        conversation.hooks.register_handler(
            "on_tool_error",
            lambda e: errors.append((e.tool_call_id, e.tool_name, type(e.error), e.error_message)),
        )

        await conversation.send_message("use a script")

        assert before == [("script", "executing"), ("broken", "start")]
        assert after == []
        assert errors == [
            ("call_1-broken-1", "broken", ToolExecutionError, "Disk is full"),
            ("call_1", "script", ScriptExecutionError, "Disk is full"),
        ]
        result = json.loads(contents(conversation.history, "tool")[0])
        assert result["__error"] is True

    @pytest.mark.asyncio
    async def test_shared_script_tool_keeps_each_conversations_identity(self, tmp_path):
        store = OutputStore(tmp_path, max_inline_bytes=200)
        script = ScriptTool(output_store=store)
        code = "return [{'n': i} for i in range(100)]"
        model_a = ScriptedModel(
            [tool_call("script", json.dumps({"purpose": "big", "code": code}), "call_a")],
            [text("done")],
        )
        model_b = ScriptedModel([text("hello")])
        a = Conversation(
            model=model_a, tools=[script], conversation_id="A", project_id="pA", user_id="ua"
        )
        b = Conversation(
            model=model_b, tools=[script], conversation_id="B", project_id="pB", user_id="ub"
        )

        await b.send_message("hi")
        await a.send_message("go big")

        result = json.loads(contents(a.history, "tool")[0])
        record = store.get_record(result["_output_id"])
        assert record.conversation_id == "A"
        assert record.invocation_id == "call_a"
        assert (script.conversation_id, script.project_id, script.user_id) == (
            "default",
            "default",
            "",
        )
        await b.close()
        assert store.get_record(result["_output_id"]) is not None
        await a.close()
        assert store.get_record(result["_output_id"]) is None

    @pytest.mark.asyncio
    async def test_script_sees_calling_conversation_ids(self):
        script = ScriptTool()
        code = "return [conversation_id, project_id, current_uid]"

        async def run(conversation_id, project_id, user_id):
            model = ScriptedModel(
                [tool_call("script", json.dumps({"purpose": "ids", "code": code}))],
                [text("done")],
            )
            conversation = Conversation(
                model=model,
                tools=[script],
                conversation_id=conversation_id,
                project_id=project_id,
                user_id=user_id,
            )
            await conversation.send_message("who am i")
            return json.loads(contents(conversation.history, "tool")[0])

        assert await run("c1", "p1", "u1") == ["c1", "p1", "u1"]
        assert await run("c2", "p2", "") == ["c2", "p2", ""]


class TestToolErrorHook:
    @pytest.mark.asyncio
    async def test_unknown_tool_raises_tool_not_found(self):
        model = ScriptedModel([tool_call("missing")], [text("Sorry.")])
        conversation = Conversation(model=model, tools=[EchoTool()])
        errors = []
        conversation.hooks.register_handler("on_tool_error", lambda e: errors.append(e.error))

        await conversation.send_message("use missing")

        assert len(errors) == 1
        assert isinstance(errors[0], ToolNotFound)

    @pytest.mark.asyncio
    async def test_invalid_arguments_raise_tool_validation_error(self):
        model = ScriptedModel([tool_call("echo", '{"wrong": 1}')], [text("ok")])
        conversation = Conversation(model=model, tools=[EchoTool()])
        errors = []
        conversation.hooks.register_handler("on_tool_error", lambda e: errors.append(e.error))

        await conversation.send_message("echo")

        assert len(errors) == 1
        assert isinstance(errors[0], ToolValidationError)
        assert "echo" in str(errors[0])

    @pytest.mark.asyncio
    async def test_no_usage_sink_records_nothing(self, caplog):
        conversation = Conversation(
            model=ScriptedModel([text("ok"), StreamChunk(usage=TokenUsage(1, 1, 2))])
        )

        with caplog.at_level(logging.INFO, logger="chat_loop.usage"):
            assert await conversation.send_message("hi") == "ok"

        assert [r for r in caplog.records if r.name == "chat_loop.usage"] == []


def test_message_stream_is_reexported():
    from chat_loop import MessageStream as Exported

    assert Exported is MessageStream
