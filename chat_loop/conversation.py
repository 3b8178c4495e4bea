import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, AsyncIterator, Optional

from chat_loop.context import ContextProvider, build_system_prompt
from chat_loop.exceptions import (
    MaxTurnsReached,
    ScriptExecutionError,
    ToolExecutionError,
    ToolNotFound,
)
from chat_loop.hooks import (
    AfterMessageEventData,
    AfterToolCallEventData,
    BeforeMessageEventData,
    BeforeToolCallEventData,
    HistoryEventData,
    HookEvent,
    HookRegistry,
    MessageCancelEventData,
    MessageChunkEventData,
    MessageEndEventData,
    MessageStartEventData,
    Middleware,
    OnErrorEventData,
    OnToolErrorEventData,
)
from chat_loop.messages import (
    AssistantMessageBuilder,
    Message,
    TokenUsage,
    ToolCallRequest,
    serialize_result,
)
from chat_loop.model import ModelAdaptor
from chat_loop.script.runtime import SCRIPT_TOOL_NAME, ToolStatusEvent
from chat_loop.script.tool import ScriptTool
from chat_loop.tools import Tool
from chat_loop.usage import UsageSink

logger = logging.getLogger(__name__)


class CancellationToken:
    """Owned by exactly one send_message call."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class MessageStream:
    """Result of ``Conversation.send_message``.

    Iterate it for live text chunks, await it for the full text, or both:
    awaiting drains whatever iteration has not consumed yet and returns
    every chunk joined, including the ones already seen.

    Usage:
        async for chunk in conversation.send_message("hello"):
            print(chunk, end="")

        text = await conversation.send_message("hello")
    """

    def __init__(self, generator: AsyncIterator[str], token: CancellationToken):
        self._generator = generator
        self._token = token
        self._chunks: list[str] = []
        self._done = False

    def __aiter__(self) -> "MessageStream":
        return self

    async def __anext__(self) -> str:
        if self._done:
            raise StopAsyncIteration
        try:
            chunk = await self._generator.__anext__()
        except BaseException:
            self._done = True
            raise
        self._chunks.append(chunk)
        return chunk

    def __await__(self):
        return self._collect().__await__()

    async def _collect(self) -> str:
        async for _ in self:
            pass
        return self.text

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    def abort(self) -> None:
        self._token.cancel()

    async def aclose(self) -> None:
        self._done = True
        await self._generator.aclose()


class Conversation:
    """One logical chat session: history, tools and the streaming turn loop.

    Usage:
        conversation = Conversation(
            model=OpenAIAdaptor(),
            tools=[WeatherTool(), ScriptTool(output_store=store)],
            system_prompt="You are a helpful assistant.",
        )

        @conversation.hook("message_chunk")
        async def relay(event):
            await socket.send(event.chunk)

        text = await conversation.send_message("What's the weather in Lisbon?")
    """

    def __init__(
        self,
        model: ModelAdaptor,
        tools: Optional[list[Tool]] = None,
        system_prompt: Optional[str] = None,
        initial_history: Optional[list[Message]] = None,
        hooks: Optional[HookRegistry] = None,
        middlewares: Optional[list[Middleware]] = None,
        max_history_length: int = 0,
        max_turns: int = 25,
        conversation_id: str = "default",
        project_id: str = "default",
        user_id: str = "",
        usage_sink: Optional[UsageSink] = None,
        context_provider: Optional[ContextProvider] = None,
        url_params: Optional[dict[str, str]] = None,
        **model_params,
    ):
        self.model = model
        self.max_history_length = max_history_length
        self.max_turns = max_turns
        self.conversation_id = conversation_id
        self.project_id = project_id
        self.user_id = user_id
        self.usage_sink = usage_sink
        self.context_provider = context_provider
        self.url_params = url_params
        self.model_params = model_params

        self.hooks = hooks if hooks is not None else HookRegistry()
        if middlewares:
            self._register_middlewares(middlewares)

        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register_tool(tool)

        self._history: list[Message] = list(initial_history or [])
        has_system = any(m.role == "system" for m in self._history)
        if system_prompt and not has_system:
            self._history.insert(0, Message(role="system", content=system_prompt))

        self._pending: Optional[AssistantMessageBuilder] = None
        self._token: Optional[CancellationToken] = None

    @classmethod
    async def create(
        cls,
        model: ModelAdaptor,
        system_prompt: Optional[str] = None,
        context_provider: Optional[ContextProvider] = None,
        conversation_id: str = "default",
        project_id: str = "default",
        url_params: Optional[dict[str, str]] = None,
        **kwargs,
    ) -> "Conversation":
        """Build a conversation whose system prompt comes from ``context_provider``."""
        prompt = await build_system_prompt(
            context_provider, conversation_id, project_id, system_prompt, url_params
        )
        return cls(
            model,
            system_prompt=prompt or None,
            conversation_id=conversation_id,
            project_id=project_id,
            context_provider=context_provider,
            url_params=url_params,
            **kwargs,
        )

    def _register_middlewares(self, middlewares: list[Middleware]) -> None:
        """Convert middleware instances to HookRegistry handlers."""
        hook_names = [e.value for e in HookEvent]
        for middleware in middlewares:
            for hook_name in hook_names:
                handler = getattr(middleware, hook_name, None)
                if handler is not None and inspect.iscoroutinefunction(handler):
                    self.hooks.register_handler(hook_name, handler)

    def hook(self, hook_name: str):
        """Decorator for registering hooks directly on the conversation.

        Usage:
            @conversation.hook('after_tool_call')
            async def log_tool(event):
                print(f"Tool: {event.tool_name}")
        """
        return self.hooks.on(hook_name)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def register_tool(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def unregister_tool(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get_tools(self) -> list[Tool]:
        return list(self._tools.values())

    @property
    def tool_registry(self) -> dict[str, Tool]:
        """The live name -> tool mapping handed to the script tool."""
        return self._tools

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    @property
    def pending_message(self) -> Optional[AssistantMessageBuilder]:
        """The assistant turn being streamed, if any."""
        return self._pending

    async def add_message(self, message: Message) -> None:
        self._history.append(message)
        self._trim_history()
        await self._notify_history()

    async def set_history(self, messages: list[Message]) -> None:
        self._history = list(messages)
        self._trim_history()
        await self._notify_history()

    async def clear_history(self, keep_system_prompt: bool = True) -> None:
        if keep_system_prompt and self._history and self._history[0].role == "system":
            self._history = [self._history[0]]
        else:
            self._history = []
        await self._notify_history()

    async def refresh_system_prompt(self, system_prompt: Optional[str] = None) -> str:
        """Reload the context provider and replace the leading system message."""
        prompt = await build_system_prompt(
            self.context_provider,
            self.conversation_id,
            self.project_id,
            system_prompt,
            self.url_params,
        )
        if self._history and self._history[0].role == "system":
            self._history = self._history[1:]
        if prompt:
            self._history.insert(0, Message(role="system", content=prompt))
        await self._notify_history()
        return prompt

    def _trim_history(self) -> None:
        if self.max_history_length <= 0 or len(self._history) <= self.max_history_length:
            return
        system = self._history[:1] if self._history[0].role == "system" else []
        keep = self.max_history_length - len(system)
        rest = self._history[len(system):][-keep:] if keep > 0 else []
        # A tool result is meaningless without the assistant message that requested it.
        while rest and rest[0].role == "tool":
            rest.pop(0)
        self._history = system + rest

    async def _notify_history(self) -> None:
        await self.hooks.trigger("on_history", HistoryEventData(history=self.history))

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def send_message(self, text: str, attachments: Optional[list] = None) -> MessageStream:
        """Send a user message and stream the response.

        The returned MessageStream can be iterated for chunks or awaited for
        the full text. Model/network failures are raised from iteration or
        await after the ``on_error`` hook has run; cancellation via
        ``abort()`` ends the stream normally.
        """
        token = CancellationToken()
        self._token = token
        return MessageStream(self._stream_message(text, attachments, token), token)

    def send_message_sync(self, text: str, attachments: Optional[list] = None) -> str:
        """Send a message synchronously (runs its own event loop)."""

        async def run() -> str:
            return await self.send_message(text, attachments)

        return asyncio.run(run())

    def abort(self) -> None:
        """Cancel the message currently being streamed, if any."""
        if self._token is not None:
            self._token.cancel()
            self._token = None

    def is_processing(self) -> bool:
        return self._token is not None

    async def _stream_message(
        self, text: str, attachments: Optional[list], token: CancellationToken
    ) -> AsyncIterator[str]:
        full_text = ""
        try:
            await self.hooks.trigger(
                "before_message", BeforeMessageEventData(message=text, history=self.history)
            )
            await self.add_message(Message(role="user", content=text, attachments=attachments))
            await self.hooks.trigger(
                "message_start", MessageStartEventData(conversation_id=self.conversation_id)
            )

            turns = 0
            while True:
                if turns >= self.max_turns:
                    raise MaxTurnsReached(
                        f"Stopped after {self.max_turns} model turns without a final answer"
                    )
                turns += 1

                builder = AssistantMessageBuilder()
                self._pending = builder
                usage: Optional[TokenUsage] = None

                stream = self.model.stream(self.history, self.get_tools(), **self.model_params)
                try:
                    async for chunk in stream:
                        if token.cancelled:
                            break
                        if chunk.usage is not None:
                            usage = chunk.usage
                        if chunk.content:
                            builder.add_content(chunk.content)
                            full_text += chunk.content
                            await self.hooks.trigger(
                                "message_chunk",
                                MessageChunkEventData(chunk=chunk.content, full_text=full_text),
                            )
                            yield chunk.content
                        for delta in chunk.tool_calls:
                            builder.add_tool_call_delta(
                                delta.index, delta.id, delta.name, delta.arguments
                            )
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()

                if usage is not None:
                    await self._record_usage(usage)

                if token.cancelled:
                    await self._cancel(full_text, builder)
                    return

                self._pending = None
                if not builder.has_tool_calls:
                    await self.add_message(builder.build())
                    break

                tool_calls = builder.tool_calls()
                for call in tool_calls:
                    if not call.id:
                        call.id = f"call_{uuid.uuid4().hex[:24]}"
                await self.add_message(builder.build())
                await self.execute_tool_calls(tool_calls)

                if token.cancelled:
                    await self._cancel(full_text)
                    return

            await self.hooks.trigger("message_end", MessageEndEventData(full_text=full_text))
            await self.hooks.trigger(
                "after_message",
                AfterMessageEventData(response=full_text, history=self.history),
            )

        except Exception as e:
            logger.error(f"Conversation {self.conversation_id} failed: {e}")
            await self.hooks.trigger(
                "on_error", OnErrorEventData(error=e, context="send_message")
            )
            raise
        finally:
            self._pending = None
            if self._token is token:
                self._token = None

    async def _cancel(
        self, partial_text: str, builder: Optional[AssistantMessageBuilder] = None
    ) -> None:
        logger.info(f"Message cancelled in conversation {self.conversation_id}")
        self._pending = None
        partial = builder.build_partial() if builder is not None else None
        if partial is not None:
            await self.add_message(partial)
        await self.hooks.trigger(
            "message_cancel", MessageCancelEventData(partial_text=partial_text)
        )

    async def _record_usage(self, usage: TokenUsage) -> None:
        if self.usage_sink is None:
            return
        try:
            await self.usage_sink.update_token_usage(
                self.conversation_id, self.project_id, usage
            )
        except Exception as e:
            logger.warning(f"Failed to record token usage: {e}")

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def execute_tool_calls(self, tool_calls: list[ToolCallRequest]) -> None:
        """Run tool calls one after another, appending a tool message for each."""
        for call in tool_calls:
            result = await self._execute_tool_call(call)
            await self.add_message(
                Message(
                    role="tool",
                    content=serialize_result(result),
                    tool_call_id=call.id,
                )
            )

    async def _execute_tool_call(self, call: ToolCallRequest) -> Any:
        tool = self._tools.get(call.name)
        if tool is None:
            message = f'Tool "{call.name}" not found'
            logger.warning(message)
            await self._tool_error(call, {}, ToolNotFound(message))
            return {"error": message}

        try:
            arguments = call.parse_arguments()
        except ValueError as e:
            return await self._tool_error(call, {}, e)

        # The script tool reports its own lifecycle through the broadcast.
        is_script = isinstance(tool, ScriptTool)

        if not is_script:
            response = await self.hooks.trigger(
                "before_tool_call",
                BeforeToolCallEventData(
                    tool_call_id=call.id, tool_name=call.name, arguments=arguments
                ),
            )
            if (
                response
                and response.action == "skip"
                and response.cached_result is not None
            ):
                await self._after_tool_call(call, arguments, response.cached_result, 0.0)
                return response.cached_result

        start = time.time()
        try:
            kwargs = tool.validate(arguments)
            if is_script:
                tool.bind_invocation(
                    self._tools,
                    call.id,
                    self._broadcast,
                    conversation_id=self.conversation_id,
                    project_id=self.project_id,
                    user_id=self.user_id,
                )
            result = await tool.execute(**kwargs)
        except Exception as e:
            return await self._tool_error(call, arguments, e)

        if not is_script:
            await self._after_tool_call(call, arguments, result, (time.time() - start) * 1000)
        return result

    async def _after_tool_call(
        self, call: ToolCallRequest, arguments: dict, result: Any, elapsed_ms: float
    ) -> None:
        await self.hooks.trigger(
            "after_tool_call",
            AfterToolCallEventData(
                tool_call_id=call.id,
                tool_name=call.name,
                arguments=arguments,
                result=result,
                execution_time_ms=elapsed_ms,
            ),
        )

    async def _tool_error(
        self, call: ToolCallRequest, arguments: dict, error: Exception
    ) -> dict:
        message = str(error) or type(error).__name__
        logger.info(f"Tool '{call.name}' failed: {message}")
        await self.hooks.trigger(
            "on_tool_error",
            OnToolErrorEventData(
                tool_call_id=call.id,
                tool_name=call.name,
                arguments=arguments,
                error=error,
                error_message=message,
            ),
        )
        return {"error": message}

    async def _broadcast(self, event: ToolStatusEvent) -> None:
        """Relay script status events through the ordinary tool hooks.

        ``executing``, ``start`` and ``progress`` go to ``before_tool_call``,
        sub-tool results and the script's ``complete`` to ``after_tool_call``,
        and every ``error`` to ``on_tool_error``.
        """
        if event.kind == "tool_result" or event.status == "complete":
            await self.hooks.trigger(
                "after_tool_call",
                AfterToolCallEventData(
                    tool_call_id=event.tool_call_id,
                    tool_name=event.tool_name,
                    arguments=event.arguments,
                    result=event.result,
                ),
            )
            return

        if event.status == "error":
            if event.tool_name == SCRIPT_TOOL_NAME and isinstance(event.result, dict):
                message = str(event.result.get("error") or "Script failed")
                error: Exception = ScriptExecutionError(message)
            else:
                message = event.error or "Tool failed"
                error = ToolExecutionError(message)
            await self.hooks.trigger(
                "on_tool_error",
                OnToolErrorEventData(
                    tool_call_id=event.tool_call_id,
                    tool_name=event.tool_name,
                    arguments=event.arguments,
                    error=error,
                    error_message=message,
                ),
            )
            return

        await self.hooks.trigger(
            "before_tool_call",
            BeforeToolCallEventData(
                tool_call_id=event.tool_call_id,
                tool_name=event.tool_name,
                arguments=event.arguments,
                status=event.status or "start",
                result=event.result,
            ),
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Drop stored outputs belonging to this conversation."""
        self.abort()
        stores = {
            id(tool.output_store): tool.output_store
            for tool in self._tools.values()
            if isinstance(tool, ScriptTool) and tool.output_store is not None
        }
        for store in stores.values():
            removed = await store.clear_for_conversation(self.conversation_id)
            if removed:
                logger.debug(f"Cleared {removed} stored outputs for {self.conversation_id}")
