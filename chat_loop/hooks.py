"""Hook system for chat-loop.

Lets a transport observe streaming chunks, tool lifecycle events and history
mutations without the conversation engine knowing about the transport.

Architecture:
- HookRegistry is the CORE implementation
- Decorator (@hooks.on, @conversation.hook) and Middleware are convenience wrappers
- Script broadcasts (executing/progress/complete/error and sub-tool calls)
  travel through the same before_tool_call, after_tool_call and
  on_tool_error hooks as direct tool calls
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class HookEvent(str, Enum):
    """Available hook points in a conversation."""

    BEFORE_MESSAGE = "before_message"
    AFTER_MESSAGE = "after_message"

    MESSAGE_START = "message_start"
    MESSAGE_CHUNK = "message_chunk"
    MESSAGE_END = "message_end"
    MESSAGE_CANCEL = "message_cancel"

    BEFORE_TOOL_CALL = "before_tool_call"
    AFTER_TOOL_CALL = "after_tool_call"
    ON_TOOL_ERROR = "on_tool_error"

    ON_ERROR = "on_error"
    ON_HISTORY = "on_history"


# ============================================================================
# Hook Event Data Classes
# ============================================================================


@dataclass
class BeforeMessageEventData:
    """Called before the user message is added and the model is called."""

    message: str
    history: List[Any]  # List of Message objects
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AfterMessageEventData:
    """Called after the full response has been streamed."""

    response: str
    history: List[Any]
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class MessageStartEventData:
    conversation_id: str


@dataclass
class MessageChunkEventData:
    chunk: str
    full_text: str


@dataclass
class MessageEndEventData:
    full_text: str


@dataclass
class MessageCancelEventData:
    partial_text: str


@dataclass
class BeforeToolCallEventData:
    """Called before executing a tool.

    Script broadcasts reuse this event with ``status`` set to
    ``executing``, ``progress`` or ``start`` (a sub-tool call made from
    inside a script). Their completions and failures arrive as
    ``after_tool_call`` and ``on_tool_error``.
    """

    tool_call_id: str
    tool_name: str
    arguments: Dict[str, Any]
    status: str = "start"
    result: Any = None


@dataclass
class AfterToolCallEventData:
    """Called after tool execution succeeds."""

    tool_call_id: str
    tool_name: str
    arguments: Dict[str, Any]
    result: Any
    execution_time_ms: Optional[float] = None


@dataclass
class OnToolErrorEventData:
    """Called when tool execution fails."""

    tool_call_id: str
    tool_name: str
    arguments: Dict[str, Any]
    error: Exception
    error_message: str


@dataclass
class OnErrorEventData:
    """Called for conversation-level failures (model/network)."""

    error: Exception
    context: str


@dataclass
class HistoryEventData:
    """Called after every history mutation."""

    history: List[Any]


# ============================================================================
# Hook Response
# ============================================================================


@dataclass
class HookResponse:
    """What a hook can return to influence execution."""

    action: Optional[str] = None  # 'skip'
    cached_result: Any = None  # Tool result to use instead of executing

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["HookResponse"]:
        """Convert dict to HookResponse."""
        if data is None:
            return None
        if isinstance(data, HookResponse):
            return data
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# ============================================================================
# Hook Registry
# ============================================================================


class HookRegistry:
    """Central registry for all hooks.

    Supports both decorator-style and direct registration. Handlers may be
    async or plain functions.

    Usage:
        hooks = HookRegistry()

        @hooks.on('message_chunk')
        async def forward(event):
            await websocket.send(event.chunk)

        # Or direct registration
        hooks.register_handler('on_history', save_history)
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {
            event.value: [] for event in HookEvent
        }

    def on(self, hook_name: str):
        """Decorator for registering hook handlers.

        Args:
            hook_name: Name of the hook (e.g., 'after_tool_call')

        Returns:
            Decorator function
        """

        def decorator(func: Callable) -> Callable:
            self.register_handler(hook_name, func)
            return func

        return decorator

    def register_handler(self, hook_name: str, handler: Callable) -> None:
        """Register a hook handler.

        Raises:
            ValueError: If hook_name is not valid
        """
        if hook_name not in self._handlers:
            valid_hooks = [e.value for e in HookEvent]
            raise ValueError(
                f"Invalid hook name '{hook_name}'. Valid hooks: {valid_hooks}"
            )
        self._handlers[hook_name].append(handler)

    async def trigger(
        self,
        hook_name: str,
        event_data: Any,
    ) -> Optional[HookResponse]:
        """Execute all handlers for a hook, in registration order.

        Returns:
            First non-None response from any handler, or None
        """
        handlers = self._handlers.get(hook_name, [])
        response = None

        for handler in handlers:
            try:
                result = handler(event_data)
                if inspect.isawaitable(result):
                    result = await result
                if result is not None and response is None:
                    response = HookResponse.from_dict(result)
            except Exception as e:
                # Log but don't fail execution
                logger.warning(f"Hook '{hook_name}' raised exception: {e}")

        return response

    def has_handlers(self, hook_name: str) -> bool:
        """Check if hook has any registered handlers."""
        return len(self._handlers.get(hook_name, [])) > 0

    def clear(self) -> None:
        """Clear all handlers (useful for testing)."""
        for hook_name in self._handlers:
            self._handlers[hook_name] = []


# ============================================================================
# Middleware Base Class (Optional, for stateful handlers)
# ============================================================================


class Middleware:
    """Base class for middleware (stateful hook handlers).

    Override methods for hooks you want to handle.

    Usage:
        class Relay(Middleware):
            async def message_chunk(self, event):
                await socket.send(event.chunk)

        conversation = Conversation(model=model, middlewares=[Relay()])
    """

    async def before_message(self, event: BeforeMessageEventData) -> Optional[Dict]:
        pass

    async def after_message(self, event: AfterMessageEventData) -> Optional[Dict]:
        pass

    async def message_start(self, event: MessageStartEventData) -> Optional[Dict]:
        pass

    async def message_chunk(self, event: MessageChunkEventData) -> Optional[Dict]:
        pass

    async def message_end(self, event: MessageEndEventData) -> Optional[Dict]:
        pass

    async def message_cancel(self, event: MessageCancelEventData) -> Optional[Dict]:
        pass

    async def before_tool_call(self, event: BeforeToolCallEventData) -> Optional[Dict]:
        pass

    async def after_tool_call(self, event: AfterToolCallEventData) -> Optional[Dict]:
        pass

    async def on_tool_error(self, event: OnToolErrorEventData) -> Optional[Dict]:
        pass

    async def on_error(self, event: OnErrorEventData) -> Optional[Dict]:
        pass

    async def on_history(self, event: HistoryEventData) -> Optional[Dict]:
        pass
