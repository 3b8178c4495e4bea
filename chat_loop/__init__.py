from chat_loop.adaptors.openai import OpenAIAdaptor
from chat_loop.config import Settings
from chat_loop.context import ContextProvider, StaticContextProvider, build_system_prompt
from chat_loop.conversation import CancellationToken, Conversation, MessageStream
from chat_loop.exceptions import (
    ChatLoopError,
    ConnectorError,
    MaxTurnsReached,
    ModelBackendError,
    OutputNotFound,
    ScriptConfigurationError,
    ScriptExecutionError,
    ToolExecutionError,
    ToolNotFound,
    ToolValidationError,
)
from chat_loop.hooks import (
    AfterMessageEventData,
    AfterToolCallEventData,
    BeforeMessageEventData,
    BeforeToolCallEventData,
    HistoryEventData,
    HookEvent,
    HookRegistry,
    HookResponse,
    MessageCancelEventData,
    MessageChunkEventData,
    MessageEndEventData,
    MessageStartEventData,
    Middleware,
    OnErrorEventData,
    OnToolErrorEventData,
)
from chat_loop.messages import Message, TokenUsage, ToolCallRequest
from chat_loop.model import ModelAdaptor, StreamChunk, ToolCallDelta
from chat_loop.output_store import OutputRecord, OutputStore, PeekResult
from chat_loop.script import (
    EntryPointExtensionProvider,
    ExtensionProvider,
    ScriptTool,
    StaticExtensionProvider,
)
from chat_loop.tools import Tool, ToolInput
from chat_loop.usage import CallableUsageSink, LoggingUsageSink, UsageSink

__all__ = [
    # Core
    "Conversation",
    "MessageStream",
    "CancellationToken",
    "Message",
    "ToolCallRequest",
    "TokenUsage",
    "ModelAdaptor",
    "StreamChunk",
    "ToolCallDelta",
    "OpenAIAdaptor",
    "Tool",
    "ToolInput",
    "Settings",
    # Script sandbox
    "ScriptTool",
    "ExtensionProvider",
    "StaticExtensionProvider",
    "EntryPointExtensionProvider",
    # Output storage
    "OutputStore",
    "OutputRecord",
    "PeekResult",
    # Context and usage
    "ContextProvider",
    "StaticContextProvider",
    "build_system_prompt",
    "UsageSink",
    "CallableUsageSink",
    "LoggingUsageSink",
    # Hooks
    "HookRegistry",
    "HookEvent",
    "HookResponse",
    "Middleware",
    # Hook Event Data
    "BeforeMessageEventData",
    "AfterMessageEventData",
    "MessageStartEventData",
    "MessageChunkEventData",
    "MessageEndEventData",
    "MessageCancelEventData",
    "BeforeToolCallEventData",
    "AfterToolCallEventData",
    "OnToolErrorEventData",
    "OnErrorEventData",
    "HistoryEventData",
    # Exceptions
    "ChatLoopError",
    "ConnectorError",
    "MaxTurnsReached",
    "ModelBackendError",
    "OutputNotFound",
    "ScriptConfigurationError",
    "ScriptExecutionError",
    "ToolExecutionError",
    "ToolNotFound",
    "ToolValidationError",
]
