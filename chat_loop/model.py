from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from chat_loop.messages import Message, TokenUsage
from chat_loop.tools import Tool


@dataclass
class ToolCallDelta:
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass
class StreamChunk:
    content: Optional[str] = None
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    usage: Optional[TokenUsage] = None


class ModelAdaptor:
    def stream(
        self,
        messages: list[Message],
        tools: list[Tool],
        **kwargs,
    ) -> AsyncIterator[StreamChunk]:
        """Stream one model turn as a sequence of deltas.

        Implementations are async generators; the engine stops iterating (and
        closes the generator) when the turn is cancelled.
        """
        raise NotImplementedError
