import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments_json: str = ""

    def parse_arguments(self) -> dict:
        """Parse the accumulated argument fragments.

        An empty string means the model sent no arguments.
        """
        if not self.arguments_json.strip():
            return {}
        arguments = json.loads(self.arguments_json)
        if not isinstance(arguments, dict):
            raise ValueError(
                f"Tool arguments for '{self.name}' must be a JSON object"
            )
        return arguments


@dataclass
class Message:
    role: str  # "system" | "user" | "assistant" | "tool"
    content: Optional[str] = ""
    tool_calls: Optional[list[ToolCallRequest]] = None
    tool_call_id: Optional[str] = None
    attachments: Optional[list] = None  # kept locally, never sent to the model
    timestamp: float = field(default_factory=time.time)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "TokenUsage":
        return cls(
            prompt_tokens=data.get("prompt_tokens") or 0,
            completion_tokens=data.get("completion_tokens") or 0,
            total_tokens=data.get("total_tokens") or 0,
        )


class AssistantMessageBuilder:
    """Accumulates one streamed assistant turn.

    Content deltas are appended in arrival order and tool-call fragments are
    merged by their stream index. Nothing reaches the conversation history
    until ``build()`` freezes the turn into a ``Message``.
    """

    def __init__(self):
        self._parts: list[str] = []
        self._tool_calls: dict[int, ToolCallRequest] = {}

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def has_content(self) -> bool:
        return bool(self._parts)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self._tool_calls)

    def add_content(self, text: str) -> None:
        self._parts.append(text)

    def add_tool_call_delta(
        self,
        index: int,
        id: Optional[str] = None,
        name: Optional[str] = None,
        arguments: Optional[str] = None,
    ) -> None:
        call = self._tool_calls.get(index)
        if call is None:
            call = ToolCallRequest(id=id or "", name=name or "")
            self._tool_calls[index] = call
        else:
            # Some backends repeat or late-fill id/name on later fragments.
            if id and not call.id:
                call.id = id
            if name and not call.name:
                call.name = name
        if arguments:
            call.arguments_json += arguments

    def tool_calls(self) -> list[ToolCallRequest]:
        """Tool calls ordered by stream index."""
        return [self._tool_calls[i] for i in sorted(self._tool_calls)]

    def build(self) -> Message:
        tool_calls = self.tool_calls() or None
        content: Optional[str] = self.content
        if tool_calls and not content:
            content = None
        return Message(role="assistant", content=content, tool_calls=tool_calls)

    def build_partial(self) -> Optional[Message]:
        """Text-only message for a cancelled turn, or None if nothing streamed."""
        if not self._parts:
            return None
        return Message(role="assistant", content=self.content)


def serialize_result(result: Any) -> str:
    """Render a tool result as tool-message content."""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)
