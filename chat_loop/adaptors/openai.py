"""OpenAI-compatible streaming adaptor for chat-loop."""

import json
import logging
import os
from typing import AsyncIterator, Optional

import httpx

from chat_loop.exceptions import ModelBackendError
from chat_loop.messages import Message, TokenUsage
from chat_loop.model import ModelAdaptor, StreamChunk, ToolCallDelta
from chat_loop.tools import Tool

logger = logging.getLogger(__name__)


class OpenAIAdaptor(ModelAdaptor):
    """OpenAI-compatible chat-completions adaptor using server-sent events.

    Supports OpenAI API and compatible endpoints (local models, proxies, etc.).

    Args:
        api_key: API key. Falls back to OPENAI_API_KEY environment variable.
        model: Model name. Falls back to OPENAI_MODEL, then gpt-5-mini.
        base_url: Base URL for the API. Falls back to OPENAI_BASE_URL.
        timeout: Request timeout in seconds.
        http_client: Optional shared httpx.AsyncClient (used as-is, not closed).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError(
                "OpenAI API key not provided. "
                "Pass api_key argument or set OPENAI_API_KEY environment variable."
            )

        self.model = model or os.environ.get("OPENAI_MODEL") or "gpt-5-mini"
        self.base_url = (
            base_url or os.environ.get("OPENAI_BASE_URL") or "https://api.openai.com/v1"
        ).rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def stream(
        self,
        messages: list[Message],
        tools: list[Tool],
        **kwargs,
    ) -> AsyncIterator[StreamChunk]:
        """Stream one completion.

        Args:
            messages: Conversation history.
            tools: Tools advertised to the model.
            **kwargs: Model parameters (temperature, max_tokens, top_p, ...)
                merged into the request payload.

        Yields:
            StreamChunk for every SSE event carrying content, tool-call
            fragments or usage.

        Raises:
            ModelBackendError: On a non-200 response or an unparseable event.
            httpx.HTTPError: If the request itself fails.
        """
        payload = self._build_payload(messages, tools, **kwargs)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        url = f"{self.base_url}/chat/completions"

        client = self._http_client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream("POST", url, json=payload, headers=headers) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise ModelBackendError(
                        f"OpenAI API error ({response.status_code}): "
                        f"{self._error_message(body)}"
                    )

                async for line in response.aiter_lines():
                    chunk = self._parse_line(line)
                    if chunk is _DONE:
                        break
                    if chunk is not None:
                        yield chunk
        finally:
            if self._http_client is None:
                await client.aclose()

    def _build_payload(self, messages: list[Message], tools: list[Tool], **kwargs) -> dict:
        payload = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = [tool.to_openai_tool() for tool in tools]
        payload.update({k: v for k, v in kwargs.items() if v is not None})
        return payload

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        """Convert chat-loop Message objects to OpenAI format.

        Attachments and timestamps stay local.
        """
        openai_messages = []
        for msg in messages:
            openai_msg = {"role": msg.role, "content": msg.content}

            if msg.tool_call_id:
                openai_msg["tool_call_id"] = msg.tool_call_id

            if msg.role == "assistant" and msg.tool_calls:
                openai_msg["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": call.arguments_json or "{}",
                        },
                    }
                    for call in msg.tool_calls
                ]

            openai_messages.append(openai_msg)
        return openai_messages

    def _parse_line(self, line: str):
        """Parse one SSE line into a StreamChunk, _DONE or None (ignored)."""
        line = line.strip()
        if not line or line.startswith(":") or not line.startswith("data:"):
            return None

        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return _DONE

        try:
            event = json.loads(data)
        except json.JSONDecodeError as e:
            raise ModelBackendError(f"Malformed stream event: {data[:200]}") from e

        if event.get("error"):
            error = event["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ModelBackendError(f"OpenAI API error: {message or 'Unknown error'}")

        chunk = StreamChunk()
        if event.get("usage"):
            chunk.usage = TokenUsage.from_dict(event["usage"])

        choices = event.get("choices") or []
        if choices:
            delta = choices[0].get("delta") or {}
            if delta.get("content"):
                chunk.content = delta["content"]
            for fragment in delta.get("tool_calls") or []:
                function = fragment.get("function") or {}
                chunk.tool_calls.append(
                    ToolCallDelta(
                        index=fragment.get("index", 0),
                        id=fragment.get("id"),
                        name=function.get("name"),
                        arguments=function.get("arguments"),
                    )
                )

        if chunk.content is None and not chunk.tool_calls and chunk.usage is None:
            return None
        return chunk

    @staticmethod
    def _error_message(body: bytes) -> str:
        try:
            return json.loads(body).get("error", {}).get("message", "Unknown error")
        except (ValueError, AttributeError):
            return body.decode("utf-8", errors="replace")[:500] or "Unknown error"


_DONE = object()
