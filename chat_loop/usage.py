"""Token usage sink used by the conversation engine."""

import inspect
import logging
from typing import Any, Callable

from chat_loop.messages import TokenUsage

logger = logging.getLogger(__name__)


class UsageSink:
    """Receives token usage reported at the end of each model stream."""

    async def update_token_usage(
        self, conversation_id: str, project_id: str, usage: TokenUsage
    ) -> None:
        raise NotImplementedError


class CallableUsageSink(UsageSink):
    """Adapts a plain (sync or async) function to the UsageSink interface."""

    def __init__(self, func: Callable[[str, str, TokenUsage], Any]):
        self._func = func

    async def update_token_usage(
        self, conversation_id: str, project_id: str, usage: TokenUsage
    ) -> None:
        result = self._func(conversation_id, project_id, usage)
        if inspect.isawaitable(result):
            await result


class LoggingUsageSink(UsageSink):
    """Writes usage to the log.

    Pass it as ``usage_sink`` explicitly; without a sink the engine drops usage.
    """

    async def update_token_usage(
        self, conversation_id: str, project_id: str, usage: TokenUsage
    ) -> None:
        logger.info(
            "Token usage for %s/%s: prompt=%d completion=%d total=%d",
            project_id,
            conversation_id,
            usage.prompt_tokens,
            usage.completion_tokens,
            usage.total_tokens,
        )
