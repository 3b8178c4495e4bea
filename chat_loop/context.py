"""Assembly of the initial system message.

The engine treats the result as an opaque string; where the base context
comes from (prompt templates, todo lists, project memory) is up to the
ContextProvider.
"""

import inspect
import logging
import re
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class ContextProvider:
    async def load(
        self,
        conversation_id: str,
        project_id: str,
        url_params: Optional[dict[str, str]] = None,
    ) -> str:
        raise NotImplementedError


class StaticContextProvider(ContextProvider):
    """Returns a fixed template, optionally produced by a callable."""

    def __init__(self, template: "str | Callable[[str, str], Any]"):
        self._template = template

    async def load(self, conversation_id, project_id, url_params=None) -> str:
        if callable(self._template):
            text = self._template(conversation_id, project_id)
            if inspect.isawaitable(text):
                text = await text
        else:
            text = self._template
        return render_placeholders(text or "", url_params)


def render_placeholders(template: str, params: Optional[dict[str, str]]) -> str:
    """Replace ``{{name}}`` with params[name]; unknown names are left as-is."""
    if not params:
        return template

    def replace(match: re.Match) -> str:
        key = match.group(1)
        return str(params[key]) if key in params else match.group(0)

    return _PLACEHOLDER.sub(replace, template)


async def build_system_prompt(
    provider: Optional[ContextProvider],
    conversation_id: str,
    project_id: str,
    system_prompt: Optional[str] = None,
    url_params: Optional[dict[str, str]] = None,
) -> str:
    base = ""
    if provider is not None:
        try:
            base = await provider.load(conversation_id, project_id, url_params)
        except Exception as e:
            # Missing context should not block a conversation from starting.
            logger.error(f"Failed to load context for {conversation_id}: {e}")
    custom = render_placeholders(system_prompt, url_params) if system_prompt else ""
    if base and custom:
        return f"{base}\n\n{custom}"
    return base or custom
