import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import Field

from chat_loop.config import Settings
from chat_loop.exceptions import ScriptConfigurationError, ScriptExecutionError
from chat_loop.output_store import OutputStore
from chat_loop.script.connectors import ConnectorFactory
from chat_loop.script.extensions import ExtensionProvider, load_extensions
from chat_loop.script.runtime import (
    SCRIPT_TOOL_NAME,
    Broadcast,
    ScriptExecutionContext,
    ScriptRuntime,
    ToolStatusEvent,
)
from chat_loop.tools import Tool, ToolInput

logger = logging.getLogger(__name__)

SCRIPT_DESCRIPTION = """Execute Python code with programmatic access to other tools.
Use for batch operations, multi-step workflows, data transformations, SQL queries and document reading.
The code is the body of an async function: use `await` for tool calls and `return` the result.
Available: every registered tool as an async function (e.g. `await file(action="list")`),
progress(message, data=None), peek(output_id, offset, limit), peek_info(output_id),
read_document(path) for text, PDF and XLSX files, list_files(), sql_query(query, url=None, params=None, limit=None),
web_search(query) when configured, show_table(...), show_chart(...), fetch(url),
console.log(...), and the modules json, math, re and datetime. Imports are not available.
Context variables: conversation_id, project_id, current_uid (empty string when not authenticated).
Never hardcode credentials in script code."""

CODE_DESCRIPTION = """Python code to execute, written as the body of an async function.

Use real newline characters between statements, never escaped \\n sequences.

Example:
  progress("Listing files...")
  files = await list_files()
  total = sum(f["size"] for f in files)
  return {"files": len(files), "bytes": total}

Paging through a stored large result:
  page = await peek("conv-call_1-abc123", 100, 50)
  return page["data"]"""


class ScriptInput(ToolInput):
    purpose: str = Field(
        description="A one-sentence description of what this script does."
    )
    code: str = Field(description=CODE_DESCRIPTION)


def fix_escape_sequences(code: str) -> str:
    """Turn literal ``\\n``, ``\\t`` and ``\\r`` sequences into real characters."""
    return code.replace("\\n", "\n").replace("\\t", "\t").replace("\\r", "\r")


def is_escape_artifact(error: BaseException, code: str) -> bool:
    return (
        isinstance(error, SyntaxError)
        and "line continuation" in str(error)
        and "\\n" in code
    )


@dataclass
class ScriptInvocation:
    """Wiring for one script call, handed over by the conversation engine."""

    tool_registry: Mapping[str, Tool]
    tool_call_id: str
    broadcast: Broadcast
    conversation_id: str
    project_id: str
    user_id: str = ""


class ScriptTool(Tool):
    """Runs model-authored Python with the other tools bound as functions.

    The conversation engine calls ``bind_invocation`` right before every
    ``execute`` to hand over the live tool registry, the call id, the
    broadcast used for status events and the calling conversation's ids.
    ``execute`` captures that wiring before its first await, so one instance
    can serve several conversations. The ids given to the constructor are
    only defaults for callers that bind without them.

    Failures never propagate out of ``execute``; they come back as
    ``{"__error": True, "error", "purpose"}``.
    """

    name = SCRIPT_TOOL_NAME
    description = SCRIPT_DESCRIPTION
    input_model = ScriptInput

    def __init__(
        self,
        output_store: Optional[OutputStore] = None,
        conversation_id: str = "default",
        project_id: str = "default",
        user_id: str = "",
        settings: Optional[Settings] = None,
        extension_provider: Optional[ExtensionProvider] = None,
        connector_factories: Optional[dict[str, ConnectorFactory]] = None,
        timeout: Optional[float] = None,
    ):
        self.output_store = output_store
        self.conversation_id = conversation_id
        self.project_id = project_id
        self.user_id = user_id
        self.settings = settings
        self.extension_provider = extension_provider
        self.connector_factories = connector_factories
        self.timeout = timeout

        self._invocation: Optional[ScriptInvocation] = None

    def bind_invocation(
        self,
        tool_registry: Mapping[str, Tool],
        tool_call_id: str,
        broadcast: Broadcast,
        conversation_id: Optional[str] = None,
        project_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        self._invocation = ScriptInvocation(
            tool_registry=tool_registry,
            tool_call_id=tool_call_id,
            broadcast=broadcast,
            conversation_id=conversation_id or self.conversation_id,
            project_id=project_id or self.project_id,
            user_id=self.user_id if user_id is None else user_id,
        )

    def working_dir_for(self, project_id: str, conversation_id: str) -> Optional[Path]:
        if self.settings is None:
            return None
        return self.settings.conversation_files_dir(project_id, conversation_id)

    async def execute(self, purpose: str, code: str) -> Any:
        invocation, self._invocation = self._invocation, None
        if invocation is None or not invocation.tool_call_id:
            raise ScriptConfigurationError(
                "Script tool not properly configured. Missing broadcast or tool_call_id."
            )

        arguments = {"purpose": purpose, "code": code}
        await self._emit(invocation, "executing", arguments, {"purpose": purpose, "code": code})

        try:
            extensions = await load_extensions(self.extension_provider, invocation.project_id)
            result = await self._run_with_retry(invocation, purpose, code, extensions)

            if isinstance(result, dict) and result.get("error"):
                raise ScriptExecutionError(str(result["error"]))

            if self.output_store is not None:
                result = await self.output_store.prepare_result(
                    result, invocation.conversation_id, invocation.tool_call_id
                )

            await self._emit(invocation, "complete", arguments, result)
            return result

        except Exception as e:
            error_result = {
                "__error": True,
                "error": str(e) or type(e).__name__,
                "purpose": purpose,
            }
            logger.info(f"Script {invocation.tool_call_id} failed: {error_result['error']}")
            await self._emit(invocation, "error", arguments, error_result)
            return error_result

    async def _run_with_retry(
        self, invocation: ScriptInvocation, purpose: str, code: str, extensions: dict
    ) -> Any:
        try:
            return await self._run(invocation, purpose, code, extensions)
        except SyntaxError as e:
            if not is_escape_artifact(e, code):
                raise
            logger.warning(
                "Script failed with a line continuation error and contains literal \\n; "
                "retrying with escape sequences fixed"
            )
            logger.debug(f"Original code (first 200 chars): {code[:200]}")
            return await self._run(invocation, purpose, fix_escape_sequences(code), extensions)

    async def _run(
        self, invocation: ScriptInvocation, purpose: str, code: str, extensions: dict
    ) -> Any:
        context = ScriptExecutionContext(
            conversation_id=invocation.conversation_id,
            project_id=invocation.project_id,
            user_id=invocation.user_id,
            tool_registry=invocation.tool_registry,
            progress_sink=invocation.broadcast,
            invocation_id=invocation.tool_call_id,
            purpose=purpose,
            code=code,
            working_dir=self.working_dir_for(invocation.project_id, invocation.conversation_id),
            output_store=self.output_store,
            search_url=self.settings.search_url if self.settings else None,
        )
        runtime = ScriptRuntime(
            context, extensions=extensions, connector_factories=self.connector_factories
        )
        if self.timeout is None:
            return await runtime.execute(code)
        try:
            return await asyncio.wait_for(runtime.execute(code), self.timeout)
        except asyncio.TimeoutError:
            raise ScriptExecutionError(f"Script timed out after {self.timeout} seconds")

    async def _emit(
        self, invocation: ScriptInvocation, status: str, arguments: dict, result: Any
    ) -> None:
        try:
            await invocation.broadcast(
                ToolStatusEvent(
                    kind="tool_call",
                    tool_call_id=invocation.tool_call_id,
                    tool_name=self.name,
                    arguments=arguments,
                    status=status,
                    result=result,
                )
            )
        except Exception as e:
            logger.warning(f"Script broadcast failed: {e}")
