"""Execution scope for model-authored Python snippets.

A snippet is the body of an ``async def``: it may ``await`` bindings and
``return`` a value. The body is compiled into a function whose globals are a
fresh namespace holding only the approved bindings and a curated set of
builtins, so everything the snippet can reach is listed in ``build_scope``.
"""

import asyncio
import ast
import builtins
import datetime
import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from chat_loop.exceptions import ScriptExecutionError
from chat_loop.output_store import OutputStore
from chat_loop.script.connectors import ConnectorContext, ConnectorFactory, build_connectors
from chat_loop.tools import Tool
from chat_loop.truncation import json_size, summarize_value

logger = logging.getLogger(__name__)
console_logger = logging.getLogger("chat_loop.script.console")

SCRIPT_TOOL_NAME = "script"
SCRIPT_FUNCTION_NAME = "__script_main__"
MAX_PROGRESS_SIZE = 3 * 1024

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytes", "callable", "chr",
    "dict", "divmod", "enumerate", "filter", "float", "format", "frozenset",
    "hasattr", "hash", "hex", "int", "isinstance", "issubclass", "iter", "len",
    "list", "map", "max", "min", "next", "oct", "ord", "pow", "range", "repr",
    "reversed", "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception",
    "IndexError", "KeyError", "LookupError", "NameError", "NotImplementedError",
    "RuntimeError", "StopIteration", "TimeoutError", "TypeError", "ValueError",
    "ZeroDivisionError",
)

SAFE_BUILTINS = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}

# Attributes that lead from a coroutine, generator or traceback back to host frames.
RESTRICTED_ATTRIBUTES = frozenset({
    "cr_frame", "cr_code", "cr_await", "gi_frame", "gi_code", "gi_yieldfrom",
    "ag_frame", "ag_code", "ag_await", "f_globals", "f_locals", "f_builtins",
    "f_back", "f_code", "tb_frame", "tb_next",
})


def _facade(module, names) -> SimpleNamespace:
    return SimpleNamespace(**{name: getattr(module, name) for name in names})


# Only vetted callables and constants; the modules themselves would expose
# whatever they import (json.codecs.open, re.functools, ...).
SCRIPT_MODULES = {
    "json": _facade(json, ("dumps", "loads", "JSONDecodeError")),
    "math": _facade(math, [n for n in dir(math) if not n.startswith("_")]),
    "re": _facade(
        re,
        (
            "compile", "escape", "findall", "finditer", "fullmatch", "match",
            "search", "split", "sub", "subn", "error",
            "ASCII", "DOTALL", "IGNORECASE", "MULTILINE", "VERBOSE",
            "A", "I", "M", "S", "X",
        ),
    ),
    "datetime": _facade(
        datetime,
        ("date", "datetime", "time", "timedelta", "timezone", "MINYEAR", "MAXYEAR"),
    ),
}


@dataclass
class ToolStatusEvent:
    """One broadcast from a running script.

    ``kind`` is ``tool_call`` for status changes (executing, progress,
    complete, error, start) and ``tool_result`` for a finished sub-tool call.
    """

    kind: str
    tool_call_id: str
    tool_name: str
    arguments: dict = field(default_factory=dict)
    status: Optional[str] = None
    result: Any = None
    error: Optional[str] = None


Broadcast = Callable[[ToolStatusEvent], Awaitable[None]]


@dataclass
class ScriptExecutionContext:
    conversation_id: str
    project_id: str
    user_id: str
    tool_registry: Mapping[str, Tool]
    progress_sink: Optional[Broadcast]
    invocation_id: str
    purpose: str = ""
    code: str = ""
    working_dir: Optional[Path] = None
    output_store: Optional[OutputStore] = None
    search_url: Optional[str] = None


class ScriptConsole:
    """``console`` inside a script; output goes to the server log."""

    def __init__(self, invocation_id: str):
        self._prefix = f"[script {invocation_id}]"

    def _write(self, level: int, args: tuple) -> None:
        console_logger.log(level, "%s %s", self._prefix, " ".join(str(a) for a in args))

    def log(self, *args) -> None:
        self._write(logging.INFO, args)

    info = log

    def debug(self, *args) -> None:
        self._write(logging.DEBUG, args)

    def warn(self, *args) -> None:
        self._write(logging.WARNING, args)

    warning = warn

    def error(self, *args) -> None:
        self._write(logging.ERROR, args)


def _check_restricted(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise ScriptExecutionError("Imports are not available in scripts")
        name = None
        if isinstance(node, ast.Attribute):
            name = node.attr
        elif isinstance(node, ast.Name):
            name = node.id
        if name and (name.startswith("__") or name in RESTRICTED_ATTRIBUTES):
            raise ScriptExecutionError(f"Access to '{name}' is not allowed in scripts")


def compile_script(code: str, namespace: dict) -> Callable[[], Awaitable[Any]]:
    """Compile ``code`` as the body of an async function bound to ``namespace``.

    Raises SyntaxError for code that does not parse and ScriptExecutionError
    for code that reaches for imports, dunder names or frame attributes.
    """
    tree = ast.parse(code, filename="<script>")
    _check_restricted(tree)
    body = tree.body
    wrapper = ast.parse(f"async def {SCRIPT_FUNCTION_NAME}():\n    pass\n")
    wrapper.body[0].body = body or [ast.Pass()]
    ast.fix_missing_locations(wrapper)
    exec(compile(wrapper, "<script>", "exec"), namespace)
    return namespace.pop(SCRIPT_FUNCTION_NAME)


class ScriptRuntime:
    """Runs one snippet per ``execute`` call with a freshly built scope."""

    def __init__(
        self,
        context: ScriptExecutionContext,
        extensions: Optional[Mapping[str, Any]] = None,
        connector_factories: Optional[dict[str, ConnectorFactory]] = None,
    ):
        self.context = context
        self.extensions = dict(extensions or {})
        self.connector_factories = connector_factories
        self._pending: list[asyncio.Task] = []
        self._visualizations: list[dict] = []
        self._sub_calls = 0

    async def execute(self, code: str) -> Any:
        self._pending = []
        self._visualizations = []

        namespace = self.build_scope()
        namespace["__builtins__"] = {**SAFE_BUILTINS, "print": namespace["console"].log}
        func = compile_script(code, namespace)

        logger.debug(f"Executing script {self.context.invocation_id}")
        try:
            result = await func()
        finally:
            await self._flush_broadcasts()
        logger.debug(f"Script {self.context.invocation_id} completed")
        return self._attach_visualizations(result)

    def build_scope(self) -> dict[str, Any]:
        ctx = self.context
        scope: dict[str, Any] = {
            "conversation_id": ctx.conversation_id,
            "project_id": ctx.project_id,
            "current_uid": ctx.user_id,
            "console": ScriptConsole(ctx.invocation_id),
            "fetch": self._create_fetch_function(),
            "progress": self._create_progress_function(),
            "show_table": self._create_visualization_function("table"),
            "show_chart": self._create_visualization_function("chart"),
            **SCRIPT_MODULES,
        }

        if ctx.output_store is not None:
            scope["peek"] = self._create_peek_function(ctx.output_store)
            scope["peek_info"] = ctx.output_store.peek_info

        if ctx.working_dir is not None:
            connector_ctx = ConnectorContext(
                working_dir=ctx.working_dir,
                conversation_id=ctx.conversation_id,
                project_id=ctx.project_id,
                search_url=ctx.search_url,
            )
            scope.update(build_connectors(connector_ctx, self.connector_factories))

        for name, tool in ctx.tool_registry.items():
            if name == SCRIPT_TOOL_NAME:
                continue  # no recursive script calls
            scope[name] = self._create_tool_function(name, tool)

        scope.update(self.extensions)
        return scope

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    def _create_tool_function(self, name: str, tool: Tool):
        async def call_tool(args: Optional[dict] = None, **kwargs):
            arguments = {**(args or {}), **kwargs}
            self._sub_calls += 1
            sub_call_id = f"{self.context.invocation_id}-{name}-{self._sub_calls}"

            await self._send(
                ToolStatusEvent(
                    kind="tool_call",
                    tool_call_id=sub_call_id,
                    tool_name=name,
                    arguments=arguments,
                    status="start",
                )
            )
            try:
                result = await tool.execute(**tool.validate(arguments))
            except Exception as e:
                await self._send(
                    ToolStatusEvent(
                        kind="tool_call",
                        tool_call_id=sub_call_id,
                        tool_name=name,
                        arguments=arguments,
                        status="error",
                        error=str(e) or type(e).__name__,
                    )
                )
                # The script may catch this itself.
                raise

            await self._send(
                ToolStatusEvent(
                    kind="tool_result",
                    tool_call_id=sub_call_id,
                    tool_name=name,
                    arguments=arguments,
                    status="result",
                    result=result,
                )
            )
            return result

        call_tool.__name__ = name
        call_tool.__doc__ = tool.description
        return call_tool

    def _create_progress_function(self):
        def progress(message: str, data: Any = None) -> None:
            if data is not None:
                try:
                    size = json_size({"message": message, "data": data})
                except (TypeError, ValueError) as e:
                    logger.warning(f"Could not serialize progress data: {e}")
                    data, size = None, 0
                if size > MAX_PROGRESS_SIZE:
                    logger.warning(
                        f"Progress data too large ({size} bytes > {MAX_PROGRESS_SIZE} bytes), summarizing"
                    )
                    data = {
                        "_truncated": True,
                        "_original_size": size,
                        "_summary": summarize_value(data, size),
                    }
            self._schedule(self._status_event("progress", {"message": message, "data": data}))

        return progress

    def _create_fetch_function(self):
        async def fetch(url: str, method: str = "GET", timeout: float = 30.0, **kwargs) -> httpx.Response:
            if httpx.URL(url).scheme not in ("http", "https"):
                raise ValueError(f"fetch only supports http(s) URLs, got '{url}'")
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                response = await client.request(method, url, **kwargs)
                await response.aread()
            return response

        return fetch

    def _create_peek_function(self, store: OutputStore):
        async def peek(output_id: str, offset: int = 0, limit: int = 100) -> dict:
            return (await store.peek(output_id, offset, limit)).to_dict()

        return peek

    def _create_visualization_function(self, kind: str):
        def show(args: Optional[dict] = None, **kwargs) -> dict:
            visualization = {
                "type": kind,
                "tool_call_id": f"{self.context.invocation_id}_{kind}_{len(self._visualizations) + 1}",
                "args": {**(args or {}), **kwargs},
            }
            self._visualizations.append(visualization)
            return {"__visualization": visualization}

        return show

    # ------------------------------------------------------------------
    # Broadcasting
    # ------------------------------------------------------------------

    def _status_event(self, status: str, result: Any) -> ToolStatusEvent:
        return ToolStatusEvent(
            kind="tool_call",
            tool_call_id=self.context.invocation_id,
            tool_name=SCRIPT_TOOL_NAME,
            arguments={"purpose": self.context.purpose, "code": self.context.code},
            status=status,
            result=result,
        )

    async def _broadcast(self, event: ToolStatusEvent) -> None:
        if self.context.progress_sink is None:
            return
        try:
            await self.context.progress_sink(event)
        except Exception as e:
            logger.warning(f"Script broadcast failed: {e}")

    async def _send(self, event: ToolStatusEvent) -> None:
        """Broadcast from async bindings, after anything already scheduled."""
        await self._flush_broadcasts()
        await self._broadcast(event)

    def _schedule(self, event: ToolStatusEvent) -> None:
        """Broadcast from synchronous script code; flushed before execute returns."""
        previous = self._pending[-1] if self._pending else None
        task = asyncio.get_running_loop().create_task(self._broadcast_after(previous, event))
        self._pending.append(task)

    async def _broadcast_after(
        self, previous: Optional[asyncio.Task], event: ToolStatusEvent
    ) -> None:
        if previous is not None:
            await previous
        await self._broadcast(event)

    async def _flush_broadcasts(self) -> None:
        while self._pending:
            pending, self._pending = self._pending, []
            await asyncio.gather(*pending)

    def _attach_visualizations(self, result: Any) -> Any:
        visualizations = list(self._visualizations)
        if isinstance(result, dict):
            listed = result.get("__visualizations")
            if listed:
                visualizations.extend(listed if isinstance(listed, list) else [listed])
            single = result.get("__visualization")
            if single and single not in visualizations:
                visualizations.append(single)

        unique = []
        for visualization in visualizations:
            if visualization not in unique:
                unique.append(visualization)
        if not unique:
            return result

        if isinstance(result, dict):
            return {**result, "__visualizations": unique}
        if result is None:
            return {"__visualizations": unique}
        return {"result": result, "__visualizations": unique}
