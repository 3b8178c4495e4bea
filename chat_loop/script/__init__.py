"""Sandboxed execution of model-authored Python snippets."""

from chat_loop.script.extensions import (
    EntryPointExtensionProvider,
    ExtensionProvider,
    StaticExtensionProvider,
    load_extensions,
)
from chat_loop.script.runtime import (
    SCRIPT_TOOL_NAME,
    ScriptExecutionContext,
    ScriptRuntime,
    ToolStatusEvent,
)
from chat_loop.script.tool import ScriptInput, ScriptInvocation, ScriptTool

__all__ = [
    "SCRIPT_TOOL_NAME",
    "EntryPointExtensionProvider",
    "ExtensionProvider",
    "ScriptExecutionContext",
    "ScriptInput",
    "ScriptInvocation",
    "ScriptRuntime",
    "ScriptTool",
    "StaticExtensionProvider",
    "ToolStatusEvent",
    "load_extensions",
]
