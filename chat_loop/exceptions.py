class ChatLoopError(Exception):
    """Base exception for chat-loop errors."""


class ToolNotFound(ChatLoopError):
    """Raised when a tool name is not present in the registry."""


class ToolValidationError(ChatLoopError):
    """Raised when tool input fails Pydantic validation."""


class ToolExecutionError(ChatLoopError):
    """Raised by tools for recoverable failures reported back to the model."""


class ModelBackendError(ChatLoopError):
    """Raised when the model backend returns an error or a malformed stream."""


class MaxTurnsReached(ChatLoopError):
    """Raised when a message keeps requesting tools past max_turns."""


class OutputNotFound(ChatLoopError, KeyError):
    """Raised when a stored output id is unknown or has expired."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class ScriptConfigurationError(ChatLoopError):
    """Raised when the script tool runs without its invocation wiring."""


class ScriptExecutionError(ChatLoopError):
    """Raised when a script snippet cannot be compiled or returns an error."""


class ConnectorError(ChatLoopError):
    """Raised by sandbox connectors (documents, SQL, search)."""
