"""Error taxonomy for the orchestration core.

Only ToolExecutionError is recovered inside the loop (it becomes an error
tool_result fed back to the model). Every other class terminates the run
and is reported once to the caller.
"""

from __future__ import annotations


class MagmaError(Exception):
    """Base class for all magma errors."""


class ConfigurationError(MagmaError):
    """Missing or invalid configuration. Raised at startup, never mid-run."""


class ModelCallError(MagmaError):
    """The model provider failed to return a usable response."""


class ToolListError(MagmaError):
    """The remote tool catalog could not be fetched."""


class ToolExecutionError(MagmaError):
    """A single tool invocation failed."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class UnknownToolError(ToolExecutionError):
    """No backend serves the requested tool name."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(tool_name, f"Unknown tool: {tool_name}")


class RoundLimitExceeded(MagmaError):
    """The model kept requesting tools past the configured round limit."""

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Maximum tool call limit ({limit}) reached. "
            "Please try rephrasing your request."
        )
        self.limit = limit


class MalformedHistoryError(MagmaError):
    """A stored turn lacks the content shape needed to rebuild a conversation."""

    def __init__(self, message_id: str, detail: str) -> None:
        super().__init__(f"Message {message_id} has invalid content structure - {detail}")
        self.message_id = message_id
