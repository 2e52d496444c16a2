"""
Error taxonomy.

Action and tool failures are caught at the step boundary and handed to
the active fallback strategy. Argument conversion failures are kept apart
from execution failures so callers can tell "the tool ran and failed"
from "the tool was never reached".
"""


class StepAgentError(Exception):
    """Base class for all engine errors."""
    pass


class ActionExecutionError(StepAgentError):
    """An action failed, was interrupted, or could not be scheduled."""

    retryable = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class ActionRejectedError(ActionExecutionError):
    """The worker pool is saturated. Transient: the caller may retry."""

    retryable = True


class ToolExecutionError(StepAgentError):
    """A tool ran and failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Call tool {tool_name} failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolExecutionError):
    """A requested tool is not registered."""

    def __init__(self, tool_name: str):
        StepAgentError.__init__(self, f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolArgumentError(StepAgentError):
    """Tool input or output could not be converted. The tool was never reached."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid arguments for tool {tool_name}: {message}")
        self.tool_name = tool_name


class AgentExecutionError(StepAgentError):
    """Surfaced to the caller once the fallback strategy is exhausted."""
    pass


class AbortError(StepAgentError):
    """Observed once an abort signal has fired."""
    pass


class LLMError(StepAgentError):
    """Error from the LLM client."""
    pass
