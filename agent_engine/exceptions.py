from typing import Optional


class AgentEngineError(Exception):
    """Base exception for agent-engine errors.

    `timing` holds the TimingSummary accumulated up to the failure point,
    when the error escaped a conversation loop.
    """

    def __init__(self, message: str = "", timing=None):
        super().__init__(message)
        self.timing = timing


class AuthenticationError(AgentEngineError):
    """Raised when no credential is available for a provider call."""


class ProviderRequestError(AgentEngineError):
    """Raised on transport or vendor-side failure of a provider call."""

    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        timing=None,
    ):
        super().__init__(message, timing=timing)
        self.status_code = status_code


class ToolNotFound(AgentEngineError):
    """Raised when a tool id is not in the registry."""


class ToolExecutionError(AgentEngineError):
    """Raised by tools when execution fails."""


class BatchRunError(AgentEngineError):
    """A single run inside a batch failed; the batch stopped there."""

    def __init__(self, message: str = "", run_index: int = 0):
        super().__init__(message)
        self.run_index = run_index
