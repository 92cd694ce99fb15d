import time
from dataclasses import dataclass, field
from typing import Any, Optional

from agent_engine.timing import TimingSummary


@dataclass
class Message:
    role: str  # "system" | "user" | "assistant" | "tool"
    content: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[list] = None  # For assistant messages with tool calls


@dataclass
class ToolCall:
    id: str
    tool_id: str
    arguments: dict
    result: Any = None
    error: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    thought_signature: Optional[bytes] = None

    @property
    def duration(self) -> float:
        if self.end_time is None:
            return 0.0
        return self.end_time - self.start_time


@dataclass
class ToolResult:
    success: bool
    output: Any = None
    error: Optional[str] = None
    call_id: Optional[str] = None


@dataclass
class TokenUsage:
    prompt: int = 0
    completion: int = 0
    total: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.prompt += other.prompt
        self.completion += other.completion
        self.total += other.total


@dataclass
class ExecutionResult:
    content: str = ""
    model: Optional[str] = None
    tokens: TokenUsage = field(default_factory=TokenUsage)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[Any] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    timing: TimingSummary = field(default_factory=TimingSummary)
    state: str = "running"  # "running" | "completed" | "max_iterations"

    @property
    def iterations(self) -> int:
        return self.timing.iterations
