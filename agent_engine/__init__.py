from agent_engine.adaptors.openai import OpenAIAdaptor

# Conditional imports for optional SDK-based adaptors
try:
    from agent_engine.adaptors.anthropic import AnthropicAdaptor
except ImportError:
    pass

try:
    from agent_engine.adaptors.gemini import GeminiAdaptor
except ImportError:
    pass

from agent_engine.batch import (
    BatchOutcome,
    CancellationToken,
    HttpStatsSink,
    RunBatch,
    RunBatcher,
    StatsSink,
)
from agent_engine.debug import (
    Block,
    BlockPlan,
    BlockResult,
    DebugController,
    DebugSession,
    DebugState,
    FunctionBlock,
    LoopBlock,
)
from agent_engine.exceptions import (
    AgentEngineError,
    AuthenticationError,
    BatchRunError,
    ProviderRequestError,
    ToolExecutionError,
    ToolNotFound,
)
from agent_engine.execution import (
    ExecutionResult,
    Message,
    TokenUsage,
    ToolCall,
    ToolResult,
)
from agent_engine.hooks import (
    AfterIterationEventData,
    AfterModelCallEventData,
    AfterRunEventData,
    AfterToolCallEventData,
    BatchFinishedEventData,
    BeforeIterationEventData,
    BeforeModelCallEventData,
    BeforeRunEventData,
    BeforeToolCallEventData,
    BlockExecutedEventData,
    HookEvent,
    HookRegistry,
    HookResponse,
    Middleware,
    OnToolErrorEventData,
    RunCompletedEventData,
)
from agent_engine.loop import MAX_ITERATIONS, ConversationLoop
from agent_engine.provider import (
    ProviderAdaptor,
    ProviderRequest,
    ProviderResponse,
    ResponseFormat,
)
from agent_engine.timing import TimeSegment, TimingRecorder, TimingSummary
from agent_engine.tools import (
    Tool,
    ToolDescriptor,
    ToolExecutor,
    ToolInput,
    ToolRegistry,
)

__all__ = [
    # Core
    "ConversationLoop",
    "MAX_ITERATIONS",
    "ExecutionResult",
    "Message",
    "TokenUsage",
    "ToolCall",
    "ToolResult",
    "ProviderAdaptor",
    "ProviderRequest",
    "ProviderResponse",
    "ResponseFormat",
    "OpenAIAdaptor",
    "AnthropicAdaptor",
    "GeminiAdaptor",
    "Tool",
    "ToolInput",
    "ToolDescriptor",
    "ToolRegistry",
    "ToolExecutor",
    "TimeSegment",
    "TimingRecorder",
    "TimingSummary",
    # Orchestration
    "Block",
    "BlockPlan",
    "BlockResult",
    "FunctionBlock",
    "LoopBlock",
    "DebugController",
    "DebugSession",
    "DebugState",
    "BatchOutcome",
    "CancellationToken",
    "RunBatch",
    "RunBatcher",
    "StatsSink",
    "HttpStatsSink",
    # Hooks
    "HookRegistry",
    "HookEvent",
    "HookResponse",
    "Middleware",
    # Hook Event Data
    "BeforeRunEventData",
    "AfterRunEventData",
    "BeforeIterationEventData",
    "AfterIterationEventData",
    "BeforeModelCallEventData",
    "AfterModelCallEventData",
    "BeforeToolCallEventData",
    "AfterToolCallEventData",
    "OnToolErrorEventData",
    "BlockExecutedEventData",
    "RunCompletedEventData",
    "BatchFinishedEventData",
    # Exceptions
    "AgentEngineError",
    "AuthenticationError",
    "BatchRunError",
    "ProviderRequestError",
    "ToolExecutionError",
    "ToolNotFound",
]
