"""Hook system for agent-engine.

Enables extensibility without modifying core engine code, and doubles as
the progress/telemetry surface for debug stepping and run batches.
Follows Flask's before_request/after_request pattern.

Architecture:
- HookRegistry is the CORE implementation
- Decorator (@hooks.on, @loop.hook) and Middleware are convenience wrappers
- Everything goes through HookRegistry
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class HookEvent(str, Enum):
    """Available hook points in engine execution."""

    BEFORE_RUN = "before_run"
    AFTER_RUN = "after_run"

    BEFORE_ITERATION = "before_iteration"
    AFTER_ITERATION = "after_iteration"

    BEFORE_MODEL_CALL = "before_model_call"
    AFTER_MODEL_CALL = "after_model_call"

    BEFORE_TOOL_CALL = "before_tool_call"
    AFTER_TOOL_CALL = "after_tool_call"
    ON_TOOL_ERROR = "on_tool_error"

    BLOCK_EXECUTED = "block_executed"

    RUN_COMPLETED = "run_completed"
    BATCH_FINISHED = "batch_finished"


# ============================================================================
# Hook Event Data Classes
# ============================================================================


@dataclass
class BeforeRunEventData:
    """Called before a conversation loop starts."""

    loop: Any  # ConversationLoop instance
    request: Any  # ProviderRequest
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AfterRunEventData:
    """Called after a conversation loop completes."""

    result: Any  # ExecutionResult instance
    total_time_ms: float
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class BeforeIterationEventData:
    """Called before each round of tool execution."""

    result: Any
    iteration_count: int
    tool_call_count: int


@dataclass
class AfterIterationEventData:
    """Called after each round of tool execution and the model call that follows."""

    result: Any
    iteration_count: int
    elapsed_time_ms: float


@dataclass
class BeforeModelCallEventData:
    result: Any
    messages: List[Any]
    label: str


@dataclass
class AfterModelCallEventData:
    result: Any
    response: Any  # ProviderResponse
    response_time_ms: float
    label: str


@dataclass
class BeforeToolCallEventData:
    result: Any
    tool_id: str
    arguments: Dict[str, Any]
    tool_index: int
    iteration: int


@dataclass
class AfterToolCallEventData:
    """Called after tool execution succeeds."""

    result: Any
    tool_call: Any  # ToolCall object
    tool_id: str
    output: Any
    execution_time_ms: float


@dataclass
class OnToolErrorEventData:
    """Called when tool execution fails. The loop skips the call afterwards."""

    result: Any
    tool_id: str
    arguments: Dict[str, Any]
    error_message: str


@dataclass
class BlockExecutedEventData:
    """Called after the debug controller executes one block."""

    block_id: str
    output: Any
    pending_blocks: List[str]


@dataclass
class RunCompletedEventData:
    """Progress: one run of a batch finished."""

    completed_runs: int
    run_count: int


@dataclass
class BatchFinishedEventData:
    """Terminal notification of a batch; published exactly once per batch."""

    outcome: str  # "completed" | "cancelled" | "error"
    level: str  # "console" | "info" | "error"
    message: str
    completed_runs: int
    run_count: int
    error: Optional[Exception] = None
    timestamp: datetime = field(default_factory=datetime.now)


# ============================================================================
# Hook Response
# ============================================================================


@dataclass
class HookResponse:
    """What a hook can return to influence execution."""

    action: Optional[str] = None  # 'skip'
    cached_result: Any = None  # Tool output used instead of executing

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["HookResponse"]:
        """Convert dict to HookResponse."""
        if data is None:
            return None
        if isinstance(data, HookResponse):
            return data
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# ============================================================================
# Hook Registry
# ============================================================================


class HookRegistry:
    """Handlers per hook point, shared by the loop, the debug controller and the batcher.

    A single registry can be passed to several components so one set of
    handlers observes all of them.

    Usage:
        hooks = HookRegistry()

        @hooks.on('after_tool_call')
        async def log_tool(event):
            print(f"Tool: {event.tool_id}")

        async def on_finished(event):
            notify(event.level, event.message)
        hooks.register_handler('batch_finished', on_finished)
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {event.value: [] for event in HookEvent}

    def on(self, hook_name: str):
        """Decorator form of `register_handler`."""

        def decorator(func: Callable) -> Callable:
            self.register_handler(hook_name, func)
            return func

        return decorator

    def register_handler(self, hook_name: str, handler: Callable) -> None:
        """Append an async handler to a hook point.

        Raises:
            ValueError: If hook_name is not a HookEvent value
        """
        if hook_name not in self._handlers:
            raise ValueError(
                f"Invalid hook name '{hook_name}'. Valid hooks: {list(self._handlers)}"
            )
        self._handlers[hook_name].append(handler)

    def register_middlewares(self, middlewares: List["Middleware"]) -> None:
        """Register the hook methods each middleware overrides."""
        for middleware in middlewares:
            for hook_name in self._handlers:
                method = getattr(type(middleware), hook_name, None)
                if method is None or method is getattr(Middleware, hook_name):
                    continue
                self.register_handler(hook_name, getattr(middleware, hook_name))

    async def trigger(self, hook_name: str, event_data: Any) -> Optional[HookResponse]:
        """Run the handlers of a hook point in registration order.

        The first handler returning a value ends the dispatch; its value is
        returned as a HookResponse. Handler exceptions are logged and the
        next handler runs.
        """
        for handler in self._handlers.get(hook_name, []):
            try:
                response = await handler(event_data)
            except Exception as e:
                logger.warning(f"Hook '{hook_name}' raised exception: {e}")
                continue
            if response is not None:
                return HookResponse.from_dict(response)
        return None

    def has_handlers(self, hook_name: str) -> bool:
        return bool(self._handlers.get(hook_name))

    def clear(self) -> None:
        """Drop every registered handler."""
        self._handlers = {hook_name: [] for hook_name in self._handlers}


# ============================================================================
# Middleware Base Class (Optional, for stateful handlers)
# ============================================================================


class Middleware:
    """Base class for middleware (stateful hook handlers).

    Override methods for hooks you want to handle.

    Usage:
        class ProgressMiddleware(Middleware):
            async def run_completed(self, event):
                bar.update(event.completed_runs / event.run_count)

        batcher = RunBatcher(run_once, middlewares=[ProgressMiddleware()])
    """

    async def before_run(self, event: BeforeRunEventData) -> Optional[Dict]:
        pass

    async def after_run(self, event: AfterRunEventData) -> Optional[Dict]:
        pass

    async def before_iteration(
        self, event: BeforeIterationEventData
    ) -> Optional[Dict]:
        pass

    async def after_iteration(self, event: AfterIterationEventData) -> Optional[Dict]:
        pass

    async def before_model_call(
        self, event: BeforeModelCallEventData
    ) -> Optional[Dict]:
        pass

    async def after_model_call(self, event: AfterModelCallEventData) -> Optional[Dict]:
        pass

    async def before_tool_call(self, event: BeforeToolCallEventData) -> Optional[Dict]:
        pass

    async def after_tool_call(self, event: AfterToolCallEventData) -> Optional[Dict]:
        pass

    async def on_tool_error(self, event: OnToolErrorEventData) -> Optional[Dict]:
        pass

    async def block_executed(self, event: BlockExecutedEventData) -> Optional[Dict]:
        pass

    async def run_completed(self, event: RunCompletedEventData) -> Optional[Dict]:
        pass

    async def batch_finished(self, event: BatchFinishedEventData) -> Optional[Dict]:
        pass
