"""Step-through execution of a block plan.

A plan is an ordered list of blocks; each block names the blocks it
depends on. With debug mode off, `DebugController.start` runs the whole
plan. With debug mode on it stops before the first block and the caller
drives execution with `step`, `resume` and `cancel`.

Usage:
    controller = DebugController(DebugSession(debug_mode=True))
    await controller.start(plan)
    await controller.step()        # executes exactly one block
    await controller.resume()      # runs the rest
"""

import asyncio
import dataclasses
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Optional

from agent_engine.execution import ExecutionResult
from agent_engine.hooks import BlockExecutedEventData, HookRegistry, Middleware
from agent_engine.loop import ConversationLoop
from agent_engine.provider import ProviderRequest

logger = logging.getLogger(__name__)


@dataclass
class BlockResult:
    """Output of one block.

    `route`, when set, lists the dependents this block activates; the
    others lose their edge from it.
    """

    output: Any = None
    route: Optional[list[str]] = None


class Block:
    id: str
    depends_on: list[str]

    async def execute(self, inputs: dict[str, Any]) -> BlockResult:
        """Run the block. `inputs` maps executed upstream ids to their outputs."""
        raise NotImplementedError


class FunctionBlock(Block):
    """Block backed by an async callable."""

    def __init__(
        self,
        id: str,
        fn: Callable[[dict[str, Any]], Awaitable[Any]],
        depends_on: Optional[list[str]] = None,
    ):
        self.id = id
        self.fn = fn
        self.depends_on = list(depends_on or [])

    async def execute(self, inputs: dict[str, Any]) -> BlockResult:
        output = await self.fn(inputs)
        if isinstance(output, BlockResult):
            return output
        return BlockResult(output=output)


class LoopBlock(Block):
    """Block that runs one conversation loop; upstream outputs join the context."""

    def __init__(
        self,
        id: str,
        loop: ConversationLoop,
        request: ProviderRequest,
        depends_on: Optional[list[str]] = None,
    ):
        self.id = id
        self.loop = loop
        self.request = request
        self.depends_on = list(depends_on or [])

    async def execute(self, inputs: dict[str, Any]) -> BlockResult:
        request = self.request
        if inputs:
            upstream = "\n\n".join(
                f"[{block_id}]\n{self._render(output)}" for block_id, output in inputs.items()
            )
            context = "\n\n".join(c for c in (request.context, upstream) if c)
            request = dataclasses.replace(request, context=context)
        result = await self.loop.run_async(request)
        return BlockResult(output=result)

    def _render(self, output: Any) -> str:
        if isinstance(output, ExecutionResult):
            return output.content
        if isinstance(output, str):
            return output
        return json.dumps(output, default=str)


class BlockPlan:
    """Blocks in execution order; every dependency must come before its dependents."""

    def __init__(self, blocks: list[Block]):
        self._blocks: dict[str, Block] = {}
        for block in blocks:
            if block.id in self._blocks:
                raise ValueError(f"Duplicate block id '{block.id}'")
            for dep in block.depends_on:
                if dep not in self._blocks:
                    raise ValueError(
                        f"Block '{block.id}' depends on '{dep}', which is not scheduled before it"
                    )
            self._blocks[block.id] = block

    def get(self, block_id: str) -> Block:
        return self._blocks[block_id]

    @property
    def ids(self) -> list[str]:
        return list(self._blocks)

    def __iter__(self) -> Iterator[Block]:
        return iter(self._blocks.values())

    def __len__(self) -> int:
        return len(self._blocks)


class DebugState(str, Enum):
    IDLE = "idle"
    DEBUGGING = "debugging"


@dataclass
class DebugSession:
    """Debug/run state owned by the caller and handed to the controller."""

    debug_mode: bool = False
    is_debugging: bool = False
    pending_blocks: list[str] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)


class DebugController:
    """Idle/Debugging state machine over a BlockPlan.

    Only the controller mutates the session's pending blocks. Cancellation
    and mode changes requested while a block is executing take effect once
    that block finishes.
    """

    def __init__(
        self,
        session: Optional[DebugSession] = None,
        hooks: Optional[HookRegistry] = None,
        middlewares: Optional[list[Middleware]] = None,
    ):
        self.session = session if session is not None else DebugSession()
        if hooks is None:
            hooks = HookRegistry()
        self.hooks = hooks
        if middlewares:
            self.hooks.register_middlewares(middlewares)

        self._lock = asyncio.Lock()
        self._plan: Optional[BlockPlan] = None
        self._executed: set[str] = set()
        self._pruned: set[str] = set()
        self._routes: dict[str, list[str]] = {}
        self._executing = False
        self._cancel_requested = False
        self._disable_requested = False

    @property
    def state(self) -> DebugState:
        return DebugState.DEBUGGING if self.session.is_debugging else DebugState.IDLE

    @property
    def pending_blocks(self) -> list[str]:
        return list(self.session.pending_blocks)

    @property
    def is_executing(self) -> bool:
        return self._executing

    def set_debug_mode(self, enabled: bool) -> None:
        if enabled:
            self._disable_requested = False
            self.session.debug_mode = True
            return

        if self._executing:
            logger.info("Debug mode change deferred until the running block finishes")
            self._disable_requested = True
            return

        self.session.debug_mode = False
        if self.state is DebugState.DEBUGGING:
            self._discard()

    async def start(self, plan: BlockPlan) -> dict[str, Any]:
        """Begin a run. Returns the outputs produced before the first pause."""
        async with self._lock:
            if self.state is DebugState.DEBUGGING:
                raise RuntimeError("A debug session is already active")

            self._plan = plan
            self._executed = set()
            self._pruned = set()
            self._routes = {}
            self._cancel_requested = False
            self._disable_requested = False
            self.session.outputs = {}
            self._recompute()

            if self.session.debug_mode:
                if not self.session.pending_blocks:
                    logger.info("Debug run has no blocks to execute")
                    self._discard()
                    return {}
                self.session.is_debugging = True
                logger.info(
                    f"Debugging started with {len(self.session.pending_blocks)} pending blocks"
                )
                return {}

            while self.session.pending_blocks and not self._cancel_requested:
                await self._execute_next()
            self._discard()
            return dict(self.session.outputs)

    async def step(self) -> Optional[str]:
        """Execute exactly one pending block; returns its id."""
        async with self._lock:
            if self.state is not DebugState.DEBUGGING or not self.session.pending_blocks:
                return None
            block_id = await self._execute_next()
            if self._stop_requested() or not self.session.pending_blocks:
                self._finish()
            return block_id

    async def resume(self) -> dict[str, Any]:
        """Execute all remaining blocks without pausing, then return to Idle."""
        async with self._lock:
            if self.state is not DebugState.DEBUGGING:
                return dict(self.session.outputs)
            while self.session.pending_blocks and not self._stop_requested():
                await self._execute_next()
            self._finish()
            return dict(self.session.outputs)

    def cancel(self) -> None:
        """Discard the remaining blocks without executing them."""
        if self._executing:
            self._cancel_requested = True
            return
        if self.state is DebugState.DEBUGGING:
            logger.info(
                f"Debugging cancelled with {len(self.session.pending_blocks)} blocks skipped"
            )
        self._discard()

    async def _execute_next(self) -> str:
        block = self._plan.get(self.session.pending_blocks[0])
        inputs = {
            dep: self.session.outputs[dep]
            for dep in block.depends_on
            if dep in self.session.outputs
        }

        self._executing = True
        try:
            block_result = await block.execute(inputs)
        except Exception:
            logger.error(f"Block '{block.id}' failed; ending run")
            self._executing = False
            self._discard()
            raise
        self._executing = False

        self.session.outputs[block.id] = block_result.output
        self._executed.add(block.id)
        if block_result.route is not None:
            self._routes[block.id] = list(block_result.route)
        self._recompute()

        await self.hooks.trigger(
            "block_executed",
            BlockExecutedEventData(
                block_id=block.id,
                output=block_result.output,
                pending_blocks=self.pending_blocks,
            ),
        )
        return block.id

    def _recompute(self) -> None:
        """Pending = unexecuted blocks still reachable, in plan order.

        Plan order is topological, so one pass settles pruning and the first
        pending block always has its live dependencies executed.
        """
        pending = []
        for block in self._plan:
            if block.id in self._executed or block.id in self._pruned:
                continue
            if block.depends_on and not any(
                self._edge_active(dep, block.id) for dep in block.depends_on
            ):
                self._pruned.add(block.id)
                continue
            pending.append(block.id)
        self.session.pending_blocks = pending

    def _edge_active(self, dep: str, block_id: str) -> bool:
        if dep in self._pruned:
            return False
        route = self._routes.get(dep)
        return route is None or block_id in route

    def _stop_requested(self) -> bool:
        return self._cancel_requested or self._disable_requested

    def _finish(self) -> None:
        if self._disable_requested:
            self.session.debug_mode = False
        if self._cancel_requested or self._disable_requested:
            logger.info(
                f"Debugging stopped with {len(self.session.pending_blocks)} blocks skipped"
            )
        self._discard()

    def _discard(self) -> None:
        self.session.is_debugging = False
        self.session.pending_blocks = []
        self._cancel_requested = False
        self._disable_requested = False
