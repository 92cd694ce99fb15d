"""Sequential execution of N runs with cooperative cancellation."""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from agent_engine.exceptions import BatchRunError
from agent_engine.hooks import (
    BatchFinishedEventData,
    HookRegistry,
    Middleware,
    RunCompletedEventData,
)

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cancellation flag safe to set from another thread or task."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class BatchOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class RunBatch:
    run_count: int
    token: CancellationToken = field(default_factory=CancellationToken)
    completed_runs: int = 0
    outcome: Optional[BatchOutcome] = None
    message: str = ""
    error: Optional[BatchRunError] = None


class StatsSink:
    """Receives the number of runs a batch completed."""

    async def record(self, runs_completed: int) -> None:
        raise NotImplementedError


class HttpStatsSink(StatsSink):
    """Posts batch statistics to the workflow stats endpoint.

    Args:
        workflow_id: Workflow the runs belong to.
        base_url: Service URL. Falls back to AGENT_ENGINE_STATS_URL environment variable.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        workflow_id: str,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url or os.environ.get("AGENT_ENGINE_STATS_URL")
        if not self.base_url:
            raise ValueError(
                "Stats URL not provided. "
                "Pass base_url argument or set AGENT_ENGINE_STATS_URL environment variable."
            )
        self.workflow_id = workflow_id
        self.timeout = timeout

    async def record(self, runs_completed: int) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{self.base_url.rstrip('/')}/api/workflows/{self.workflow_id}/stats",
                params={"runs": runs_completed},
                timeout=self.timeout,
            )
        response.raise_for_status()


class RunBatcher:
    """Runs `run_once(index)` up to `count` times, one after another.

    Cancellation is checked before each run; the first failing run stops
    the batch. Exactly one `batch_finished` event is published per batch.

    Usage:
        batcher = RunBatcher(run_once, stats_sink=HttpStatsSink("wf-1"))
        token = CancellationToken()
        batch = await batcher.run(5, token)
        batch.outcome, batch.completed_runs
    """

    def __init__(
        self,
        run_once: Callable[[int], Awaitable[Any]],
        hooks: Optional[HookRegistry] = None,
        middlewares: Optional[list[Middleware]] = None,
        stats_sink: Optional[StatsSink] = None,
    ):
        self.run_once = run_once
        self.stats_sink = stats_sink
        if hooks is None:
            hooks = HookRegistry()
        self.hooks = hooks
        if middlewares:
            self.hooks.register_middlewares(middlewares)

        self.current: Optional[RunBatch] = None
        self._stats_tasks: set[asyncio.Task] = set()
        self._running = False

    async def run(
        self, count: int, token: Optional[CancellationToken] = None
    ) -> RunBatch:
        """Run one batch.

        Raises:
            ValueError: If count is not positive
            RuntimeError: If another batch on this batcher has not finished
        """
        if count <= 0:
            raise ValueError(f"Run count must be positive, got {count}")
        if self._running:
            raise RuntimeError("A batch is already running")

        self._running = True
        try:
            batch = RunBatch(run_count=count, token=token or CancellationToken())
            self.current = batch
            await self._run_batch(batch)
        finally:
            self._running = False
        return batch

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run_batch(self, batch: RunBatch) -> None:
        count = batch.run_count
        for index in range(count):
            if batch.token.cancelled:
                logger.info(
                    f"Batch cancellation requested after {batch.completed_runs} runs"
                )
                batch.outcome = BatchOutcome.CANCELLED
                break

            try:
                await self.run_once(index)
            except Exception as e:
                logger.error(f"Run {index + 1}/{count} failed: {e}")
                batch.error = BatchRunError(
                    f"Run {index + 1} of {count} failed: {e}", run_index=index
                )
                batch.error.__cause__ = e
                batch.outcome = BatchOutcome.ERROR
                break

            batch.completed_runs += 1
            await self.hooks.trigger(
                "run_completed",
                RunCompletedEventData(
                    completed_runs=batch.completed_runs, run_count=count
                ),
            )
        else:
            batch.outcome = BatchOutcome.COMPLETED

        if self.stats_sink is not None and (
            batch.outcome is BatchOutcome.COMPLETED
            or (batch.outcome is BatchOutcome.CANCELLED and batch.completed_runs > 0)
        ):
            self._schedule_stats(batch.completed_runs)

        await self._notify(batch)

    async def flush(self) -> None:
        """Wait for outstanding statistics updates."""
        if self._stats_tasks:
            await asyncio.gather(*list(self._stats_tasks))

    def _schedule_stats(self, runs_completed: int) -> None:
        task = asyncio.create_task(self._record_stats(runs_completed))
        self._stats_tasks.add(task)
        task.add_done_callback(self._stats_tasks.discard)

    async def _record_stats(self, runs_completed: int) -> None:
        try:
            await self.stats_sink.record(runs_completed)
        except Exception as e:
            logger.error(f"Failed to update workflow stats: {e}")

    async def _notify(self, batch: RunBatch) -> None:
        if batch.outcome is BatchOutcome.CANCELLED:
            level, message = "info", "Workflow run cancelled"
        elif batch.outcome is BatchOutcome.ERROR:
            level, message = "error", "Failed to complete all workflow runs"
        else:
            level = "console"
            message = f"Completed {batch.completed_runs} workflow runs"
        batch.message = message
        logger.info(f"Batch finished ({batch.outcome.value}): {message}")

        await self.hooks.trigger(
            "batch_finished",
            BatchFinishedEventData(
                outcome=batch.outcome.value,
                level=level,
                message=message,
                completed_runs=batch.completed_runs,
                run_count=batch.run_count,
                error=batch.error,
            ),
        )
