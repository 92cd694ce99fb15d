import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from agent_engine.batch import (
    BatchOutcome,
    CancellationToken,
    HttpStatsSink,
    RunBatch,
    RunBatcher,
    StatsSink,
)
from agent_engine.exceptions import BatchRunError
from agent_engine.hooks import HookRegistry, Middleware


# --- Test fixtures ---


class RecordingSink(StatsSink):
    def __init__(self, fail: bool = False):
        self.recorded = []
        self.fail = fail

    async def record(self, runs_completed: int) -> None:
        if self.fail:
            raise httpx.ConnectError("stats service down")
        self.recorded.append(runs_completed)


class Runs:
    """run_once stand-in that logs indices and can cancel or fail on a given run."""

    def __init__(self, token=None, cancel_after=None, fail_at=None):
        self.executed = []
        self.token = token
        self.cancel_after = cancel_after
        self.fail_at = fail_at

    async def __call__(self, index: int) -> None:
        if index == self.fail_at:
            raise RuntimeError("workflow exploded")
        self.executed.append(index)
        if self.cancel_after is not None and len(self.executed) == self.cancel_after:
            self.token.cancel()


class EventLog(Middleware):
    def __init__(self):
        self.progress = []
        self.finished = []

    async def run_completed(self, event):
        self.progress.append((event.completed_runs, event.run_count))

    async def batch_finished(self, event):
        self.finished.append(event)


# --- Tests ---


class TestCancellationToken:
    def test_starts_clear(self):
        assert CancellationToken().cancelled is False

    def test_cancel_from_another_thread(self):
        token = CancellationToken()
        thread = threading.Thread(target=token.cancel)
        thread.start()
        thread.join()
        assert token.cancelled is True


class TestRunBatcher:
    @pytest.mark.asyncio
    async def test_all_runs_complete(self):
        runs = Runs()
        log = EventLog()
        sink = RecordingSink()
        batcher = RunBatcher(runs, middlewares=[log], stats_sink=sink)

        batch = await batcher.run(3)
        await batcher.flush()

        assert isinstance(batch, RunBatch)
        assert runs.executed == [0, 1, 2]
        assert batch.outcome is BatchOutcome.COMPLETED
        assert batch.completed_runs == 3
        assert batch.message == "Completed 3 workflow runs"
        assert batch.error is None
        assert log.progress == [(1, 3), (2, 3), (3, 3)]
        assert sink.recorded == [3]
        assert batcher.current is batch

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_run(self):
        token = CancellationToken()
        runs = Runs(token=token, cancel_after=2)
        log = EventLog()
        sink = RecordingSink()
        batcher = RunBatcher(runs, middlewares=[log], stats_sink=sink)

        batch = await batcher.run(5, token)
        await batcher.flush()

        assert runs.executed == [0, 1]
        assert batch.completed_runs == 2
        assert batch.outcome is BatchOutcome.CANCELLED
        assert sink.recorded == [2]
        assert len(log.finished) == 1
        assert log.finished[0].level == "info"
        assert log.finished[0].message == "Workflow run cancelled"

    @pytest.mark.asyncio
    async def test_cancel_before_start_runs_nothing(self):
        token = CancellationToken()
        token.cancel()
        runs = Runs()
        sink = RecordingSink()
        batcher = RunBatcher(runs, stats_sink=sink)

        batch = await batcher.run(4, token)
        await batcher.flush()

        assert runs.executed == []
        assert batch.outcome is BatchOutcome.CANCELLED
        assert batch.completed_runs == 0
        assert sink.recorded == []

    @pytest.mark.asyncio
    async def test_failure_stops_batch(self):
        runs = Runs(fail_at=2)
        log = EventLog()
        sink = RecordingSink()
        batcher = RunBatcher(runs, middlewares=[log], stats_sink=sink)

        batch = await batcher.run(5)
        await batcher.flush()

        assert runs.executed == [0, 1]
        assert batch.completed_runs == 2
        assert batch.outcome is BatchOutcome.ERROR
        assert isinstance(batch.error, BatchRunError)
        assert batch.error.run_index == 2
        assert isinstance(batch.error.__cause__, RuntimeError)
        assert sink.recorded == []

        assert len(log.finished) == 1
        event = log.finished[0]
        assert event.outcome == "error"
        assert event.level == "error"
        assert event.message == "Failed to complete all workflow runs"
        assert event.error is batch.error

    @pytest.mark.asyncio
    async def test_single_run_still_notifies(self):
        log = EventLog()
        batch = await RunBatcher(Runs(), middlewares=[log]).run(1)

        assert batch.outcome is BatchOutcome.COMPLETED
        assert [(e.level, e.message) for e in log.finished] == [
            ("console", "Completed 1 workflow runs")
        ]

    @pytest.mark.asyncio
    async def test_stats_failure_is_logged_not_raised(self):
        batcher = RunBatcher(Runs(), stats_sink=RecordingSink(fail=True))

        batch = await batcher.run(2)
        await batcher.flush()

        assert batch.outcome is BatchOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_decorator_hooks(self):
        hooks = HookRegistry()
        outcomes = []

        @hooks.on("batch_finished")
        async def on_finished(event):
            outcomes.append((event.outcome, event.completed_runs, event.run_count))

        await RunBatcher(Runs(), hooks=hooks).run(2)

        assert outcomes == [("completed", 2, 2)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, -1])
    async def test_count_must_be_positive(self, count):
        with pytest.raises(ValueError):
            await RunBatcher(Runs()).run(count)

    @pytest.mark.asyncio
    async def test_second_batch_rejected_while_one_runs(self):
        active = 0
        peak = 0

        async def slow_run(index):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        log = EventLog()
        batcher = RunBatcher(slow_run, middlewares=[log])
        first, second = await asyncio.gather(
            batcher.run(3), batcher.run(3), return_exceptions=True
        )

        assert first.outcome is BatchOutcome.COMPLETED
        assert first.completed_runs == 3
        assert isinstance(second, RuntimeError)
        assert peak == 1
        assert len(log.finished) == 1
        assert batcher.is_running is False

    @pytest.mark.asyncio
    async def test_batcher_reusable_after_failure(self):
        batcher = RunBatcher(Runs(fail_at=0))
        failed = await batcher.run(2)
        assert failed.outcome is BatchOutcome.ERROR

        batcher.run_once = Runs()
        batch = await batcher.run(2)
        assert batch.outcome is BatchOutcome.COMPLETED


class TestHttpStatsSink:
    def test_requires_url(self, monkeypatch):
        monkeypatch.delenv("AGENT_ENGINE_STATS_URL", raising=False)
        with pytest.raises(ValueError, match="AGENT_ENGINE_STATS_URL"):
            HttpStatsSink("wf-1")

    def test_url_from_env(self, monkeypatch):
        monkeypatch.setenv("AGENT_ENGINE_STATS_URL", "http://stats.local")
        assert HttpStatsSink("wf-1").base_url == "http://stats.local"

    @pytest.mark.asyncio
    async def test_posts_completed_runs(self):
        sink = HttpStatsSink("wf-1", base_url="http://stats.local/")

        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = AsyncMock()
            mock_client.return_value.__aenter__.return_value = mock_instance
            mock_instance.post.return_value = MagicMock()

            await sink.record(4)

            call_args = mock_instance.post.call_args
            assert call_args.args[0] == "http://stats.local/api/workflows/wf-1/stats"
            assert call_args.kwargs["params"] == {"runs": 4}
            mock_instance.post.return_value.raise_for_status.assert_called_once()
