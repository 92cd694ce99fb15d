"""Elapsed-time bookkeeping for model and tool calls."""

import time
from dataclasses import dataclass, field
from typing import Callable, Literal, Optional

SegmentKind = Literal["model", "tool"]


@dataclass
class TimeSegment:
    kind: SegmentKind
    label: str
    start: float
    end: float

    @property
    def duration(self) -> float:
        # An injected clock may step backwards; a segment never lasts less than zero
        return max(0.0, self.end - self.start)

@dataclass
class TimingSummary:
    """Aggregate durations of one run, in seconds."""

    start: Optional[float] = None
    end: Optional[float] = None
    total: float = 0.0
    model_time: float = 0.0
    tools_time: float = 0.0
    first_response_time: float = 0.0
    iterations: int = 0
    segments: list[TimeSegment] = field(default_factory=list)


class TimingRecorder:
    """Append-only log of TimeSegments.

    Usage:
        recorder = TimingRecorder()
        with recorder.measure("model", "Initial response"):
            await adaptor.call(...)
        recorder.model_time()

    Segments keep insertion order. The default clock is monotonic, so
    segments from one run never overlap; an injected clock that steps
    backwards is tolerated and only shortens the reported durations.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._segments: list[TimeSegment] = []

    @property
    def segments(self) -> list[TimeSegment]:
        return list(self._segments)

    def now(self) -> float:
        return self._clock()

    def record(self, kind: SegmentKind, label: str, start: float, end: float) -> TimeSegment:
        segment = TimeSegment(kind=kind, label=label, start=start, end=end)
        self._segments.append(segment)
        return segment

    def measure(self, kind: SegmentKind, label: str) -> "_Measurement":
        """Context manager recording one segment around its body.

        The segment is recorded even if the body raises.
        """
        return _Measurement(self, kind, label)

    def model_time(self) -> float:
        return sum(s.duration for s in self._segments if s.kind == "model")

    def tools_time(self) -> float:
        return sum(s.duration for s in self._segments if s.kind == "tool")

    def total(self) -> float:
        # Span, not a sum: time between segments counts too
        if not self._segments:
            return 0.0
        return max(0.0, self.end() - self.start())

    def start(self) -> Optional[float]:
        if not self._segments:
            return None
        return min(s.start for s in self._segments)

    def end(self) -> Optional[float]:
        if not self._segments:
            return None
        return max(s.end for s in self._segments)

    def summary(self, iterations: int = 0) -> TimingSummary:
        if not self._segments:
            return TimingSummary(iterations=iterations)
        model_segments = [s for s in self._segments if s.kind == "model"]
        return TimingSummary(
            start=self.start(),
            end=self.end(),
            total=self.total(),
            model_time=self.model_time(),
            tools_time=self.tools_time(),
            first_response_time=model_segments[0].duration if model_segments else 0.0,
            iterations=iterations,
            segments=self.segments,
        )


class _Measurement:
    def __init__(self, recorder: TimingRecorder, kind: SegmentKind, label: str):
        self._recorder = recorder
        self._kind = kind
        self._label = label
        self._start = 0.0
        self.segment: Optional[TimeSegment] = None

    def __enter__(self) -> "_Measurement":
        self._start = self._recorder.now()
        return self

    def __exit__(self, *exc) -> None:
        self.segment = self._recorder.record(
            self._kind, self._label, self._start, self._recorder.now()
        )
