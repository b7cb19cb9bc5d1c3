from __future__ import annotations

import logging
import math
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Iterator
from uuid import uuid4


logger = logging.getLogger(__name__)


@dataclass
class Span:
    name: str
    trace_id: str
    started_at: float = field(default_factory=time.monotonic)
    ended_at: float | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    events: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def add_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        self.events.append({"name": name, "attributes": dict(attributes or {})})

    def end(self) -> None:
        # Ending twice keeps the first end timestamp.
        if self.ended_at is None:
            self.ended_at = time.monotonic()

    @property
    def duration_ms(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at) * 1000.0


class Trace:
    """A trace groups the spans of one job invocation or bulk run."""

    def __init__(self, name: str, *, trace_id: str | None = None, telemetry: Telemetry | None = None) -> None:
        self.name = name
        self.trace_id = trace_id or uuid4().hex
        self.spans: list[Span] = []
        self._telemetry = telemetry
        self._started_at = time.monotonic()

    def start_span(self, name: str) -> Span:
        span = Span(name=name, trace_id=self.trace_id)
        self.spans.append(span)
        return span

    @contextmanager
    def span(self, name: str) -> Iterator[Span]:
        # Close the span on every exit path and remember the error text for summaries.
        span = self.start_span(name)
        try:
            yield span
        except Exception as exc:
            span.error = str(exc) or exc.__class__.__name__
            raise
        finally:
            span.end()
            if self._telemetry is not None and span.duration_ms is not None:
                self._telemetry.histogram(f"span.{name}.ms", span.duration_ms)

    def finish(self) -> dict[str, Any]:
        # Summarize span timings for job results and logs.
        for span in self.spans:
            span.end()
        total_ms = (time.monotonic() - self._started_at) * 1000.0
        return {
            "trace_id": self.trace_id,
            "name": self.name,
            "total_ms": round(total_ms, 3),
            "spans": [
                {
                    "name": span.name,
                    "duration_ms": round(span.duration_ms or 0.0, 3),
                    "attributes": dict(span.attributes),
                    **({"error": span.error} if span.error else {}),
                }
                for span in self.spans
            ],
        }


class Telemetry:
    """In-process metrics sink: counters plus bounded histogram samples."""

    def __init__(self, *, max_samples: int = 5000) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._histograms: dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=max_samples))

    def start_trace(self, name: str, *, trace_id: str | None = None) -> Trace:
        return Trace(name, trace_id=trace_id, telemetry=self)

    def start_span(self, name: str, *, trace_id: str | None = None) -> Span:
        # Standalone span for callers without a surrounding trace.
        return Span(name=name, trace_id=trace_id or uuid4().hex)

    def increment(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def histogram(self, name: str, value: float) -> None:
        self._histograms[name].append(float(value))

    def counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def counters_snapshot(self) -> dict[str, int]:
        return dict(self._counters)

    def histogram_stats(self, name: str) -> dict[str, float | None]:
        # p95/max over retained samples; None when nothing was recorded.
        samples = sorted(self._histograms.get(name, ()))
        if not samples:
            return {"count": 0, "p95": None, "max": None}
        idx = max(0, math.ceil(0.95 * len(samples)) - 1)
        return {"count": len(samples), "p95": samples[idx], "max": samples[-1]}
