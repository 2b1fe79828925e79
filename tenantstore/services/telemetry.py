from __future__ import annotations

import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Deque


@dataclass(frozen=True)
class OperationSample:
    ts: float
    component: str
    operation: str
    latency_ms: float
    success: bool


class MetricsRegistry:
    """Per-process metrics store handed to each component at construction."""

    def __init__(self, *, max_samples: int = 10000) -> None:
        self._samples: Deque[OperationSample] = deque(maxlen=max_samples)
        self._counters: dict[str, int] = defaultdict(int)

    def increment_counter(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def record_operation(self, *, component: str, operation: str, latency_ms: float, success: bool) -> None:
        # Track per-component latency and outcome for reconcile dashboards.
        self._samples.append(
            OperationSample(
                ts=time.time(),
                component=component,
                operation=operation,
                latency_ms=latency_ms,
                success=success,
            )
        )
        outcome = "success" if success else "failure"
        self.increment_counter(f"{component}.{operation}.{outcome}")

    @asynccontextmanager
    async def timed(self, component: str, operation: str) -> AsyncIterator[None]:
        start = time.monotonic()
        success = False
        try:
            yield
            success = True
        finally:
            self.record_operation(
                component=component,
                operation=operation,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    def counters_snapshot(self) -> dict[str, int]:
        return dict(self._counters)

    def samples(self, component: str | None = None) -> list[OperationSample]:
        if component is None:
            return list(self._samples)
        return [sample for sample in self._samples if sample.component == component]

    def latency_percentile(self, component: str, percentile: float) -> float | None:
        values = sorted(sample.latency_ms for sample in self.samples(component))
        if not values:
            return None
        index = min(len(values) - 1, max(0, int(round(percentile / 100.0 * (len(values) - 1)))))
        return values[index]
