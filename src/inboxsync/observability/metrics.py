"""In-process metrics for the inbox sync engine.

Tracks:
  - Message write outcomes (inserted, duplicate, dropped by reason)
  - Conversation redirects performed by the conflict self-healing path
  - Identity fetch outcomes and upstream retries
  - Latency histograms for upstream calls, sync runs, and webhook events

All state lives in a process-global singleton. Snapshots are exported as
plain dicts on /metrics. Counters/histograms use an asyncio.Lock so they are
safe from concurrent coroutines.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator


# ---------------------------------------------------------------------------
# Histogram implementation
# ---------------------------------------------------------------------------

# Fixed upper-bound buckets in milliseconds.
_LATENCY_BUCKETS_MS: tuple[float, ...] = (
    5, 10, 25, 50, 100, 200, 500, 1_000, 2_000, 5_000,
    10_000, 30_000, 60_000, 300_000, float("inf"),
)


@dataclass
class Histogram:
    """Latency histogram backed by fixed buckets + running stats."""

    name: str
    _buckets: list[int] = field(default_factory=lambda: [0] * len(_LATENCY_BUCKETS_MS))
    _count: int = 0
    _sum_ms: float = 0.0
    _max_ms: float = 0.0

    def record(self, value_ms: float) -> None:
        self._count += 1
        self._sum_ms += value_ms
        self._max_ms = max(self._max_ms, value_ms)
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            if value_ms <= bound:
                self._buckets[i] += 1
                break

    @property
    def count(self) -> int:
        return self._count

    @property
    def mean_ms(self) -> float:
        return self._sum_ms / self._count if self._count else 0.0

    def percentile(self, p: float) -> float:
        """Estimate percentile via linear interpolation across buckets."""
        if self._count == 0:
            return 0.0
        target = math.ceil(p / 100 * self._count)
        cumulative = 0
        prev_bound = 0.0
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            cumulative += self._buckets[i]
            if cumulative >= target:
                bucket_count = self._buckets[i]
                frac = (target - (cumulative - bucket_count)) / bucket_count
                upper = bound if not math.isinf(bound) else self._max_ms
                return prev_bound + frac * (upper - prev_bound)
            prev_bound = bound
        return self._max_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self._count,
            "mean_ms": round(self.mean_ms, 2),
            "max_ms": round(self._max_ms, 2),
            "p50_ms": round(self.percentile(50), 2),
            "p95_ms": round(self.percentile(95), 2),
        }

    def reset(self) -> None:
        self._buckets = [0] * len(_LATENCY_BUCKETS_MS)
        self._count = 0
        self._sum_ms = 0.0
        self._max_ms = 0.0


# ---------------------------------------------------------------------------
# MetricsCollector
# ---------------------------------------------------------------------------

class MetricsCollector:
    """Process-global metrics registry.

    Counters:
        messages_inserted_total
        messages_duplicate_total
        messages_dropped_total[reason]
        conversations_redirected_total
        identity_fetches_total[outcome]
        upstream_retries_total
        sync_runs_total[status]

    Histograms (milliseconds):
        upstream_latency_ms
        sync_run_latency_ms
        webhook_event_latency_ms
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._labeled_counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: dict[str, Histogram] = {
            "upstream_latency_ms": Histogram("upstream_latency_ms"),
            "sync_run_latency_ms": Histogram("sync_run_latency_ms"),
            "webhook_event_latency_ms": Histogram("webhook_event_latency_ms"),
        }
        self._started_at: float = time.monotonic()

    async def inc(self, name: str, value: int = 1) -> None:
        async with self._lock:
            self._counters[name] += value

    async def inc_labeled(self, name: str, label: str, value: int = 1) -> None:
        async with self._lock:
            self._labeled_counters[name][label] += value

    async def record(self, histogram: str, value_ms: float) -> None:
        async with self._lock:
            if histogram in self._histograms:
                self._histograms[histogram].record(value_ms)

    @asynccontextmanager
    async def timer(self, histogram: str) -> AsyncIterator[None]:
        """Async context manager that auto-records elapsed ms."""
        t0 = time.monotonic()
        try:
            yield
        finally:
            await self.record(histogram, (time.monotonic() - t0) * 1000)

    # ------------------------------------------------------------------
    # Named helpers used by the engine
    # ------------------------------------------------------------------

    async def message_written(self, inserted: int, duplicates: int) -> None:
        async with self._lock:
            self._counters["messages_inserted_total"] += inserted
            self._counters["messages_duplicate_total"] += duplicates

    async def message_dropped(self, reason: str) -> None:
        await self.inc_labeled("messages_dropped_total", reason)

    async def conversation_redirected(self) -> None:
        await self.inc("conversations_redirected_total")

    async def identity_fetch(self, outcome: str) -> None:
        await self.inc_labeled("identity_fetches_total", outcome)

    async def sync_finished(self, status: str, elapsed_ms: float) -> None:
        await self.inc_labeled("sync_runs_total", status)
        await self.record("sync_run_latency_ms", elapsed_ms)

    # ------------------------------------------------------------------
    # Snapshot / export
    # ------------------------------------------------------------------

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            return self._build_snapshot()

    def snapshot_sync(self) -> dict[str, Any]:
        return self._build_snapshot()

    def _build_snapshot(self) -> dict[str, Any]:
        return {
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
            "counters": dict(self._counters),
            "labeled_counters": {k: dict(v) for k, v in self._labeled_counters.items()},
            "histograms": {k: v.to_dict() for k, v in self._histograms.items()},
        }

    def reset_all(self) -> None:
        """Reset all metrics. Intended for tests only."""
        self._counters.clear()
        for v in self._labeled_counters.values():
            v.clear()
        for h in self._histograms.values():
            h.reset()


# ---------------------------------------------------------------------------
# Process-global singleton
# ---------------------------------------------------------------------------

_collector: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Return (or lazily create) the process-global MetricsCollector."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
