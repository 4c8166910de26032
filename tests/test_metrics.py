"""Metrics instrumentation tests.

These tests run entirely in-process (no DB, no upstream API).
They verify:
  1. Counter increment semantics (plain + labeled)
  2. Latency histogram recording, bucket placement, and percentile estimates
  3. Named helpers used by the engine (message_written, sync_finished, ...)
  4. Snapshot structure and reset_all()
"""

from __future__ import annotations

import pytest

from inboxsync.observability.metrics import (
    Histogram,
    MetricsCollector,
    _LATENCY_BUCKETS_MS,
    get_metrics,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def mc() -> MetricsCollector:
    """Fresh MetricsCollector for each test (avoids global state bleed)."""
    return MetricsCollector()


# ---------------------------------------------------------------------------
# Histogram unit tests
# ---------------------------------------------------------------------------


class TestHistogram:
    def test_count_increases(self):
        h = Histogram("test")
        assert h.count == 0
        h.record(50)
        h.record(100)
        assert h.count == 2

    def test_bucket_placement(self):
        h = Histogram("test")
        h.record(5)
        assert h._buckets[0] == 1
        h.record(1000)
        bucket_idx = list(_LATENCY_BUCKETS_MS).index(1000)
        assert h._buckets[bucket_idx] == 1

    def test_above_max_bucket_goes_to_inf(self):
        h = Histogram("test")
        h.record(1_000_000)
        inf_idx = _LATENCY_BUCKETS_MS.index(float("inf"))
        assert h._buckets[inf_idx] == 1

    def test_mean_calculation(self):
        h = Histogram("test")
        h.record(100)
        h.record(200)
        assert abs(h.mean_ms - 150.0) < 0.01

    def test_percentile_zero_count(self):
        assert Histogram("test").percentile(95) == 0.0

    def test_percentile_single_value(self):
        h = Histogram("test")
        h.record(250)
        assert h.percentile(50) <= 500
        assert h.percentile(95) <= 500

    def test_to_dict_keys(self):
        h = Histogram("test")
        h.record(300)
        d = h.to_dict()
        for key in ("count", "mean_ms", "max_ms", "p50_ms", "p95_ms"):
            assert key in d, f"Missing key: {key}"

    def test_reset_zeroes_all(self):
        h = Histogram("test")
        h.record(100)
        h.reset()
        assert h.count == 0
        assert all(b == 0 for b in h._buckets)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------


class TestCounters:
    @pytest.mark.asyncio
    async def test_inc_plain(self, mc):
        await mc.inc("foo")
        await mc.inc("foo", 2)
        assert mc.snapshot_sync()["counters"]["foo"] == 3

    @pytest.mark.asyncio
    async def test_inc_labeled(self, mc):
        await mc.inc_labeled("dropped", "missing_sender")
        await mc.inc_labeled("dropped", "missing_sender")
        await mc.inc_labeled("dropped", "unknown_account")
        labeled = mc.snapshot_sync()["labeled_counters"]["dropped"]
        assert labeled == {"missing_sender": 2, "unknown_account": 1}

    @pytest.mark.asyncio
    async def test_reset_clears_counters(self, mc):
        await mc.inc("x")
        await mc.inc_labeled("y", "z")
        mc.reset_all()
        snap = mc.snapshot_sync()
        assert snap["counters"].get("x", 0) == 0
        assert snap["labeled_counters"]["y"] == {}


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


class TestEngineHelpers:
    @pytest.mark.asyncio
    async def test_message_written(self, mc):
        await mc.message_written(inserted=3, duplicates=1)
        await mc.message_written(inserted=0, duplicates=2)
        counters = mc.snapshot_sync()["counters"]
        assert counters["messages_inserted_total"] == 3
        assert counters["messages_duplicate_total"] == 3

    @pytest.mark.asyncio
    async def test_sync_finished_records_status_and_latency(self, mc):
        await mc.sync_finished("ok", 120.0)
        await mc.sync_finished("partial", 80.0)
        snap = mc.snapshot_sync()
        assert snap["labeled_counters"]["sync_runs_total"] == {"ok": 1, "partial": 1}
        assert snap["histograms"]["sync_run_latency_ms"]["count"] == 2

    @pytest.mark.asyncio
    async def test_timer_records_on_exception(self, mc):
        with pytest.raises(RuntimeError):
            async with mc.timer("webhook_event_latency_ms"):
                raise RuntimeError("boom")
        assert mc.snapshot_sync()["histograms"]["webhook_event_latency_ms"]["count"] == 1

    @pytest.mark.asyncio
    async def test_unknown_histogram_is_ignored(self, mc):
        await mc.record("nope", 10)
        assert "nope" not in mc.snapshot_sync()["histograms"]

    @pytest.mark.asyncio
    async def test_snapshot_structure(self, mc):
        await mc.conversation_redirected()
        await mc.identity_fetch("cached")
        snap = await mc.snapshot()
        assert set(snap) == {"uptime_seconds", "counters", "labeled_counters", "histograms"}
        assert set(snap["histograms"]) == {
            "upstream_latency_ms",
            "sync_run_latency_ms",
            "webhook_event_latency_ms",
        }

    def test_singleton(self):
        assert get_metrics() is get_metrics()
