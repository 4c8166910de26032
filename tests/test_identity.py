"""Tests for the identity resolution cache and the backfill/refresh jobs."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0, add_account
from inboxsync.config import settings
from inboxsync.db.models import (
    Conversation,
    IdentityCacheEntry,
    Message,
    MessageDirection,
)
from inboxsync.db.session import db_session
from inboxsync.errors import AuthError, RateLimitedError
from inboxsync.identity.backfill import backfill_identities, refresh_identities
from inboxsync.identity.cache import (
    OUTCOME_CACHED,
    OUTCOME_COOLDOWN,
    OUTCOME_FAILED,
    OUTCOME_FETCHED,
    IdentityResolver,
)
from inboxsync.observability.metrics import get_metrics


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

ANA = {"name": "Ana", "username": "ana", "profile_pic": "https://cdn.test/ana.jpg"}


@pytest.fixture
def resolver(graph, session_factory, clock) -> IdentityResolver:
    return IdentityResolver(
        graph,
        session_factory,
        ttl=timedelta(days=7),
        max_failures=3,
        cooldown=timedelta(minutes=15),
        clock=clock,
    )


async def load_entry(factory, participant_id: str) -> IdentityCacheEntry | None:
    async with db_session(factory) as db:
        return await db.get(IdentityCacheEntry, participant_id)


# ─────────────────────────────────────────────────────────────────────────────
# Freshness
# ─────────────────────────────────────────────────────────────────────────────

class TestFreshness:
    @pytest.mark.asyncio
    async def test_fetch_then_serve_from_cache(self, resolver, graph, session_factory):
        await add_account(session_factory)
        graph.profiles["P1"] = ANA

        first = await resolver.resolve("ACC", "P1")
        second = await resolver.resolve("ACC", "P1")

        assert first.outcome == OUTCOME_FETCHED
        assert second.outcome == OUTCOME_CACHED
        assert second.username == "ana"
        assert second.profile_pic_url == "https://cdn.test/ana.jpg"
        assert graph.count("get_participant_profile") == 1

    @pytest.mark.asyncio
    async def test_stale_entry_is_refetched(self, resolver, graph, session_factory, clock):
        await add_account(session_factory)
        graph.profiles["P1"] = ANA
        await resolver.resolve("ACC", "P1")

        clock.advance(days=8)
        graph.profiles["P1"] = {**ANA, "name": "Ana B."}
        result = await resolver.resolve("ACC", "P1")

        assert result.outcome == OUTCOME_FETCHED
        assert result.name == "Ana B."
        assert graph.count("get_participant_profile") == 2

    @pytest.mark.asyncio
    async def test_force_skips_freshness(self, resolver, graph, session_factory):
        await add_account(session_factory)
        graph.profiles["P1"] = ANA
        await resolver.resolve("ACC", "P1")
        result = await resolver.resolve("ACC", "P1", force=True)
        assert result.outcome == OUTCOME_FETCHED
        assert graph.count("get_participant_profile") == 2

    @pytest.mark.asyncio
    async def test_failure_keeps_cached_values(self, resolver, graph, session_factory, clock):
        await add_account(session_factory)
        graph.profiles["P1"] = ANA
        await resolver.resolve("ACC", "P1")

        clock.advance(days=8)
        del graph.profiles["P1"]
        result = await resolver.resolve("ACC", "P1")

        assert result.outcome == OUTCOME_FAILED
        assert result.name == "Ana"
        entry = await load_entry(session_factory, "P1")
        assert entry.username == "ana"
        assert entry.consecutive_failures == 1


# ─────────────────────────────────────────────────────────────────────────────
# Failure bookkeeping and cooldown
# ─────────────────────────────────────────────────────────────────────────────

class TestCooldown:
    @pytest.mark.asyncio
    async def test_cooldown_after_max_failures(self, resolver, graph, session_factory, clock):
        await add_account(session_factory)

        for _ in range(3):
            result = await resolver.resolve("ACC", "P9")
            assert result.outcome == OUTCOME_FAILED
        assert graph.count("get_participant_profile") == 3

        clock.advance(minutes=10)
        result = await resolver.resolve("ACC", "P9")
        assert result.outcome == OUTCOME_COOLDOWN
        assert graph.count("get_participant_profile") == 3

        clock.advance(minutes=6)
        result = await resolver.resolve("ACC", "P9")
        assert result.outcome == OUTCOME_FAILED
        assert graph.count("get_participant_profile") == 4

        # The failed attempt restarts the window
        result = await resolver.resolve("ACC", "P9")
        assert result.outcome == OUTCOME_COOLDOWN
        assert graph.count("get_participant_profile") == 4

    @pytest.mark.asyncio
    async def test_force_does_not_bypass_cooldown(self, resolver, graph, session_factory):
        await add_account(session_factory)
        for _ in range(3):
            await resolver.resolve("ACC", "P9")
        result = await resolver.resolve("ACC", "P9", force=True)
        assert result.outcome == OUTCOME_COOLDOWN

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, resolver, graph, session_factory, clock):
        await add_account(session_factory)
        for _ in range(3):
            await resolver.resolve("ACC", "P9")
        clock.advance(minutes=16)
        graph.profiles["P9"] = ANA

        result = await resolver.resolve("ACC", "P9")
        assert result.outcome == OUTCOME_FETCHED
        entry = await load_entry(session_factory, "P9")
        assert entry.consecutive_failures == 0
        assert entry.last_failed_at is None
        assert entry.last_fetched_at == clock.now

    @pytest.mark.asyncio
    async def test_empty_profile_counts_as_failure(self, resolver, graph, session_factory):
        await add_account(session_factory)
        graph.profiles["P1"] = {"follower_count": 3}
        result = await resolver.resolve("ACC", "P1")
        assert result.outcome == OUTCOME_FAILED
        assert result.error == "empty profile"

    @pytest.mark.asyncio
    async def test_rate_limit_failure_is_recorded(
        self, resolver, graph, session_factory, monkeypatch,
    ):
        monkeypatch.setattr(settings, "retry_base_delay_s", 0.0)
        await add_account(session_factory)
        graph.profiles["P1"] = RateLimitedError("slow down", status_code=429)

        result = await resolver.resolve("ACC", "P1")

        assert result.outcome == OUTCOME_FAILED
        assert graph.count("get_participant_profile") == 3
        entry = await load_entry(session_factory, "P1")
        assert entry.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_outcomes_are_counted(self, resolver, graph, session_factory):
        await add_account(session_factory)
        graph.profiles["P1"] = ANA
        await resolver.resolve("ACC", "P1")
        await resolver.resolve("ACC", "P1")
        snap = await get_metrics().snapshot()
        assert snap["labeled_counters"]["identity_fetches_total"] == {
            OUTCOME_FETCHED: 1,
            OUTCOME_CACHED: 1,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Auth
# ─────────────────────────────────────────────────────────────────────────────

class TestAuth:
    @pytest.mark.asyncio
    async def test_expired_token_propagates(self, resolver, graph, session_factory):
        await add_account(session_factory, expires_at=T0 - timedelta(hours=1))
        with pytest.raises(AuthError) as exc_info:
            await resolver.resolve("ACC", "P1")
        assert exc_info.value.code == "EXPIRED"
        assert graph.calls == []

        entry = await load_entry(session_factory, "P1")
        assert entry.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_unknown_account_is_missing(self, resolver, graph):
        with pytest.raises(AuthError) as exc_info:
            await resolver.resolve("NOPE", "P1")
        assert exc_info.value.code == "MISSING"

    @pytest.mark.asyncio
    async def test_upstream_auth_rejection_propagates(self, resolver, graph, session_factory):
        await add_account(session_factory)
        graph.profiles["P1"] = AuthError("EXPIRED", "Error validating access token")
        with pytest.raises(AuthError):
            await resolver.resolve("ACC", "P1")


# ─────────────────────────────────────────────────────────────────────────────
# Backfill / refresh
# ─────────────────────────────────────────────────────────────────────────────

class TestBackfill:
    @pytest.mark.asyncio
    async def test_backfill_fills_incomplete_rows(self, resolver, graph, session_factory, clock):
        await add_account(session_factory)
        async with db_session(session_factory) as db:
            db.add_all(
                [
                    IdentityCacheEntry(participant_id="P1", account_id="ACC", name="Ana"),
                    IdentityCacheEntry(
                        participant_id="P2", account_id="ACC",
                        name="Bo", username="bo", profile_pic_url="https://cdn.test/bo.jpg",
                        last_fetched_at=clock.now,
                    ),
                    IdentityCacheEntry(
                        participant_id="P3", account_id="ACC",
                        consecutive_failures=3, last_failed_at=clock.now,
                    ),
                    IdentityCacheEntry(participant_id="Q1", account_id="OTHER"),
                ]
            )
        graph.profiles["P1"] = ANA

        summary = await backfill_identities("ACC", resolver, session_factory)

        assert summary.processed == 1
        assert summary.updated == 1
        assert summary.skipped == 1
        assert summary.failed == 0
        assert [pid for _, pid in graph.calls] == ["P1"]
        entry = await load_entry(session_factory, "P1")
        assert entry.username == "ana"

    @pytest.mark.asyncio
    async def test_backfill_reports_failures(self, resolver, graph, session_factory):
        await add_account(session_factory)
        async with db_session(session_factory) as db:
            db.add(IdentityCacheEntry(participant_id="P1", account_id="ACC"))

        summary = await backfill_identities("ACC", resolver, session_factory)

        assert summary.failed == 1
        assert summary.errors and summary.errors[0].startswith("P1:")

    @pytest.mark.asyncio
    async def test_backfill_requires_token(self, resolver, session_factory):
        await add_account(session_factory, token=None)
        with pytest.raises(AuthError):
            await backfill_identities("ACC", resolver, session_factory)

    @pytest.mark.asyncio
    async def test_backfill_stops_on_upstream_auth_rejection(
        self, resolver, graph, session_factory,
    ):
        await add_account(session_factory)
        async with db_session(session_factory) as db:
            db.add_all(
                [
                    IdentityCacheEntry(participant_id=pid, account_id="ACC")
                    for pid in ("P1", "P2", "P3")
                ]
            )
        for pid in ("P1", "P2", "P3"):
            graph.profiles[pid] = AuthError("EXPIRED", "Error validating access token")

        with pytest.raises(AuthError):
            await backfill_identities("ACC", resolver, session_factory)
        assert graph.count("get_participant_profile") == 1

    @pytest.mark.asyncio
    async def test_refresh_covers_all_counterparties(
        self, resolver, graph, session_factory, clock,
    ):
        await add_account(session_factory)
        async with db_session(session_factory) as db:
            db.add_all(
                [
                    Conversation(id="C1", account_id="ACC", participant_id="P1"),
                    Conversation(id="G1", account_id="ACC", participant_id=None, is_group=True),
                ]
            )
            await db.flush()
            db.add_all(
                [
                    Message(
                        id="m1", account_id="ACC", conversation_id="C1",
                        direction=MessageDirection.INBOUND,
                        from_id="P1", to_id="SELF", created_time=T0,
                    ),
                    Message(
                        id="m2", account_id="ACC", conversation_id="G1",
                        direction=MessageDirection.INBOUND,
                        from_id="P3", to_id="SELF", created_time=T0,
                    ),
                ]
            )
            db.add(
                IdentityCacheEntry(
                    participant_id="P1", account_id="ACC", name="Ana", username="ana",
                    last_fetched_at=clock.now,
                )
            )
        graph.profiles["P1"] = ANA
        graph.profiles["P3"] = {"username": "cy"}

        summary = await refresh_identities("ACC", resolver, session_factory)

        assert summary.processed == 2
        assert summary.updated == 2
        assert sorted(pid for _, pid in graph.calls) == ["P1", "P3"]
