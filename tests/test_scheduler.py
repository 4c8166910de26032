"""Tests for the periodic sync/backfill scheduler."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from conftest import add_account
from inboxsync.errors import AuthError, SyncInProgressError
from inboxsync.identity.backfill import BackfillSummary
from inboxsync.ingest.sync import SyncSummary
from inboxsync.jobs.scheduler import SyncScheduler


class StubService:
    def __init__(self, session_factory, sync_error: Exception | None = None) -> None:
        self.session_factory = session_factory
        self.sync_calls: list[str] = []
        self.backfill_calls: list[str] = []
        self._sync_error = sync_error
        self.sync = SimpleNamespace(run=self._run_sync)

    async def _run_sync(self, account_id: str) -> SyncSummary:
        self.sync_calls.append(account_id)
        if self._sync_error is not None:
            raise self._sync_error
        return SyncSummary(account_id=account_id)

    async def backfill_identities(self, account_id: str) -> BackfillSummary:
        self.backfill_calls.append(account_id)
        raise AuthError("EXPIRED", "token expired")


class TestSyncScheduler:
    @pytest.mark.asyncio
    async def test_start_schedules_connected_accounts(self, session_factory):
        await add_account(session_factory, "A1")
        await add_account(session_factory, "A2")
        await add_account(session_factory, "A3", token=None)

        scheduler = SyncScheduler(StubService(session_factory), 30, 60)
        await scheduler.start()
        try:
            ids = sorted(job["id"] for job in scheduler.list_jobs())
        finally:
            await scheduler.stop()

        assert ids == [
            "A1:identity_backfill",
            "A1:sync",
            "A2:identity_backfill",
            "A2:sync",
        ]

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_jobs(self, session_factory):
        scheduler = SyncScheduler(StubService(session_factory), 30, 60)
        await scheduler.start()
        try:
            scheduler.schedule_account("A1")
            scheduler.schedule_account("A1")
            assert len(scheduler.list_jobs()) == 2
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [SyncInProgressError("A1"), AuthError("MISSING", "no token"), RuntimeError("boom")],
    )
    async def test_job_failures_are_contained(self, session_factory, error):
        service = StubService(session_factory, sync_error=error)
        scheduler = SyncScheduler(service, 30, 60)
        await scheduler.run_sync("A1")
        await scheduler.run_backfill("A1")
        assert service.sync_calls == ["A1"]
        assert service.backfill_calls == ["A1"]
