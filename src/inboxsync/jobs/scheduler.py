"""SyncScheduler: periodic reconciliation sync and identity backfill.

Every connected account gets two jobs:
- reconciliation sync every ``sync_interval_minutes``
- identity backfill every ``backfill_interval_minutes``

Jobs coalesce and never overlap with themselves. A run that finds the lease
taken or the token invalid is logged and skipped; the next tick tries again.
"""

from __future__ import annotations

from typing import Any

import structlog
from apscheduler.events import EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from inboxsync.accounts import list_account_ids
from inboxsync.config import settings
from inboxsync.errors import AuthError, SyncInProgressError, UpstreamError
from inboxsync.service import InboxSyncService

logger = structlog.get_logger()

_MISFIRE_GRACE_TIME_S = 300


class SyncScheduler:
    def __init__(
        self,
        service: InboxSyncService,
        sync_interval_minutes: int | None = None,
        backfill_interval_minutes: int | None = None,
    ) -> None:
        self.service = service
        self.sync_interval = sync_interval_minutes or settings.sync_interval_minutes
        self.backfill_interval = backfill_interval_minutes or settings.backfill_interval_minutes
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": _MISFIRE_GRACE_TIME_S,
            }
        )
        self.scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)
        self._running = False

    @staticmethod
    def _on_job_missed(event: Any) -> None:
        logger.warning(
            "scheduled_job_missed",
            job_id=event.job_id,
            scheduled_run_time=str(event.scheduled_run_time),
        )

    async def start(self) -> None:
        account_ids = await list_account_ids(self.service.session_factory)
        for account_id in account_ids:
            self.schedule_account(account_id)
        self.scheduler.start()
        self._running = True
        logger.info("sync_scheduler_started", accounts=len(account_ids))

    async def stop(self) -> None:
        if self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("sync_scheduler_stopped")

    def schedule_account(self, account_id: str) -> None:
        """Register (or replace) both jobs for one account."""
        self.scheduler.add_job(
            self.run_sync,
            trigger=IntervalTrigger(minutes=self.sync_interval),
            args=[account_id],
            id=f"{account_id}:sync",
            name=f"Reconciliation sync ({account_id})",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_backfill,
            trigger=IntervalTrigger(minutes=self.backfill_interval),
            args=[account_id],
            id=f"{account_id}:identity_backfill",
            name=f"Identity backfill ({account_id})",
            replace_existing=True,
        )
        logger.info("account_jobs_scheduled", account_id=account_id)

    def list_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": str(job.next_run_time) if job.next_run_time else None,
            }
            for job in self.scheduler.get_jobs()
        ]

    # ── Job bodies ──────────────────────────────────────────────────────

    async def run_sync(self, account_id: str) -> None:
        try:
            summary = await self.service.sync.run(account_id)
        except SyncInProgressError:
            logger.info("scheduled_sync_skipped_busy", account_id=account_id)
        except AuthError as e:
            logger.warning("scheduled_sync_auth_failed", account_id=account_id, code=e.code)
        except UpstreamError as e:
            logger.error("scheduled_sync_listing_failed", account_id=account_id, error=str(e))
        except Exception as e:
            logger.error(
                "scheduled_sync_failed",
                account_id=account_id,
                error=str(e),
                exc_info=True,
            )
        else:
            logger.info(
                "scheduled_sync_complete",
                account_id=account_id,
                upserted=summary.conversations_upserted,
                errors=len(summary.errors),
            )

    async def run_backfill(self, account_id: str) -> None:
        try:
            summary = await self.service.backfill_identities(account_id)
        except AuthError as e:
            logger.warning("scheduled_backfill_auth_failed", account_id=account_id, code=e.code)
        except Exception as e:
            logger.error(
                "scheduled_backfill_failed",
                account_id=account_id,
                error=str(e),
                exc_info=True,
            )
        else:
            logger.info(
                "scheduled_backfill_complete",
                account_id=account_id,
                updated=summary.updated,
                failed=summary.failed,
            )
