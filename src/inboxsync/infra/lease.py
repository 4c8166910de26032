"""Per-account reconciliation lease.

At most one reconciliation sync may run per account. The lease lives in the
``sync_state`` table (owner + expiry) so it holds across processes, and it
expires on its own: a crashed run stops renewing and the next caller can take
over after ``ttl_s`` seconds. A live run renews after every conversation.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from inboxsync.config import settings
from inboxsync.db.models import SyncState, utcnow
from inboxsync.db.session import SessionFactory, db_session
from inboxsync.errors import SyncInProgressError

logger = structlog.get_logger()


class SyncLease:
    """Database-backed lease keyed by account ID."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        ttl_s: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._factory = session_factory
        self.ttl = timedelta(seconds=ttl_s if ttl_s is not None else settings.sync_lease_ttl_s)
        self._clock = clock

    async def acquire(self, account_id: str) -> str:
        """Take the lease or raise SyncInProgressError. Returns the owner token."""
        owner = uuid.uuid4().hex
        now = self._clock()
        expires = now + self.ttl

        async with db_session(self._factory) as db:
            result = await db.execute(
                update(SyncState)
                .where(SyncState.account_id == account_id)
                .where(
                    or_(
                        SyncState.lease_owner.is_(None),
                        SyncState.lease_expires_at.is_(None),
                        SyncState.lease_expires_at <= now,
                    )
                )
                .values(
                    lease_owner=owner,
                    lease_expires_at=expires,
                    last_sync_started_at=now,
                )
            )
            if result.rowcount == 1:
                logger.info("sync_lease_acquired", account_id=account_id, owner=owner)
                return owner

            if await db.get(SyncState, account_id) is not None:
                logger.info("sync_lease_busy", account_id=account_id)
                raise SyncInProgressError(account_id)

            db.add(
                SyncState(
                    account_id=account_id,
                    lease_owner=owner,
                    lease_expires_at=expires,
                    last_sync_started_at=now,
                )
            )
            try:
                await db.flush()
            except IntegrityError as e:
                raise SyncInProgressError(account_id) from e

        logger.info("sync_lease_acquired", account_id=account_id, owner=owner)
        return owner

    async def renew(self, account_id: str, owner: str) -> bool:
        """Push the expiry forward. False means the lease was lost."""
        async with db_session(self._factory) as db:
            result = await db.execute(
                update(SyncState)
                .where(SyncState.account_id == account_id)
                .where(SyncState.lease_owner == owner)
                .values(lease_expires_at=self._clock() + self.ttl)
            )
        renewed = result.rowcount == 1
        if not renewed:
            logger.warning("sync_lease_lost", account_id=account_id, owner=owner)
        return renewed

    async def release(self, account_id: str, owner: str, error: str | None = None) -> None:
        async with db_session(self._factory) as db:
            await db.execute(
                update(SyncState)
                .where(SyncState.account_id == account_id)
                .where(SyncState.lease_owner == owner)
                .values(
                    lease_owner=None,
                    lease_expires_at=None,
                    last_sync_finished_at=self._clock(),
                    last_sync_error=error,
                )
            )
        logger.info("sync_lease_released", account_id=account_id, owner=owner)
