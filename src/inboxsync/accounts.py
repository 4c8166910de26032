"""Read access to account connections and per-account bookkeeping.

Connections are owned by the (external) OAuth flow. The engine reads them,
and writes back exactly one field: the self-scoped participant ID, once a
sync discovers it by username match.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from inboxsync.db.models import AccountConnection, SyncState, utcnow
from inboxsync.db.session import SessionFactory, db_session
from inboxsync.errors import AuthError

logger = structlog.get_logger()


@dataclass(frozen=True)
class AccountCredentials:
    """Detached snapshot of a connection, safe to carry across awaits."""

    account_id: str
    access_token: str | None
    token_expires_at: datetime | None
    self_scoped_id: str | None
    username: str | None

    def require_token(self, now: datetime | None = None) -> str:
        """The access token, or AuthError when it is missing or expired."""
        if not self.access_token:
            raise AuthError("MISSING", f"No access token for account {self.account_id}")
        if self.token_expires_at is not None and self.token_expires_at <= (now or utcnow()):
            raise AuthError("EXPIRED", f"Access token for account {self.account_id} has expired")
        return self.access_token

    def usable_token(self, now: datetime | None = None) -> str | None:
        try:
            return self.require_token(now)
        except AuthError:
            return None

    @classmethod
    def from_row(cls, row: AccountConnection) -> AccountCredentials:
        return cls(
            account_id=row.account_id,
            access_token=row.access_token,
            token_expires_at=row.token_expires_at,
            self_scoped_id=row.self_scoped_id,
            username=row.username,
        )


async def load_credentials(
    account_id: str, factory: SessionFactory | None = None,
) -> AccountCredentials | None:
    async with db_session(factory) as db:
        row = await db.get(AccountConnection, account_id)
        return AccountCredentials.from_row(row) if row else None


async def list_account_ids(factory: SessionFactory | None = None) -> list[str]:
    """Accounts that currently have a token on file."""
    async with db_session(factory) as db:
        result = await db.execute(
            select(AccountConnection.account_id)
            .where(AccountConnection.access_token.is_not(None))
            .order_by(AccountConnection.account_id)
        )
        return list(result.scalars().all())


async def remember_self_scoped_id(
    account_id: str, self_scoped_id: str, factory: SessionFactory | None = None,
) -> None:
    """Store a discovered self-scoped ID if none is on file yet."""
    async with db_session(factory) as db:
        result = await db.execute(
            update(AccountConnection)
            .where(AccountConnection.account_id == account_id)
            .where(AccountConnection.self_scoped_id.is_(None))
            .values(self_scoped_id=self_scoped_id, updated_at=utcnow())
        )
    if result.rowcount:
        logger.info(
            "self_scoped_id_learned",
            account_id=account_id,
            self_scoped_id=self_scoped_id,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC STATE STAMPS
# ═══════════════════════════════════════════════════════════════════════════════

async def _stamp(
    account_id: str, field: str, when: datetime, factory: SessionFactory | None,
) -> None:
    async with db_session(factory) as db:
        state = await db.get(SyncState, account_id)
        if state is None:
            db.add(SyncState(account_id=account_id, **{field: when}))
        else:
            setattr(state, field, when)
        try:
            await db.flush()
        except IntegrityError:
            # Created concurrently; retry as a plain update
            await db.rollback()
            await db.execute(
                update(SyncState)
                .where(SyncState.account_id == account_id)
                .values(**{field: when})
            )


async def stamp_webhook_event(
    account_id: str, when: datetime | None = None, factory: SessionFactory | None = None,
) -> None:
    await _stamp(account_id, "last_webhook_event_at", when or utcnow(), factory)


async def stamp_webhook_verified(
    when: datetime | None = None, factory: SessionFactory | None = None,
) -> int:
    """The subscription handshake is app-wide, so every connected account is stamped."""
    when = when or utcnow()
    account_ids = await list_account_ids(factory)
    for account_id in account_ids:
        await _stamp(account_id, "webhook_verified_at", when, factory)
    return len(account_ids)
