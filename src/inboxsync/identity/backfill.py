"""Bounded identity backfill and refresh jobs.

Both walk a limited batch of participants for one account and resolve them
through the IdentityResolver. An AuthError stops the batch at once and
propagates: it means the account's token is unusable, not that one row is bad.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

import structlog
from sqlalchemy import or_, select, union

from inboxsync.accounts import AccountCredentials, load_credentials
from inboxsync.config import settings
from inboxsync.db.models import Conversation, IdentityCacheEntry, Message
from inboxsync.db.session import SessionFactory, db_session
from inboxsync.errors import AuthError
from inboxsync.identity.cache import (
    OUTCOME_COOLDOWN,
    OUTCOME_FETCHED,
    IdentityResolver,
)

logger = structlog.get_logger()

MAX_SUMMARY_ERRORS = 10


@dataclass
class BackfillSummary:
    processed: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_SUMMARY_ERRORS:
            self.errors.append(message)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def _require_connection(
    account_id: str, factory: SessionFactory | None,
) -> AccountCredentials:
    creds = await load_credentials(account_id, factory)
    if creds is None:
        raise AuthError("MISSING", f"No connection for account {account_id}")
    creds.require_token()
    return creds


async def backfill_identities(
    account_id: str,
    resolver: IdentityResolver,
    session_factory: SessionFactory | None = None,
    batch_size: int | None = None,
) -> BackfillSummary:
    """Resolve cache rows that are still missing a username, name, or picture."""
    await _require_connection(account_id, session_factory)
    limit = batch_size or settings.identity_backfill_batch

    async with db_session(session_factory) as db:
        result = await db.execute(
            select(IdentityCacheEntry)
            .where(IdentityCacheEntry.account_id == account_id)
            .where(
                or_(
                    IdentityCacheEntry.username.is_(None),
                    IdentityCacheEntry.name.is_(None),
                    IdentityCacheEntry.profile_pic_url.is_(None),
                )
            )
            .order_by(IdentityCacheEntry.created_at)
            .limit(limit)
        )
        rows = list(result.scalars().all())

    summary = BackfillSummary()
    for row in rows:
        if resolver.in_cooldown(row, resolver.now()):
            summary.skipped += 1
            continue
        summary.processed += 1
        # AuthError propagates and ends the batch
        outcome = await resolver.resolve(account_id, row.participant_id, force=True)
        if outcome.outcome == OUTCOME_FETCHED:
            summary.updated += 1
        else:
            summary.failed += 1
            summary.add_error(f"{row.participant_id}: {outcome.error or outcome.outcome}")

    logger.info("identity_backfill_complete", account_id=account_id, **summary.to_dict())
    return summary


async def refresh_identities(
    account_id: str,
    resolver: IdentityResolver,
    session_factory: SessionFactory | None = None,
    batch_size: int | None = None,
) -> BackfillSummary:
    """Re-resolve every known counterparty of the account, ignoring freshness."""
    creds = await _require_connection(account_id, session_factory)
    limit = batch_size or settings.identity_backfill_batch

    participants = union(
        select(Conversation.participant_id.label("pid"))
        .where(Conversation.account_id == account_id),
        select(Message.from_id.label("pid")).where(Message.account_id == account_id),
        select(Message.to_id.label("pid")).where(Message.account_id == account_id),
    ).subquery()

    async with db_session(session_factory) as db:
        result = await db.execute(
            select(participants.c.pid)
            .where(participants.c.pid.is_not(None))
            .order_by(participants.c.pid)
        )
        own_ids = {creds.self_scoped_id, account_id}
        ids = [pid for pid in result.scalars().all() if pid not in own_ids]

    summary = BackfillSummary()
    for participant_id in ids[:limit]:
        outcome = await resolver.resolve(account_id, participant_id, force=True)
        if outcome.outcome == OUTCOME_COOLDOWN:
            summary.skipped += 1
            continue
        summary.processed += 1
        if outcome.outcome == OUTCOME_FETCHED:
            summary.updated += 1
        else:
            summary.failed += 1
            summary.add_error(f"{participant_id}: {outcome.error or outcome.outcome}")

    logger.info("identity_refresh_complete", account_id=account_id, **summary.to_dict())
    return summary
