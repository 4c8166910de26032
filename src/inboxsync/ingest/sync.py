"""Reconciliation sync: pull every conversation upstream and reconcile the store.

Used for historical backfill and to repair anything the push channel missed
or delivered out of order. Per-conversation failures are collected in the
summary and the run moves on; only an AuthError or a failure of the initial
listing aborts the run.

At most one run per account holds the lease at a time; runs for different
accounts are independent.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Callable

import structlog

from inboxsync.accounts import load_credentials, remember_self_scoped_id
from inboxsync.config import settings
from inboxsync.db.models import utcnow
from inboxsync.db.session import SessionFactory
from inboxsync.errors import (
    AuthError,
    DataAnomalyError,
    PersistenceConflictError,
    UpstreamError,
)
from inboxsync.graph.client import GraphClient
from inboxsync.graph.payloads import ConversationDetail, ConversationSummary, parse_graph_time
from inboxsync.identity.cache import OUTCOME_CACHED, OUTCOME_FETCHED, IdentityResolver
from inboxsync.infra.lease import SyncLease
from inboxsync.infra.retry import Sleep, call_with_backoff
from inboxsync.observability.metrics import get_metrics
from inboxsync.resolution.participant import (
    MessageParties,
    ThreadView,
    resolve_counterparty,
    resolve_direction,
)
from inboxsync.store.upsert import ConversationUnit, InboxStore, MessageRecord

logger = structlog.get_logger()


@dataclass
class SyncSummary:
    account_id: str
    conversations_found: int = 0
    conversations_upserted: int = 0
    messages_upserted: int = 0
    identities_resolved: int = 0
    conversations_skipped: int = 0
    messages_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    max_errors: int = field(default=50, repr=False)

    def add_error(self, message: str) -> None:
        if len(self.errors) < self.max_errors:
            self.errors.append(message)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("max_errors")
        return data


@dataclass
class _BuiltUnit:
    unit: ConversationUnit
    self_id: str | None
    anomalies: list[str]


class ReconciliationSync:
    def __init__(
        self,
        graph: GraphClient,
        store: InboxStore,
        identity: IdentityResolver | None = None,
        session_factory: SessionFactory | None = None,
        lease: SyncLease | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Sleep = asyncio.sleep,
        max_errors: int | None = None,
    ) -> None:
        self.graph = graph
        self.store = store
        self.identity = identity
        self._factory = session_factory
        self.lease = lease or SyncLease(session_factory, clock=clock)
        self._clock = clock
        self._sleep = sleep
        self.max_errors = max_errors or settings.sync_max_errors

    async def run(
        self,
        account_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> SyncSummary:
        """Run one reconciliation pass for ``account_id``.

        Raises SyncInProgressError if another pass holds the lease, AuthError
        when the token is missing/expired/rejected, and the listing error if
        the conversation list cannot be fetched.
        """
        # Naive window bounds are taken as UTC
        since, until = parse_graph_time(since), parse_graph_time(until)
        owner = await self.lease.acquire(account_id)
        t0 = time.monotonic()
        status, error = "ok", None
        try:
            summary = await self._run(account_id, owner, since, until)
            if summary.errors:
                status = "partial"
            return summary
        except Exception as e:
            status, error = "failed", f"{type(e).__name__}: {e}"
            raise
        finally:
            await self.lease.release(account_id, owner, error=error)
            await get_metrics().sync_finished(status, (time.monotonic() - t0) * 1000)

    async def _run(
        self,
        account_id: str,
        owner: str,
        since: datetime | None,
        until: datetime | None,
    ) -> SyncSummary:
        summary = SyncSummary(account_id=account_id, max_errors=self.max_errors)

        creds = await load_credentials(account_id, self._factory)
        if creds is None:
            raise AuthError("MISSING", f"No connection for account {account_id}")
        token = creds.require_token(self._clock())
        self_id = creds.self_scoped_id

        logger.info(
            "sync_started",
            account_id=account_id,
            since=since.isoformat() if since else None,
            until=until.isoformat() if until else None,
            self_id_known=bool(self_id),
        )

        listing = await call_with_backoff(
            partial(self.graph.list_conversations, account_id, token, since, until),
            operation="list_conversations",
            sleep=self._sleep,
        )
        summary.conversations_found = len(listing)

        counterparties: list[str] = []
        for item in listing:
            # Renew ahead of each wrapped call
            if not await self.lease.renew(account_id, owner):
                summary.add_error("Sync lease lost; stopping early")
                break
            try:
                detail = await call_with_backoff(
                    partial(self.graph.get_conversation_detail, item.id, token),
                    operation="conversation_detail",
                    sleep=self._sleep,
                )
                built = self._build_unit(account_id, item, detail, self_id, creds.username)
            except AuthError:
                raise
            except (UpstreamError, DataAnomalyError) as e:
                summary.conversations_skipped += 1
                summary.add_error(f"{item.id}: {e}")
                logger.warning(
                    "sync_conversation_skipped",
                    account_id=account_id,
                    conversation_id=item.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            for anomaly in built.anomalies:
                summary.add_error(f"{item.id}: {anomaly}")
            summary.messages_skipped += len(built.anomalies)

            if built.self_id and not self_id:
                await remember_self_scoped_id(account_id, built.self_id, self._factory)
                self_id = built.self_id

            try:
                written = await self.store.apply(built.unit)
            except PersistenceConflictError as e:
                summary.conversations_skipped += 1
                summary.add_error(f"{item.id}: {e}")
            else:
                summary.conversations_upserted += 1
                summary.messages_upserted += len(written.inserted_ids)
                participant_id = built.unit.participant_id
                if participant_id and participant_id not in counterparties:
                    counterparties.append(participant_id)
                logger.debug(
                    "sync_conversation_upserted",
                    account_id=account_id,
                    conversation_id=written.conversation_id,
                    inserted=len(written.inserted_ids),
                    duplicates=len(written.duplicate_ids),
                )

        await self.lease.renew(account_id, owner)
        await self._enrich(account_id, counterparties, summary)

        logger.info(
            "sync_complete",
            account_id=account_id,
            found=summary.conversations_found,
            upserted=summary.conversations_upserted,
            messages=summary.messages_upserted,
            skipped=summary.conversations_skipped,
            identities=summary.identities_resolved,
            error_count=len(summary.errors),
        )
        return summary

    def _build_unit(
        self,
        account_id: str,
        item: ConversationSummary,
        detail: ConversationDetail,
        self_id: str | None,
        self_username: str | None,
    ) -> _BuiltUnit:
        counterparty = resolve_counterparty(
            ThreadView(
                participants=detail.participants,
                messages=detail.messages,
                self_id=self_id,
                self_username=self_username,
            )
        )

        fallback_time = item.updated_time or detail.updated_time or self._clock()
        records: list[MessageRecord] = []
        anomalies: list[str] = []
        for message in detail.messages:
            if not message.from_id:
                anomalies.append(f"message {message.id} has no sender")
                continue
            try:
                decision = resolve_direction(
                    MessageParties(
                        sender_id=message.from_id,
                        recipient_id=message.to_id,
                        self_id=counterparty.self_id,
                        self_username=self_username,
                        participants=detail.participants,
                        counterparty_id=counterparty.participant_id,
                    )
                )
            except DataAnomalyError as e:
                anomalies.append(f"message {message.id}: {e}")
                continue

            records.append(
                MessageRecord(
                    id=message.id,
                    direction=decision.direction,
                    direction_confident=decision.confident,
                    from_id=message.from_id,
                    to_id=message.to_id,
                    created_time=message.created_time or fallback_time,
                    text=message.message,
                    attachments=message.attachments,
                    raw=message.model_dump(mode="json", by_alias=True),
                )
            )

        unit = ConversationUnit(
            account_id=account_id,
            conversation_id=item.id,
            participant_id=counterparty.participant_id,
            messages=records,
            is_group=counterparty.is_group,
            participant_count=counterparty.participant_count,
            updated_time=item.updated_time or detail.updated_time,
        )
        return _BuiltUnit(unit=unit, self_id=counterparty.self_id, anomalies=anomalies)

    async def _enrich(
        self, account_id: str, participant_ids: list[str], summary: SyncSummary,
    ) -> None:
        """Resolve counterparties after their messages are durable."""
        if self.identity is None:
            return
        for participant_id in participant_ids:
            try:
                result = await self.identity.resolve(account_id, participant_id)
            except AuthError as e:
                summary.add_error(f"identity enrichment stopped: {e}")
                logger.warning("sync_identity_auth_failed", account_id=account_id, code=e.code)
                return
            if result.outcome in (OUTCOME_FETCHED, OUTCOME_CACHED):
                summary.identities_resolved += 1
            elif result.error:
                summary.add_error(f"identity {participant_id}: {result.error}")
