"""Upsert / Persistence Engine.

One unit of work is a conversation plus the messages observed for it in the
current pass (a single push event, or one conversation of a sync). A unit is
written in one transaction:

1. Target row. The real uniqueness rule is (account, participant), not the
   upstream conversation ID. If a row already exists for the pair under a
   different ID, the unit is redirected to that row and every message in it
   is written against the existing ID.
2. Messages are inserted by ID; IDs already stored are left untouched.
3. Aggregates are recomputed from what is stored: the newest message by
   created_time (ties by ID) gives last_message_at and the preview, so
   out-of-order delivery corrects itself.
4. Unread only moves on genuine inserts. An inserted outbound message resets
   it to the unread inbound messages newer than the latest outbound reply.

Concurrent writers (push handler vs. sync) can still race on an INSERT. The
unit is then retried once from scratch; the retry sees the competing row and
takes the lookup/redirect path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from inboxsync.db.models import Conversation, Message, MessageDirection, utcnow
from inboxsync.db.session import SessionFactory, db_session
from inboxsync.errors import PersistenceConflictError
from inboxsync.observability.metrics import get_metrics

logger = structlog.get_logger()

PREVIEW_MAX_CHARS = 100
ATTACHMENT_PREVIEW = "[attachment]"


@dataclass(frozen=True)
class MessageRecord:
    """A resolved message ready to be written."""

    id: str
    direction: MessageDirection
    from_id: str
    to_id: str | None
    created_time: datetime
    text: str | None = None
    attachments: Any = None
    raw: dict[str, Any] | None = None
    direction_confident: bool = True


@dataclass
class ConversationUnit:
    account_id: str
    conversation_id: str
    participant_id: str | None
    messages: list[MessageRecord] = field(default_factory=list)
    is_group: bool = False
    participant_count: int | None = None
    updated_time: datetime | None = None


@dataclass
class UnitResult:
    conversation_id: str
    redirected_from: str | None = None
    inserted_ids: list[str] = field(default_factory=list)
    duplicate_ids: list[str] = field(default_factory=list)
    unread_count: int = 0

    @property
    def created_messages(self) -> int:
        return len(self.inserted_ids)


def preview_for(text: str | None, attachments: Any) -> str | None:
    if text:
        return text[:PREVIEW_MAX_CHARS]
    if attachments:
        return ATTACHMENT_PREVIEW
    return None


async def _target_conversation(
    session: AsyncSession, unit: ConversationUnit,
) -> tuple[Conversation, str | None]:
    """Find or create the row the unit writes to; second item is the redirected-from ID."""
    if unit.participant_id is not None:
        by_pair = (
            await session.execute(
                select(Conversation)
                .where(Conversation.account_id == unit.account_id)
                .where(Conversation.participant_id == unit.participant_id)
            )
        ).scalar_one_or_none()
        if by_pair is not None:
            if by_pair.id != unit.conversation_id:
                logger.warning(
                    "conversation_redirected",
                    account_id=unit.account_id,
                    participant_id=unit.participant_id,
                    incoming_id=unit.conversation_id,
                    existing_id=by_pair.id,
                )
                return by_pair, unit.conversation_id
            return by_pair, None

    by_id = await session.get(Conversation, unit.conversation_id)
    if by_id is not None:
        if by_id.participant_id is None and unit.participant_id and not by_id.is_group:
            by_id.participant_id = unit.participant_id
        elif unit.participant_id and by_id.participant_id != unit.participant_id:
            logger.warning(
                "conversation_participant_mismatch",
                conversation_id=by_id.id,
                stored_participant_id=by_id.participant_id,
                incoming_participant_id=unit.participant_id,
            )
        return by_id, None

    conversation = Conversation(
        id=unit.conversation_id,
        account_id=unit.account_id,
        participant_id=unit.participant_id,
        is_group=unit.is_group,
        participant_count=unit.participant_count,
        unread_count=0,
    )
    session.add(conversation)
    await session.flush()
    return conversation, None


async def upsert_conversation_unit(
    session: AsyncSession,
    unit: ConversationUnit,
    now: datetime | None = None,
) -> UnitResult:
    """Write one unit inside the caller's transaction."""
    now = now or utcnow()
    conversation, redirected_from = await _target_conversation(session, unit)
    result = UnitResult(conversation_id=conversation.id, redirected_from=redirected_from)

    records: dict[str, MessageRecord] = {}
    for record in unit.messages:
        records.setdefault(record.id, record)

    if records:
        stored = await session.execute(select(Message.id).where(Message.id.in_(list(records))))
        known = set(stored.scalars().all())
    else:
        known = set()

    inserted: list[MessageRecord] = []
    for record in records.values():
        if record.id in known:
            result.duplicate_ids.append(record.id)
            continue
        session.add(
            Message(
                id=record.id,
                account_id=unit.account_id,
                conversation_id=conversation.id,
                direction=record.direction,
                direction_confident=record.direction_confident,
                from_id=record.from_id,
                to_id=record.to_id,
                text=record.text,
                attachments=record.attachments,
                created_time=record.created_time,
                read_at=now if record.direction == MessageDirection.OUTBOUND else None,
                raw=record.raw,
            )
        )
        inserted.append(record)
        result.inserted_ids.append(record.id)
    await session.flush()

    await _recompute_aggregates(session, conversation, unit, inserted)
    await session.flush()
    result.unread_count = conversation.unread_count
    return result


async def _recompute_aggregates(
    session: AsyncSession,
    conversation: Conversation,
    unit: ConversationUnit,
    inserted: list[MessageRecord],
) -> None:
    newest = (
        await session.execute(
            select(Message)
            .where(Message.conversation_id == conversation.id)
            .order_by(Message.created_time.desc(), Message.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if newest is not None:
        if conversation.last_message_at != newest.created_time:
            conversation.last_message_at = newest.created_time
        preview = preview_for(newest.text, newest.attachments)
        if conversation.last_message_preview != preview:
            conversation.last_message_preview = preview

    if unit.updated_time and (
        conversation.updated_time is None or unit.updated_time > conversation.updated_time
    ):
        conversation.updated_time = unit.updated_time
    if unit.participant_count and conversation.participant_count != unit.participant_count:
        conversation.participant_count = unit.participant_count

    if not inserted:
        return

    # Unread inbound newer than the latest reply, over the stored set
    latest_reply = (
        await session.execute(
            select(func.max(Message.created_time))
            .where(Message.conversation_id == conversation.id)
            .where(Message.direction == MessageDirection.OUTBOUND)
        )
    ).scalar_one()
    unread_query = (
        select(func.count())
        .select_from(Message)
        .where(Message.conversation_id == conversation.id)
        .where(Message.direction == MessageDirection.INBOUND)
        .where(Message.read_at.is_(None))
    )
    if latest_reply is not None:
        unread_query = unread_query.where(Message.created_time > latest_reply)
    conversation.unread_count = (await session.execute(unread_query)).scalar_one()


class InboxStore:
    """Transactional entry point used by the ingestion sources."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._factory = session_factory
        self._clock = clock

    async def apply(self, unit: ConversationUnit) -> UnitResult:
        for attempt in (1, 2):
            try:
                async with db_session(self._factory) as db:
                    result = await upsert_conversation_unit(db, unit, now=self._clock())
                break
            except IntegrityError as e:
                if attempt == 2:
                    logger.error(
                        "unit_conflict_unresolved",
                        account_id=unit.account_id,
                        conversation_id=unit.conversation_id,
                        participant_id=unit.participant_id,
                        error=str(e.orig)[:300],
                    )
                    raise PersistenceConflictError(
                        f"Could not write conversation {unit.conversation_id} "
                        f"for participant {unit.participant_id}"
                    ) from e
                logger.info(
                    "unit_conflict_retry",
                    account_id=unit.account_id,
                    conversation_id=unit.conversation_id,
                )

        metrics = get_metrics()
        await metrics.message_written(len(result.inserted_ids), len(result.duplicate_ids))
        if result.redirected_from:
            await metrics.conversation_redirected()

        logger.debug(
            "unit_persisted",
            account_id=unit.account_id,
            conversation_id=result.conversation_id,
            inserted=len(result.inserted_ids),
            duplicates=len(result.duplicate_ids),
            unread_count=result.unread_count,
        )
        return result
