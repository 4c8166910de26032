"""Tests for the unit-of-work upsert engine and the read-side queries."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import T0, count_rows
from inboxsync.db.models import Conversation, Message, MessageDirection
from inboxsync.db.session import db_session
from inboxsync.errors import PersistenceConflictError
from inboxsync.observability.metrics import get_metrics
from inboxsync.store import upsert as upsert_module
from inboxsync.store.queries import list_conversations, list_messages, mark_read
from inboxsync.store.upsert import (
    ATTACHMENT_PREVIEW,
    ConversationUnit,
    InboxStore,
    MessageRecord,
    preview_for,
)

IN = MessageDirection.INBOUND
OUT = MessageDirection.OUTBOUND


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def record(
    message_id: str,
    direction: MessageDirection = IN,
    minutes: int = 0,
    text: str | None = "hello",
    attachments=None,
) -> MessageRecord:
    counterparty, me = "P1", "SELF"
    return MessageRecord(
        id=message_id,
        direction=direction,
        from_id=counterparty if direction == IN else me,
        to_id=me if direction == IN else counterparty,
        created_time=T0 + timedelta(minutes=minutes),
        text=text,
        attachments=attachments,
    )


def unit(
    *messages: MessageRecord,
    conversation_id: str = "C1",
    participant_id: str | None = "P1",
    **kwargs,
) -> ConversationUnit:
    return ConversationUnit(
        account_id="ACC",
        conversation_id=conversation_id,
        participant_id=participant_id,
        messages=list(messages),
        **kwargs,
    )


@pytest.fixture
def store(session_factory, clock) -> InboxStore:
    return InboxStore(session_factory, clock=clock)


async def load_conversation(factory, conversation_id: str) -> Conversation | None:
    async with db_session(factory) as db:
        return await db.get(Conversation, conversation_id)


# ─────────────────────────────────────────────────────────────────────────────
# Idempotence
# ─────────────────────────────────────────────────────────────────────────────

class TestIdempotence:
    @pytest.mark.asyncio
    async def test_same_unit_twice_writes_once(self, store, session_factory):
        work = unit(record("m1"), record("m2", minutes=1))
        first = await store.apply(work)
        second = await store.apply(work)

        assert first.inserted_ids == ["m1", "m2"]
        assert second.inserted_ids == []
        assert second.duplicate_ids == ["m1", "m2"]
        assert await count_rows(session_factory, Message) == 2

        conversation = await load_conversation(session_factory, "C1")
        assert conversation.unread_count == 2

    @pytest.mark.asyncio
    async def test_duplicate_ids_within_unit_collapse(self, store, session_factory):
        result = await store.apply(unit(record("m1"), record("m1")))
        assert result.inserted_ids == ["m1"]
        assert await count_rows(session_factory, Message) == 1

    @pytest.mark.asyncio
    async def test_stored_message_is_not_rewritten(self, store, session_factory):
        await store.apply(unit(record("m1", text="original")))
        await store.apply(unit(record("m1", text="edited")))

        async with db_session(session_factory) as db:
            message = await db.get(Message, "m1")
        assert message.text == "original"

    @pytest.mark.asyncio
    async def test_write_counters(self, store):
        await store.apply(unit(record("m1")))
        await store.apply(unit(record("m1"), record("m2", minutes=1)))
        snap = await get_metrics().snapshot()
        assert snap["counters"]["messages_inserted_total"] == 2
        assert snap["counters"]["messages_duplicate_total"] == 1


# ─────────────────────────────────────────────────────────────────────────────
# One conversation per (account, participant)
# ─────────────────────────────────────────────────────────────────────────────

class TestRedirect:
    @pytest.mark.asyncio
    async def test_new_id_for_known_pair_is_redirected(self, store, session_factory):
        await store.apply(unit(record("m1"), conversation_id="C1"))
        result = await store.apply(unit(record("m2", minutes=1), conversation_id="C2"))

        assert result.conversation_id == "C1"
        assert result.redirected_from == "C2"
        assert await count_rows(session_factory, Conversation) == 1
        assert await count_rows(
            session_factory, Message, Message.conversation_id == "C1",
        ) == 2

        snap = await get_metrics().snapshot()
        assert snap["counters"]["conversations_redirected_total"] == 1

    @pytest.mark.asyncio
    async def test_distinct_participants_never_merge(self, store, session_factory):
        await store.apply(unit(record("m1"), conversation_id="C1", participant_id="P1"))
        other = MessageRecord(
            id="m2", direction=IN, from_id="P2", to_id="SELF", created_time=T0,
        )
        await store.apply(unit(other, conversation_id="C2", participant_id="P2"))
        assert await count_rows(session_factory, Conversation) == 2

    @pytest.mark.asyncio
    async def test_groups_do_not_collide(self, store, session_factory):
        await store.apply(unit(record("m1"), conversation_id="G1", participant_id=None, is_group=True))
        await store.apply(unit(record("m2"), conversation_id="G2", participant_id=None, is_group=True))
        assert await count_rows(session_factory, Conversation) == 2

    @pytest.mark.asyncio
    async def test_known_id_gains_missing_participant(self, store, session_factory):
        async with db_session(session_factory) as db:
            db.add(Conversation(id="C1", account_id="ACC", participant_id=None))
        await store.apply(unit(record("m1"), conversation_id="C1", participant_id="P1"))

        conversation = await load_conversation(session_factory, "C1")
        assert conversation.participant_id == "P1"

    @pytest.mark.asyncio
    async def test_conflict_retried_once_then_raised(self, store, monkeypatch):
        calls = {"n": 0}

        async def always_conflicts(session, work, now=None):
            calls["n"] += 1
            raise IntegrityError("INSERT", {}, Exception("duplicate key"))

        monkeypatch.setattr(upsert_module, "upsert_conversation_unit", always_conflicts)
        with pytest.raises(PersistenceConflictError):
            await store.apply(unit(record("m1")))
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_conflict_heals_on_retry(self, store, session_factory, monkeypatch):
        real = upsert_module.upsert_conversation_unit
        calls = {"n": 0}

        async def conflicts_once(session, work, now=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise IntegrityError("INSERT", {}, Exception("duplicate key"))
            return await real(session, work, now)

        monkeypatch.setattr(upsert_module, "upsert_conversation_unit", conflicts_once)
        result = await store.apply(unit(record("m1")))
        assert result.inserted_ids == ["m1"]
        assert calls["n"] == 2


# ─────────────────────────────────────────────────────────────────────────────
# Aggregates
# ─────────────────────────────────────────────────────────────────────────────

class TestAggregates:
    @pytest.mark.asyncio
    async def test_out_of_order_delivery_keeps_newest(self, store, session_factory):
        await store.apply(unit(record("m2", minutes=5, text="newer")))
        await store.apply(unit(record("m1", minutes=1, text="older")))

        conversation = await load_conversation(session_factory, "C1")
        assert conversation.last_message_at == T0 + timedelta(minutes=5)
        assert conversation.last_message_preview == "newer"

    @pytest.mark.asyncio
    async def test_preview_truncated_and_attachment_placeholder(self, store, session_factory):
        await store.apply(unit(record("m1", text="x" * 250)))
        conversation = await load_conversation(session_factory, "C1")
        assert conversation.last_message_preview == "x" * 100

        await store.apply(unit(record("m2", minutes=1, text=None, attachments=[{"type": "image"}])))
        conversation = await load_conversation(session_factory, "C1")
        assert conversation.last_message_preview == ATTACHMENT_PREVIEW

    def test_preview_for_empty_message(self):
        assert preview_for(None, None) is None
        assert preview_for("", []) is None

    @pytest.mark.asyncio
    async def test_updated_time_only_moves_forward(self, store, session_factory):
        await store.apply(unit(record("m1"), updated_time=T0 + timedelta(hours=2)))
        await store.apply(unit(record("m2"), updated_time=T0))
        conversation = await load_conversation(session_factory, "C1")
        assert conversation.updated_time == T0 + timedelta(hours=2)


# ─────────────────────────────────────────────────────────────────────────────
# Unread
# ─────────────────────────────────────────────────────────────────────────────

class TestUnread:
    @pytest.mark.asyncio
    async def test_inbound_increments(self, store, session_factory):
        await store.apply(unit(record("m1")))
        result = await store.apply(unit(record("m2", minutes=1), record("m3", minutes=2)))
        assert result.unread_count == 3

    @pytest.mark.asyncio
    async def test_reply_resets_unread(self, store, session_factory, clock):
        await store.apply(unit(record("m1"), record("m2", minutes=1)))
        result = await store.apply(unit(record("r1", OUT, minutes=2)))
        assert result.unread_count == 0

        async with db_session(session_factory) as db:
            reply = await db.get(Message, "r1")
        assert reply.read_at == clock.now

    @pytest.mark.asyncio
    async def test_inbound_after_reply_in_same_unit_stays_unread(self, store):
        result = await store.apply(
            unit(record("m1"), record("r1", OUT, minutes=1), record("m2", minutes=2))
        )
        assert result.unread_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_does_not_move_unread(self, store):
        await store.apply(unit(record("m1")))
        await store.apply(unit(record("r1", OUT, minutes=1)))
        result = await store.apply(unit(record("m1")))
        assert result.unread_count == 0

    @pytest.mark.asyncio
    async def test_late_inbound_older_than_reply_is_not_unread(self, store):
        await store.apply(unit(record("r1", OUT, minutes=10)))
        late = await store.apply(unit(record("r1", OUT, minutes=10), record("m1", minutes=5)))

        together = await store.apply(
            unit(
                record("m2", minutes=5),
                record("r2", OUT, minutes=10),
                conversation_id="C2",
                participant_id="P2",
            )
        )
        assert late.unread_count == 0
        assert together.unread_count == 0

    @pytest.mark.asyncio
    async def test_late_inbound_newer_than_reply_is_unread(self, store):
        await store.apply(unit(record("r1", OUT, minutes=10)))
        result = await store.apply(unit(record("m1", minutes=15)))
        assert result.unread_count == 1

    @pytest.mark.asyncio
    async def test_inbound_after_mark_read_counts_from_zero(
        self, store, session_factory, clock,
    ):
        await store.apply(unit(record("m1"), record("m2", minutes=1)))
        async with db_session(session_factory) as db:
            await mark_read(db, "ACC", "C1", now=clock.now)
        result = await store.apply(unit(record("m3", minutes=2)))
        assert result.unread_count == 1


# ─────────────────────────────────────────────────────────────────────────────
# Queries
# ─────────────────────────────────────────────────────────────────────────────

class TestQueries:
    @pytest.mark.asyncio
    async def test_mark_read(self, store, session_factory, clock):
        await store.apply(unit(record("m1"), record("m2", minutes=1)))

        async with db_session(session_factory) as db:
            marked = await mark_read(db, "ACC", "C1", now=clock.now)
        assert marked == 2

        conversation = await load_conversation(session_factory, "C1")
        assert conversation.unread_count == 0
        assert await count_rows(session_factory, Message, Message.read_at.is_(None)) == 0

    @pytest.mark.asyncio
    async def test_mark_read_other_account_is_noop(self, store, session_factory):
        await store.apply(unit(record("m1")))
        async with db_session(session_factory) as db:
            assert await mark_read(db, "OTHER", "C1") == 0
        conversation = await load_conversation(session_factory, "C1")
        assert conversation.unread_count == 1

    @pytest.mark.asyncio
    async def test_list_conversations_newest_first(self, store, session_factory):
        await store.apply(unit(record("a1"), conversation_id="CA", participant_id="PA"))
        later = MessageRecord(
            id="b1", direction=IN, from_id="PB", to_id="SELF",
            created_time=T0 + timedelta(hours=1),
        )
        await store.apply(unit(later, conversation_id="CB", participant_id="PB"))
        async with db_session(session_factory) as db:
            db.add(Conversation(id="CC", account_id="ACC", participant_id="PC"))

        async with db_session(session_factory) as db:
            rows = await list_conversations(db, "ACC")
        assert [c.id for c in rows] == ["CB", "CA", "CC"]

    @pytest.mark.asyncio
    async def test_list_messages_chronological(self, store, session_factory):
        await store.apply(unit(record("m2", minutes=2), record("m1", minutes=1)))
        async with db_session(session_factory) as db:
            rows = await list_messages(db, "C1")
        assert [m.id for m in rows] == ["m1", "m2"]
