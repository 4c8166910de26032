"""Read side of the inbox store, plus the one permitted message mutation."""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from inboxsync.db.models import (
    Conversation,
    IdentityCacheEntry,
    Message,
    MessageDirection,
    utcnow,
)

logger = structlog.get_logger()


async def list_conversations(
    session: AsyncSession, account_id: str, limit: int | None = None,
) -> list[Conversation]:
    """Newest activity first; threads with no messages yet sort last."""
    query = (
        select(Conversation)
        .where(Conversation.account_id == account_id)
        .order_by(Conversation.last_message_at.desc().nulls_last(), Conversation.id)
    )
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_messages(
    session: AsyncSession, conversation_id: str, limit: int | None = None,
) -> list[Message]:
    query = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_time, Message.id)
    )
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_identity(
    session: AsyncSession, participant_id: str,
) -> IdentityCacheEntry | None:
    return await session.get(IdentityCacheEntry, participant_id)


async def mark_read(
    session: AsyncSession,
    account_id: str,
    conversation_id: str,
    now: datetime | None = None,
) -> int:
    """Stamp read_at on unread inbound messages and zero the unread count.

    Returns the number of messages marked. Unknown conversations mark nothing.
    """
    now = now or utcnow()
    conversation = await session.get(Conversation, conversation_id)
    if conversation is None or conversation.account_id != account_id:
        return 0

    result = await session.execute(
        update(Message)
        .where(Message.conversation_id == conversation_id)
        .where(Message.direction == MessageDirection.INBOUND)
        .where(Message.read_at.is_(None))
        .values(read_at=now)
        .execution_options(synchronize_session=False)
    )
    conversation.unread_count = 0
    await session.flush()

    logger.info(
        "conversation_marked_read",
        account_id=account_id,
        conversation_id=conversation_id,
        marked=result.rowcount,
    )
    return result.rowcount
