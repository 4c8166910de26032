"""Conversation and message persistence."""

from inboxsync.store.queries import get_identity, list_conversations, list_messages, mark_read
from inboxsync.store.upsert import (
    ConversationUnit,
    InboxStore,
    MessageRecord,
    UnitResult,
    upsert_conversation_unit,
)

__all__ = [
    "ConversationUnit",
    "InboxStore",
    "MessageRecord",
    "UnitResult",
    "get_identity",
    "list_conversations",
    "list_messages",
    "mark_read",
    "upsert_conversation_unit",
]
