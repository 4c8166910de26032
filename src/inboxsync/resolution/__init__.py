"""Conversation, counterparty and direction resolution."""

from inboxsync.resolution.conversation import (
    ConversationLookup,
    ConversationResolver,
    ResolvedConversation,
)
from inboxsync.resolution.participant import (
    CounterpartyDecision,
    DirectionDecision,
    MessageParties,
    ThreadView,
    resolve_counterparty,
    resolve_direction,
)

__all__ = [
    "ConversationLookup",
    "ConversationResolver",
    "CounterpartyDecision",
    "DirectionDecision",
    "MessageParties",
    "ResolvedConversation",
    "ThreadView",
    "resolve_counterparty",
    "resolve_direction",
]
