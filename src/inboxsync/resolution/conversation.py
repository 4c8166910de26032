"""Canonical conversation ID resolution.

Strategies run in a fixed order; each either returns an ID or declines with
None. The first ID wins:

  1. from_event             ID embedded in the push event / sync record
  2. from_upstream_lookup   "conversation with this counterparty" on the API
  3. from_local_store       existing row for (account, participant), by its real ID

When every strategy declines the message is dropped. An ID is never derived
from the participant: two synthetic IDs that happen to coincide would merge
genuinely separate threads.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog
from sqlalchemy import select

from inboxsync.db.models import Conversation
from inboxsync.db.session import SessionFactory, db_session
from inboxsync.errors import AuthError, MissingConversationIdError, UpstreamError
from inboxsync.graph.client import GraphClient
from inboxsync.infra.retry import call_with_backoff

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConversationLookup:
    account_id: str
    participant_id: str | None
    embedded_id: str | None = None
    token: str | None = None


@dataclass(frozen=True)
class ResolvedConversation:
    id: str
    strategy: str


@dataclass
class ResolutionContext:
    graph: GraphClient | None = None
    session_factory: SessionFactory | None = None


ConversationStrategy = Callable[
    [ConversationLookup, ResolutionContext], Awaitable[str | None]
]


async def from_event(lookup: ConversationLookup, ctx: ResolutionContext) -> str | None:
    embedded = (lookup.embedded_id or "").strip()
    return embedded or None


async def from_upstream_lookup(
    lookup: ConversationLookup, ctx: ResolutionContext,
) -> str | None:
    if not lookup.token or not lookup.participant_id or ctx.graph is None:
        return None

    graph, token, participant_id = ctx.graph, lookup.token, lookup.participant_id
    try:
        return await call_with_backoff(
            lambda: graph.find_conversation_with(participant_id, token),
            operation="find_conversation_with",
        )
    except (UpstreamError, AuthError) as e:
        logger.warning(
            "conversation_lookup_failed",
            account_id=lookup.account_id,
            participant_id=participant_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return None


async def from_local_store(
    lookup: ConversationLookup, ctx: ResolutionContext,
) -> str | None:
    if not lookup.participant_id:
        return None
    async with db_session(ctx.session_factory) as db:
        result = await db.execute(
            select(Conversation.id)
            .where(Conversation.account_id == lookup.account_id)
            .where(Conversation.participant_id == lookup.participant_id)
        )
        return result.scalar_one_or_none()


CONVERSATION_STRATEGIES: tuple[tuple[str, ConversationStrategy], ...] = (
    ("event", from_event),
    ("upstream_lookup", from_upstream_lookup),
    ("local_store", from_local_store),
)


class ConversationResolver:
    """Runs the conversation-ID cascade."""

    def __init__(
        self,
        graph: GraphClient | None = None,
        session_factory: SessionFactory | None = None,
        strategies: tuple[tuple[str, ConversationStrategy], ...] = CONVERSATION_STRATEGIES,
    ) -> None:
        self.ctx = ResolutionContext(graph=graph, session_factory=session_factory)
        self.strategies = strategies

    async def resolve(self, lookup: ConversationLookup) -> ResolvedConversation:
        for name, strategy in self.strategies:
            conversation_id = await strategy(lookup, self.ctx)
            if conversation_id:
                logger.debug(
                    "conversation_id_resolved",
                    account_id=lookup.account_id,
                    conversation_id=conversation_id,
                    strategy=name,
                )
                return ResolvedConversation(id=conversation_id, strategy=name)

        raise MissingConversationIdError(
            f"No conversation ID for participant {lookup.participant_id} "
            f"on account {lookup.account_id}"
            + ("" if lookup.token else " (no access token for upstream lookup)")
        )
