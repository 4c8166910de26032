"""Wiring: one place that assembles the engine's collaborators.

The HTTP app and the scheduler share a single instance so they share the
Graph connection pool and the same lease/store configuration.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from inboxsync.db.session import SessionFactory
from inboxsync.graph.client import GraphClient
from inboxsync.identity.backfill import BackfillSummary, backfill_identities, refresh_identities
from inboxsync.identity.cache import IdentityResolver
from inboxsync.ingest.sync import ReconciliationSync
from inboxsync.ingest.webhook import WebhookHandler, wait_for_background_tasks
from inboxsync.resolution.conversation import ConversationResolver
from inboxsync.store.upsert import InboxStore

logger = structlog.get_logger()


@dataclass
class InboxSyncService:
    graph: GraphClient
    store: InboxStore
    conversations: ConversationResolver
    identity: IdentityResolver
    webhook: WebhookHandler
    sync: ReconciliationSync
    session_factory: SessionFactory | None = None

    @classmethod
    def create(
        cls,
        session_factory: SessionFactory | None = None,
        graph: GraphClient | None = None,
    ) -> InboxSyncService:
        graph = graph or GraphClient()
        store = InboxStore(session_factory)
        conversations = ConversationResolver(graph, session_factory)
        identity = IdentityResolver(graph, session_factory)
        return cls(
            graph=graph,
            store=store,
            conversations=conversations,
            identity=identity,
            webhook=WebhookHandler(store, conversations, identity, session_factory),
            sync=ReconciliationSync(graph, store, identity, session_factory),
            session_factory=session_factory,
        )

    async def backfill_identities(self, account_id: str) -> BackfillSummary:
        return await backfill_identities(account_id, self.identity, self.session_factory)

    async def refresh_identities(self, account_id: str) -> BackfillSummary:
        return await refresh_identities(account_id, self.identity, self.session_factory)

    async def close(self) -> None:
        await wait_for_background_tasks()
        await self.graph.close()
        logger.info("inboxsync_service_closed")


_service: InboxSyncService | None = None


def get_service() -> InboxSyncService:
    """Get or create the process-wide service."""
    global _service
    if _service is None:
        _service = InboxSyncService.create()
    return _service


def set_service(service: InboxSyncService | None) -> None:
    global _service
    _service = service


async def close_service() -> None:
    global _service
    if _service is not None:
        await _service.close()
        _service = None
