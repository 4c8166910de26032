"""Push handler for Meta messaging webhooks.

Each event is processed on its own: one bad event never affects the rest of
the delivery. Identity enrichment runs after the message is committed, as a
fire-and-forget task that can neither block nor roll back the write.

Envelope shapes accepted:

    {"object": "instagram", "entry": [{"id": <account>, "messaging": [event, ...]}]}
    {"object": "instagram", "entry": [{"id": <account>, "changes": [{"field": "messages", "value": event}]}]}
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Coroutine

import structlog
from pydantic import ValidationError

from inboxsync.accounts import load_credentials, stamp_webhook_event
from inboxsync.db.models import MessageDirection, UnmatchedEvent, utcnow
from inboxsync.db.session import SessionFactory, db_session
from inboxsync.errors import (
    DataAnomalyError,
    MissingConversationIdError,
    PersistenceConflictError,
)
from inboxsync.graph.payloads import PushEvent
from inboxsync.identity.cache import IdentityResolver
from inboxsync.observability.metrics import get_metrics
from inboxsync.resolution.conversation import ConversationLookup, ConversationResolver
from inboxsync.resolution.participant import MessageParties, resolve_direction
from inboxsync.store.upsert import ConversationUnit, InboxStore, MessageRecord

logger = structlog.get_logger()

# Strong references so enrichment tasks are not garbage-collected mid-flight.
_background_tasks: set[asyncio.Task[Any]] = set()


def _spawn(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)

    def _on_done(t: asyncio.Task[Any]) -> None:
        _background_tasks.discard(t)
        if t.cancelled():
            logger.debug("background_task_cancelled", task=name)
        elif t.exception():
            logger.warning(
                "identity_enrichment_failed",
                task=name,
                error=str(t.exception()),
                error_type=type(t.exception()).__name__,
            )

    task.add_done_callback(_on_done)
    return task


async def wait_for_background_tasks() -> None:
    """Await enrichment tasks still in flight (shutdown, tests)."""
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


@dataclass
class PushResult:
    message_id: str | None = None
    conversation_id: str | None = None
    direction: MessageDirection | None = None
    inserted: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class PayloadResult:
    events: int = 0
    inserted: int = 0
    duplicates: int = 0
    ignored: int = 0
    errors: list[str] = field(default_factory=list)


class WebhookHandler:
    def __init__(
        self,
        store: InboxStore,
        conversations: ConversationResolver,
        identity: IdentityResolver | None = None,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.conversations = conversations
        self.identity = identity
        self._factory = session_factory
        self._clock = clock

    async def process_payload(self, payload: dict[str, Any]) -> PayloadResult:
        """Fan a webhook delivery out into per-event handling."""
        summary = PayloadResult()
        if payload.get("object") != "instagram":
            logger.info("webhook_object_ignored", object=payload.get("object"))
            return summary

        for entry in payload.get("entry") or []:
            account_id = str(entry.get("id") or "")
            if not account_id or account_id == "0":
                logger.info("webhook_test_entry_skipped")
                continue

            events = list(entry.get("messaging") or [])
            for change in entry.get("changes") or []:
                if change.get("field") == "messages" and isinstance(change.get("value"), dict):
                    events.append(change["value"])

            for raw_event in events:
                if not isinstance(raw_event, dict) or "message" not in raw_event:
                    # reads, reactions, postbacks
                    summary.ignored += 1
                    continue
                summary.events += 1
                try:
                    result = await self.handle_event(account_id, raw_event)
                except Exception as e:
                    logger.exception(
                        "webhook_event_failed",
                        account_id=account_id,
                        error=str(e),
                    )
                    summary.errors.append(f"{account_id}: {e}")
                    continue
                summary.errors.extend(result.errors)
                if result.inserted:
                    summary.inserted += 1
                elif result.ok:
                    summary.duplicates += 1

        logger.info(
            "webhook_payload_processed",
            events=summary.events,
            inserted=summary.inserted,
            duplicates=summary.duplicates,
            ignored=summary.ignored,
            errors=len(summary.errors),
        )
        return summary

    async def handle_event(
        self, account_id: str, event: PushEvent | dict[str, Any],
    ) -> PushResult:
        raw = event if isinstance(event, dict) else event.model_dump(mode="json")
        async with get_metrics().timer("webhook_event_latency_ms"):
            return await self._handle(account_id, raw)

    async def _handle(self, account_id: str, raw: dict[str, Any]) -> PushResult:
        result = PushResult()
        try:
            event = PushEvent.model_validate(raw)
        except ValidationError as e:
            return await self._drop(
                result, account_id, raw, "malformed_event",
                f"Push event does not parse: {e.error_count()} errors",
            )

        if event.message is None:
            return result
        result.message_id = event.message.id

        if not event.message.id:
            return await self._drop(
                result, account_id, raw, "missing_message_id", "Push event has no message ID",
            )
        if not event.sender_id:
            return await self._drop(
                result, account_id, raw, "missing_sender",
                f"Message {event.message.id} has no sender ID",
            )

        creds = await load_credentials(account_id, self._factory)
        if creds is None:
            return await self._drop(
                result, account_id, raw, "unknown_account",
                f"No connection for account {account_id}",
            )

        now = self._clock()
        await stamp_webhook_event(account_id, now, self._factory)

        try:
            decision = resolve_direction(
                MessageParties(
                    sender_id=event.sender_id,
                    recipient_id=event.recipient_id,
                    self_id=creds.self_scoped_id,
                    self_username=creds.username,
                    is_echo=event.message.is_echo,
                )
            )
        except DataAnomalyError as e:
            return await self._drop(result, account_id, raw, "data_anomaly", str(e))
        result.direction = decision.direction

        try:
            conversation = await self.conversations.resolve(
                ConversationLookup(
                    account_id=account_id,
                    participant_id=decision.participant_id,
                    embedded_id=event.conversation_id,
                    token=creds.usable_token(now),
                )
            )
        except MissingConversationIdError as e:
            return await self._drop(result, account_id, raw, "missing_conversation_id", str(e))

        unit = ConversationUnit(
            account_id=account_id,
            conversation_id=conversation.id,
            participant_id=decision.participant_id,
            participant_count=2,
            messages=[
                MessageRecord(
                    id=event.message.id,
                    direction=decision.direction,
                    direction_confident=decision.confident,
                    from_id=event.sender_id,
                    to_id=event.recipient_id,
                    created_time=event.timestamp or now,
                    text=event.message.text,
                    attachments=event.message.attachments,
                    raw=raw,
                )
            ],
        )
        try:
            written = await self.store.apply(unit)
        except PersistenceConflictError as e:
            return await self._drop(result, account_id, raw, "persistence_conflict", str(e))

        result.conversation_id = written.conversation_id
        result.inserted = bool(written.inserted_ids)
        logger.info(
            "push_message_processed",
            account_id=account_id,
            conversation_id=written.conversation_id,
            message_id=event.message.id,
            direction=decision.direction.value,
            inserted=result.inserted,
            conversation_strategy=conversation.strategy,
        )

        if (
            result.inserted
            and decision.direction == MessageDirection.INBOUND
            and self.identity is not None
            and decision.participant_id
        ):
            _spawn(
                self.identity.resolve(account_id, decision.participant_id),
                name=f"identity:{decision.participant_id}",
            )
        return result

    async def _drop(
        self,
        result: PushResult,
        account_id: str,
        raw: dict[str, Any],
        reason: str,
        message: str,
    ) -> PushResult:
        result.errors.append(message)
        logger.warning(
            "push_message_dropped",
            account_id=account_id,
            message_id=result.message_id,
            reason=reason,
            error=message,
        )
        await get_metrics().message_dropped(reason)
        async with db_session(self._factory) as db:
            db.add(
                UnmatchedEvent(
                    account_id=account_id,
                    message_id=result.message_id,
                    reason=f"{reason}: {message}",
                    payload=raw,
                )
            )
        return result
