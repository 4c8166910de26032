"""inboxsync database models.

Design principles:
- External IDs (conversation, message, participant) are primary keys as
  delivered upstream; nothing here fabricates an ID.
- At most one conversation row per (account, counterparty); group threads
  carry a NULL participant so they never collide with 1:1 threads.
- JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite).
- Every timestamp is stored and returned as timezone-aware UTC.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB as _JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JSONB(TypeDecorator):
    """JSON column that becomes JSONB on PostgreSQL and serializes UUID/datetime/Enum."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return json.loads(json.dumps(value, default=self._json_default))

    @staticmethod
    def _json_default(obj: Any) -> Any:
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime; naive values read back from SQLite are tagged UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class with common utilities."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        datetime: UTCDateTime,
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dict for serialization."""
        return {
            c.name: getattr(self, c.name)
            for c in self.__table__.columns
        }


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class MessageDirection(str, Enum):
    """Which side of the conversation authored a message."""
    INBOUND = "inbound"      # Counterparty → business account
    OUTBOUND = "outbound"    # Business account → counterparty


# ═══════════════════════════════════════════════════════════════════════════════
# ACCOUNT CONNECTIONS (owned by the connection subsystem, read-only here)
# ═══════════════════════════════════════════════════════════════════════════════

class AccountConnection(Base):
    """A connected business account and its upstream credentials."""

    __tablename__ = "account_connections"
    __table_args__ = (
        Index("ix_account_connections_location", "business_location_id"),
        {"comment": "Upstream account credentials supplied by the connection flow"},
    )

    account_id: Mapped[str] = mapped_column(
        String(64), primary_key=True,
        comment="Professional account ID (also the webhook entry.id)"
    )
    business_location_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    self_scoped_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True,
        comment="The account's own ID as it appears as sender/recipient in threads"
    )
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )


# ═══════════════════════════════════════════════════════════════════════════════
# INBOX
# ═══════════════════════════════════════════════════════════════════════════════

class Conversation(Base):
    """One thread between the business account and a counterparty."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "account_id", "participant_id", name="uq_conversations_account_participant"
        ),
        Index("ix_conversations_account_last_message", "account_id", "last_message_at"),
        {"comment": "DM threads keyed by their upstream conversation ID"},
    )

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    participant_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="Counterparty ID; NULL for group threads"
    )

    updated_time: Mapped[datetime | None] = mapped_column(
        nullable=True, comment="Upstream thread update time"
    )
    last_message_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_message_preview: Mapped[str | None] = mapped_column(String(100), nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_group: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    participant_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )


class Message(Base):
    """A single DM. Immutable once written except for read_at."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_time"),
        Index("ix_messages_account", "account_id"),
        {"comment": "DM messages keyed by their upstream message ID"},
    )

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[str] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )

    direction: Mapped[MessageDirection] = mapped_column(
        SQLEnum(
            MessageDirection,
            name="message_direction",
            native_enum=False,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    direction_confident: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False,
        comment="False when direction fell back to the inbound default"
    )
    from_id: Mapped[str] = mapped_column(String(64), nullable=False)
    to_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    attachments: Mapped[Any | None] = mapped_column(JSONB, nullable=True)

    created_time: Mapped[datetime] = mapped_column(nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(nullable=True)

    raw: Mapped[Any | None] = mapped_column(
        JSONB, nullable=True, comment="Upstream payload, diagnostic only"
    )


class IdentityCacheEntry(Base):
    """Display identity for a participant ID, with failure bookkeeping."""

    __tablename__ = "identity_cache"
    __table_args__ = (
        Index("ix_identity_cache_account", "account_id"),
        {"comment": "Participant display identity cache"},
    )

    participant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(64), nullable=False, comment="Account whose token resolves this participant"
    )

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_pic_url: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Signed CDN URL, expires upstream within days"
    )
    follower_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_user_follow_business: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_business_follow_user: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    last_fetched_at: Mapped[datetime | None] = mapped_column(nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_failed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    raw: Mapped[Any | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC BOOKKEEPING
# ═══════════════════════════════════════════════════════════════════════════════

class SyncState(Base):
    """Per-account sync lease and ingestion timestamps."""

    __tablename__ = "sync_state"
    __table_args__ = ({"comment": "Per-account lease and sync/webhook bookkeeping"},)

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    lease_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_sync_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_sync_finished_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_webhook_event_at: Mapped[datetime | None] = mapped_column(nullable=True)
    webhook_verified_at: Mapped[datetime | None] = mapped_column(nullable=True)


class UnmatchedEvent(Base):
    """Push event that could not be persisted, kept for diagnosis and replay."""

    __tablename__ = "unmatched_events"
    __table_args__ = (
        Index("ix_unmatched_events_account_created", "account_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
