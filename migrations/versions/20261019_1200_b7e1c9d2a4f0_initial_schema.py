"""Initial schema: account connections, conversations, messages, identity cache, sync state.

Revision ID: b7e1c9d2a4f0
Revises:
Create Date: 2026-10-19 12:00:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "b7e1c9d2a4f0"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Account connections (written by the OAuth flow)
    op.create_table(
        "account_connections",
        sa.Column("account_id", sa.String(64), primary_key=True),
        sa.Column("business_location_id", sa.String(64), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("self_scoped_id", sa.String(64), nullable=True),
        sa.Column("username", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_account_connections_location", "account_connections", ["business_location_id"])

    # Conversations
    op.create_table(
        "conversations",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("participant_id", sa.String(64), nullable=True),
        sa.Column("updated_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_preview", sa.String(100), nullable=True),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_group", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("participant_count", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_unique_constraint(
        "uq_conversations_account_participant", "conversations", ["account_id", "participant_id"]
    )
    op.create_index(
        "ix_conversations_account_last_message", "conversations", ["account_id", "last_message_at"]
    )

    # Messages
    op.create_table(
        "messages",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column(
            "conversation_id", sa.String(255),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("direction", sa.String(8), nullable=False),
        sa.Column("direction_confident", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("from_id", sa.String(64), nullable=False),
        sa.Column("to_id", sa.String(64), nullable=True),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("attachments", postgresql.JSONB(), nullable=True),
        sa.Column("created_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_messages_conversation_created", "messages", ["conversation_id", "created_time"])
    op.create_index("ix_messages_account", "messages", ["account_id"])

    # Identity cache
    op.create_table(
        "identity_cache",
        sa.Column("participant_id", sa.String(64), primary_key=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("username", sa.String(255), nullable=True),
        sa.Column("profile_pic_url", sa.Text(), nullable=True),
        sa.Column("follower_count", sa.Integer(), nullable=True),
        sa.Column("is_user_follow_business", sa.Boolean(), nullable=True),
        sa.Column("is_business_follow_user", sa.Boolean(), nullable=True),
        sa.Column("last_fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_identity_cache_account", "identity_cache", ["account_id"])

    # Sync state (lease + bookkeeping)
    op.create_table(
        "sync_state",
        sa.Column("account_id", sa.String(64), primary_key=True),
        sa.Column("lease_owner", sa.String(64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("last_webhook_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_verified_at", sa.DateTime(timezone=True), nullable=True),
    )

    # Unmatched push events
    op.create_table(
        "unmatched_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("message_id", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_unmatched_events_account_created", "unmatched_events", ["account_id", "created_at"]
    )


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table("unmatched_events")
    op.drop_table("sync_state")
    op.drop_table("identity_cache")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("account_connections")
