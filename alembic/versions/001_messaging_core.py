# alembic/versions/001_messaging_core.py
"""Messaging core - user profiles, conversations, messages, notification dedupe records

Revision ID: 001_messaging_core
Revises:
Create Date: 2026-10-17 00:00:00.000000

Creates the tables owned by the messaging core together with the constraints
that carry its concurrency guarantees: the unique conversation pair, the
partial unique index allowing one FIRST_MESSAGE per conversation, and the
unique (category, dedupe_key) on notification dedupe records.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_messaging_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

FIRST_MESSAGE_WHERE = "message_type = 'FIRST_MESSAGE'"
PENDING_FIRST_MESSAGE_WHERE = "message_type = 'FIRST_MESSAGE' AND email_notified_at IS NULL"


def upgrade() -> None:
    """Create messaging core tables."""
    print("Creating messaging core tables...")

    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("notify_msg_new_thread_email", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "notify_msg_unread_reminder_email", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "notify_msg_every_message_email", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("notify_msg_unread_hours", sa.Integer(), nullable=False, server_default="12"),
        sa.Column("notify_offer_created_email", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notify_offer_result_email", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "notify_msg_unread_hours BETWEEN 1 AND 72", name="ck_user_profiles_unread_hours"
        ),
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("participant_a_id", sa.String(26), nullable=False),
        sa.Column("participant_b_id", sa.String(26), nullable=False),
        sa.Column("participant_a_last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("participant_b_last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("participant_a_hidden_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("participant_b_hidden_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_type", sa.String(20), nullable=True),
        sa.Column("source_id", sa.String(64), nullable=True),
        sa.Column("source_title", sa.String(200), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_message_notification_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "first_message_notification_attempts", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("first_message_notification_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("participant_a_id", "participant_b_id", name="uq_conversations_pair"),
        sa.CheckConstraint("participant_a_id < participant_b_id", name="ck_conversations_slot_order"),
    )
    op.create_index("idx_conversations_participant_a", "conversations", ["participant_a_id"])
    op.create_index("idx_conversations_participant_b", "conversations", ["participant_b_id"])
    op.create_index("idx_conversations_last_message", "conversations", ["last_message_at"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.String(26),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_id", sa.String(26), nullable=False),
        sa.Column("content", sa.String(1000), nullable=False),
        sa.Column("message_type", sa.String(20), nullable=False, server_default="NORMAL"),
        sa.Column("client_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("email_notified_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_messages_conversation_created", "messages", ["conversation_id", "created_at"]
    )
    op.create_index(
        "uq_messages_first_message_per_conversation",
        "messages",
        ["conversation_id"],
        unique=True,
        postgresql_where=sa.text(FIRST_MESSAGE_WHERE),
        sqlite_where=sa.text(FIRST_MESSAGE_WHERE),
    )
    op.create_index(
        "idx_messages_first_message_pending",
        "messages",
        ["created_at"],
        postgresql_where=sa.text(PENDING_FIRST_MESSAGE_WHERE),
        sqlite_where=sa.text(PENDING_FIRST_MESSAGE_WHERE),
    )

    op.create_table(
        "notification_dedupe_records",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("dedupe_key", sa.String(255), nullable=False),
        sa.Column("user_id", sa.String(26), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("category", "dedupe_key", name="uq_notification_dedupe_category_key"),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'failed', 'rejected')", name="ck_notification_dedupe_status"
        ),
    )
    op.create_index("idx_notification_dedupe_user", "notification_dedupe_records", ["user_id"])

    print("Messaging core tables created")


def downgrade() -> None:
    """Drop messaging core tables."""
    print("Dropping messaging core tables...")

    op.drop_index("idx_notification_dedupe_user", table_name="notification_dedupe_records")
    op.drop_table("notification_dedupe_records")

    op.drop_index("idx_messages_first_message_pending", table_name="messages")
    op.drop_index("uq_messages_first_message_per_conversation", table_name="messages")
    op.drop_index("idx_messages_conversation_created", table_name="messages")
    op.drop_table("messages")

    op.drop_index("idx_conversations_last_message", table_name="conversations")
    op.drop_index("idx_conversations_participant_b", table_name="conversations")
    op.drop_index("idx_conversations_participant_a", table_name="conversations")
    op.drop_table("conversations")

    op.drop_table("user_profiles")

    print("Messaging core tables dropped")
