"""notification queue + attempt log

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")

    op.create_table(
        "notification_queue",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("ticket_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("recipient_phone", sa.String(length=32), nullable=True),
        sa.Column("recipient_email", sa.String(length=255), nullable=True),
        sa.Column("recipient_name", sa.String(length=128), nullable=False),
        sa.Column("template_data", json_type, nullable=False),
        sa.Column("preferred_channel", sa.String(length=16), nullable=False),
        sa.Column("current_channel", sa.String(length=16), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", json_type, nullable=True),
        sa.Column("provider_message_id", sa.String(length=128), nullable=True),
        sa.Column("lease_owner", sa.String(length=64), nullable=True),
        sa.Column("lease_token", sa.String(length=36), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("callback_status", sa.String(length=16), nullable=True),
        sa.Column("callback_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("callback_next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("callback_last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="chk_notification_queue_attempts"),
        sa.CheckConstraint(
            "status IN ('PENDING', 'SENT', 'FAILED', 'DELIVERED')",
            name="chk_notification_queue_status",
        ),
    )
    op.create_index(
        "idx_notification_queue_status_scheduled",
        "notification_queue",
        ["status", "scheduled_at"],
        unique=False,
    )
    op.create_index("idx_notification_queue_ticket", "notification_queue", ["ticket_id"], unique=False)
    op.create_index(
        "idx_notification_queue_provider_message",
        "notification_queue",
        ["provider_message_id"],
        unique=False,
    )
    op.create_index(
        "idx_notification_queue_callback",
        "notification_queue",
        ["callback_status", "callback_next_attempt_at"],
        unique=False,
    )

    op.create_table(
        "notification_log",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "queue_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("notification_queue.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("request_data", json_type, nullable=True),
        sa.Column("response_data", json_type, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("response_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("queue_id", "attempt_number", name="uniq_notification_log_attempt"),
        sa.CheckConstraint("attempt_number >= 1", name="chk_notification_log_attempt_number"),
    )


def downgrade() -> None:
    op.drop_table("notification_log")
    op.drop_index("idx_notification_queue_callback", table_name="notification_queue")
    op.drop_index("idx_notification_queue_provider_message", table_name="notification_queue")
    op.drop_index("idx_notification_queue_ticket", table_name="notification_queue")
    op.drop_index("idx_notification_queue_status_scheduled", table_name="notification_queue")
    op.drop_table("notification_queue")
