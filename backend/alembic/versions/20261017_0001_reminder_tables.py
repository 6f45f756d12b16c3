"""Create reminders, reminder executions, and message log tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "reminders",
        sa.Column("reminder_id", sa.String(length=64), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("reminder_time", sa.String(length=5), nullable=False),
        sa.Column("follow_up_message", sa.Text(), nullable=False, server_default=""),
        sa.Column("follow_up_time", sa.String(length=5), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("daily_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_replied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reply_text", sa.Text(), nullable=True),
        sa.Column("follow_up_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("reminder_id"),
    )
    op.create_index("ix_reminders_phone", "reminders", ["phone"], unique=False)
    op.create_index("ix_reminders_active", "reminders", ["active"], unique=False)

    op.create_table(
        "reminder_executions",
        sa.Column("execution_id", sa.String(length=64), nullable=False),
        sa.Column("reminder_id", sa.String(length=64), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("date", sa.String(length=10), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reply_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("follow_up_status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("follow_up_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("execution_id"),
        sa.UniqueConstraint("reminder_id", "date", name="uq_reminder_executions_reminder_date"),
    )
    op.create_index("ix_reminder_executions_reminder_id", "reminder_executions", ["reminder_id"], unique=False)
    op.create_index("ix_reminder_executions_phone_date", "reminder_executions", ["phone", "date"], unique=False)

    op.create_table(
        "message_logs",
        sa.Column("log_id", sa.String(length=64), nullable=False),
        sa.Column("reminder_id", sa.String(length=64), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("message_type", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("input_kind", sa.String(length=16), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("raw_response_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("log_id"),
    )
    op.create_index("ix_message_logs_reminder_id", "message_logs", ["reminder_id"], unique=False)
    op.create_index("ix_message_logs_created_at", "message_logs", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_message_logs_created_at", table_name="message_logs")
    op.drop_index("ix_message_logs_reminder_id", table_name="message_logs")
    op.drop_table("message_logs")
    op.drop_index("ix_reminder_executions_phone_date", table_name="reminder_executions")
    op.drop_index("ix_reminder_executions_reminder_id", table_name="reminder_executions")
    op.drop_table("reminder_executions")
    op.drop_index("ix_reminders_active", table_name="reminders")
    op.drop_index("ix_reminders_phone", table_name="reminders")
    op.drop_table("reminders")
