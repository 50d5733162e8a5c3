"""Users, bookings, points ledger, messaging and notifications.

Revision ID: 001_core_tables
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision: str = "001_core_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TIMESTAMPTZ = sa.DateTime(timezone=True)


def upgrade() -> None:
    """Create the core schema."""
    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("display_name", sa.String(64), nullable=True),
        sa.Column("is_banned", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("points_version", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # --- bookings ---
    op.create_table(
        "bookings",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("guest_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("host_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("race_id", sa.BigInteger(), nullable=False),
        sa.Column("property_id", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(16), server_default="pending", nullable=False),
        sa.Column("check_in_date", sa.Date(), nullable=False),
        sa.Column("check_out_date", sa.Date(), nullable=False),
        sa.Column("guests_count", sa.Integer(), server_default="1", nullable=False),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("request_message", sa.Text(), nullable=True),
        sa.Column("host_response_message", sa.Text(), nullable=True),
        sa.Column("host_response_deadline", TIMESTAMPTZ, nullable=False),
        sa.Column("accepted_at", TIMESTAMPTZ, nullable=True),
        sa.Column("rejected_at", TIMESTAMPTZ, nullable=True),
        sa.Column("confirmed_at", TIMESTAMPTZ, nullable=True),
        sa.Column("completed_at", TIMESTAMPTZ, nullable=True),
        sa.Column("cancelled_at", TIMESTAMPTZ, nullable=True),
        sa.Column("cancelled_by", sa.String(16), nullable=True),
        sa.Column("reminder_sent_at", TIMESTAMPTZ, nullable=True),
        sa.Column("last_operation_id", sa.String(64), nullable=True),
        sa.Column("created_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_bookings_status_deadline", "bookings", ["status", "host_response_deadline"])
    op.create_index("ix_bookings_guest_id", "bookings", ["guest_id"])
    op.create_index("ix_bookings_host_id", "bookings", ["host_id"])

    op.execute(
        "ALTER TABLE bookings ADD CONSTRAINT ck_bookings_status "
        "CHECK (status IN ('pending', 'accepted', 'rejected', 'confirmed', 'completed', 'cancelled'))"
    )
    op.execute(
        "ALTER TABLE bookings ADD CONSTRAINT ck_bookings_cancelled_by "
        "CHECK (cancelled_by IS NULL OR cancelled_by IN ('guest', 'host', 'system'))"
    )
    op.execute("ALTER TABLE bookings ADD CONSTRAINT ck_bookings_points_cost_non_negative CHECK (points_cost >= 0)")
    op.execute("ALTER TABLE bookings ADD CONSTRAINT ck_bookings_guests_count_positive CHECK (guests_count > 0)")
    op.execute(
        "ALTER TABLE bookings ADD CONSTRAINT ck_bookings_dates_ordered CHECK (check_out_date > check_in_date)"
    )

    # --- points_transactions (append-only) ---
    op.create_table(
        "points_transactions",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("booking_id", sa.BigInteger(), sa.ForeignKey("bookings.id"), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("description", sa.String(256), nullable=False),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("created_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_points_transactions_user_created", "points_transactions", ["user_id", "created_at"])
    op.create_index(
        "ix_points_transactions_idempotency_key", "points_transactions", ["idempotency_key"], unique=True,
    )
    op.execute("ALTER TABLE points_transactions ADD CONSTRAINT ck_points_transactions_amount_non_zero CHECK (amount <> 0)")

    # Ledger rows are immutable.
    op.execute("""
        CREATE OR REPLACE FUNCTION points_transactions_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'points_transactions is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER trg_points_transactions_immutable
        BEFORE UPDATE OR DELETE ON points_transactions
        FOR EACH ROW EXECUTE FUNCTION points_transactions_immutable()
    """)

    # --- conversations ---
    op.create_table(
        "conversations",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "booking_id", sa.BigInteger(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("participant_1_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("participant_2_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("last_message_at", TIMESTAMPTZ, nullable=True),
        sa.Column("participant_1_unread", sa.Integer(), server_default="0", nullable=False),
        sa.Column("participant_2_unread", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_conversations_booking_id", "conversations", ["booking_id"], unique=True)

    # --- messages ---
    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "booking_id", sa.BigInteger(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("sender_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("message_type", sa.String(16), server_default="text", nullable=False),
        sa.Column("client_id", sa.String(64), nullable=True),
        sa.Column("read_at", TIMESTAMPTZ, nullable=True),
        sa.Column("created_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.UniqueConstraint("booking_id", "client_id", name="uq_messages_booking_client_id"),
    )
    op.create_index("ix_messages_booking_created", "messages", ["booking_id", "created_at"])

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("read", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("data", postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("created_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "read"])
    op.create_index(
        "ix_notifications_user_unread",
        "notifications",
        ["user_id"],
        postgresql_where=sa.text("read = false"),
    )


def downgrade() -> None:
    """Drop the core schema."""
    op.drop_table("notifications")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.execute("DROP TRIGGER IF EXISTS trg_points_transactions_immutable ON points_transactions")
    op.execute("DROP FUNCTION IF EXISTS points_transactions_immutable()")
    op.drop_table("points_transactions")
    op.drop_table("bookings")
    op.drop_table("users")
