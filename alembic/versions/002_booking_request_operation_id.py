"""Immutable request operation id on bookings.

Revision ID: 002_booking_request_operation_id
Revises: 001_core_tables
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "002_booking_request_operation_id"
down_revision: str | None = "001_core_tables"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("bookings", sa.Column("request_operation_id", sa.String(64), nullable=True))
    # Rows created before this revision carried the request id in last_operation_id
    # only while still pending with no later transition.
    op.execute(
        "UPDATE bookings SET request_operation_id = last_operation_id "
        "WHERE status = 'pending' AND last_operation_id IS NOT NULL"
    )
    op.create_unique_constraint(
        "uq_bookings_guest_request_operation", "bookings", ["guest_id", "request_operation_id"],
    )


def downgrade() -> None:
    op.drop_constraint("uq_bookings_guest_request_operation", "bookings", type_="unique")
    op.drop_column("bookings", "request_operation_id")
