"""
payment quotes

Revision ID: 0002_payment_quotes
Revises: 0001_initial
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_payment_quotes"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("bookings", sa.Column("quote_status", sa.String(length=16), nullable=True))
    op.add_column("bookings", sa.Column("quote_notes", sa.Text(), nullable=True))
    op.add_column("bookings", sa.Column("quote_provided_by", sa.String(length=100), nullable=True))
    op.add_column("bookings", sa.Column("quote_provided_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("bookings", sa.Column("quote_accepted_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("payment_segments", sa.Column("notes", sa.String(length=255), nullable=True))


def downgrade() -> None:
    op.drop_column("payment_segments", "notes")
    op.drop_column("bookings", "quote_accepted_at")
    op.drop_column("bookings", "quote_provided_at")
    op.drop_column("bookings", "quote_provided_by")
    op.drop_column("bookings", "quote_notes")
    op.drop_column("bookings", "quote_status")
