"""
initial booking engine schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-09-01
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "service_areas",
        sa.Column("area_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_table(
        "services",
        sa.Column("service_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("deposit_percent", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_table(
        "workers",
        sa.Column("worker_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_sub", sa.String(length=64), nullable=True, unique=True),
        sa.Column("area_id", sa.Integer(), sa.ForeignKey("service_areas.area_id"), nullable=False, index=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("phone", sa.String(length=50), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False, server_default="0"),
        sa.Column("completed_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_assigned_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=True),
    )
    op.create_table(
        "worker_skills",
        sa.Column("worker_id", sa.Integer(), sa.ForeignKey("workers.worker_id"), primary_key=True),
        sa.Column("service_id", sa.Integer(), sa.ForeignKey("services.service_id"), primary_key=True),
    )

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_reference", sa.String(length=16), nullable=False, unique=True),
        sa.Column("customer_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("service_id", sa.Integer(), sa.ForeignKey("services.service_id"), nullable=False),
        sa.Column("area_id", sa.Integer(), sa.ForeignKey("service_areas.area_id"), nullable=False),
        sa.Column("preferred_worker_id", sa.Integer(), sa.ForeignKey("workers.worker_id"), nullable=True),
        sa.Column("worker_id", sa.Integer(), sa.ForeignKey("workers.worker_id"), nullable=True, index=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, index=True),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("payment_status", sa.String(length=32), nullable=False),
        sa.Column("payment_method", sa.String(length=16), nullable=True),
        sa.Column("payment_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_otp", sa.String(length=6), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("dispatch_flag", sa.String(length=32), nullable=True, index=True),
        sa.Column("cancellation_reason", sa.String(length=255), nullable=True),
        sa.Column("cancelled_by", sa.String(length=100), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=True),
    )
    op.create_index("ix_bookings_area_starts", "bookings", ["area_id", "starts_at"])

    op.create_table(
        "slot_holds",
        sa.Column("hold_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False, unique=True),
        sa.Column("area_id", sa.Integer(), sa.ForeignKey("service_areas.area_id"), nullable=False),
        sa.Column("worker_id", sa.Integer(), sa.ForeignKey("workers.worker_id"), nullable=True, index=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("status", sa.String(length=16), nullable=False, index=True),
        *_timestamps(),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_slot_holds_area_window", "slot_holds", ["area_id", "starts_at", "ends_at"])

    op.create_table(
        "payment_segments",
        sa.Column("segment_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False, index=True),
        sa.Column("segment_number", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("method", sa.String(length=16), nullable=True),
        sa.Column("payment_reference", sa.String(length=255), nullable=True, unique=True),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True, index=True),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("refunded_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=True),
        sa.UniqueConstraint("booking_id", "segment_number", name="uq_payment_segments_number"),
    )
    op.create_table(
        "ledger_entries",
        sa.Column("entry_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False, index=True),
        sa.Column("segment_id", sa.String(length=36), sa.ForeignKey("payment_segments.segment_id"), nullable=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("method", sa.String(length=16), nullable=True),
        sa.Column("reference", sa.String(length=255), nullable=True),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "gateway_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        *_timestamps(updated=True),
    )
    op.create_table(
        "wallets",
        sa.Column("customer_id", sa.String(length=64), primary_key=True),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "worker_assignments",
        sa.Column("assignment_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False, index=True),
        sa.Column("worker_id", sa.Integer(), sa.ForeignKey("workers.worker_id"), nullable=False, index=True),
        sa.Column("status", sa.String(length=16), nullable=False, index=True),
        sa.Column("assigned_by", sa.String(length=16), nullable=False),
        sa.Column("offered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("offer_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(length=64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_worker_assignments_status_expiry", "worker_assignments", ["status", "offer_expires_at"])
    op.create_table(
        "buffer_requests",
        sa.Column("buffer_id", sa.String(length=36), primary_key=True),
        sa.Column("worker_id", sa.Integer(), sa.ForeignKey("workers.worker_id"), nullable=False),
        sa.Column(
            "assignment_id",
            sa.String(length=36),
            sa.ForeignKey("worker_assignments.assignment_id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("booking_id", sa.String(length=36), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_buffer_requests_worker_window", "buffer_requests", ["worker_id", "starts_at", "ends_at"])

    op.create_table(
        "outbox_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("kind", sa.String(length=64), nullable=False, index=True),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=200), nullable=False, unique=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        *_timestamps(),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "admin_configs",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_by", sa.String(length=100), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "admin_audit_logs",
        sa.Column("audit_id", sa.String(length=36), primary_key=True),
        sa.Column("action", sa.String(length=150), nullable=False),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("role", sa.String(length=50), nullable=False),
        sa.Column("booking_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("resource_type", sa.String(length=64), nullable=True),
        sa.Column("resource_id", sa.String(length=100), nullable=True),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_result", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_table("admin_audit_logs")
    op.drop_table("admin_configs")
    op.drop_table("outbox_events")
    op.drop_index("ix_buffer_requests_worker_window", table_name="buffer_requests")
    op.drop_table("buffer_requests")
    op.drop_index("ix_worker_assignments_status_expiry", table_name="worker_assignments")
    op.drop_table("worker_assignments")
    op.drop_table("wallets")
    op.drop_table("gateway_events")
    op.drop_table("ledger_entries")
    op.drop_table("payment_segments")
    op.drop_index("ix_slot_holds_area_window", table_name="slot_holds")
    op.drop_table("slot_holds")
    op.drop_index("ix_bookings_area_starts", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("worker_skills")
    op.drop_table("workers")
    op.drop_table("services")
    op.drop_table("service_areas")
