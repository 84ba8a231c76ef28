import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from servicebook.infra.db import Base


class Worker(Base):
    __tablename__ = "workers"

    worker_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_sub: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    area_id: Mapped[int] = mapped_column(ForeignKey("service_areas.area_id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    rating: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    completed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    last_assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class WorkerSkill(Base):
    __tablename__ = "worker_skills"

    worker_id: Mapped[int] = mapped_column(ForeignKey("workers.worker_id"), primary_key=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.service_id"), primary_key=True)


class WorkerAssignment(Base):
    """One offer of one booking to one worker, through to its terminal state."""

    __tablename__ = "worker_assignments"

    assignment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.booking_id"), nullable=False, index=True)
    worker_id: Mapped[int] = mapped_column(ForeignKey("workers.worker_id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    assigned_by: Mapped[str] = mapped_column(String(16), nullable=False, default="pool")
    offered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    offer_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_worker_assignments_status_expiry", "status", "offer_expires_at"),)


class BufferRequest(Base):
    """A worker's padded busy window, alive while its assignment is active."""

    __tablename__ = "buffer_requests"

    buffer_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    worker_id: Mapped[int] = mapped_column(ForeignKey("workers.worker_id"), nullable=False)
    assignment_id: Mapped[str] = mapped_column(
        ForeignKey("worker_assignments.assignment_id"), nullable=False, unique=True
    )
    booking_id: Mapped[str] = mapped_column(String(36), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_buffer_requests_worker_window", "worker_id", "starts_at", "ends_at"),)
