from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.domain.errors import BufferConflict, NotFound
from servicebook.domain.workers.db_models import BufferRequest, Worker
from servicebook.infra.db import as_utc

logger = logging.getLogger(__name__)


def padded_window(starts_at: datetime, ends_at: datetime, buffer_minutes: int) -> tuple[datetime, datetime]:
    pad = timedelta(minutes=buffer_minutes)
    return as_utc(starts_at) - pad, as_utc(ends_at) + pad


async def find_conflict(
    session: AsyncSession,
    worker_id: int,
    starts_at: datetime,
    ends_at: datetime,
    *,
    exclude_assignment_id: str | None = None,
) -> BufferRequest | None:
    """First stored padded window of ``worker_id`` that overlaps the raw window."""

    stmt = select(BufferRequest).where(
        BufferRequest.worker_id == worker_id,
        BufferRequest.starts_at < as_utc(ends_at),
        BufferRequest.ends_at > as_utc(starts_at),
    )
    if exclude_assignment_id is not None:
        stmt = stmt.where(BufferRequest.assignment_id != exclude_assignment_id)
    return await session.scalar(stmt.order_by(BufferRequest.starts_at).limit(1))


async def has_conflict(session: AsyncSession, worker_id: int, starts_at: datetime, ends_at: datetime) -> bool:
    return await find_conflict(session, worker_id, starts_at, ends_at) is not None


async def reserve(
    session: AsyncSession,
    *,
    worker_id: int,
    assignment_id: str,
    booking_id: str,
    starts_at: datetime,
    ends_at: datetime,
    buffer_minutes: int,
) -> BufferRequest:
    worker = await session.scalar(select(Worker).where(Worker.worker_id == worker_id).with_for_update())
    if worker is None:
        raise NotFound("Worker not found", resource="worker", worker_id=worker_id)

    conflict = await find_conflict(session, worker_id, starts_at, ends_at, exclude_assignment_id=assignment_id)
    if conflict is not None:
        logger.info(
            "buffer_conflict",
            extra={
                "extra": {
                    "worker_id": worker_id,
                    "assignment_id": assignment_id,
                    "conflicting_assignment_id": conflict.assignment_id,
                }
            },
        )
        raise BufferConflict(
            "Worker already has an overlapping assignment window",
            worker_id=worker_id,
            conflict_start=as_utc(conflict.starts_at),
            conflict_end=as_utc(conflict.ends_at),
        )

    padded_start, padded_end = padded_window(starts_at, ends_at, buffer_minutes)
    buffer = BufferRequest(
        worker_id=worker_id,
        assignment_id=assignment_id,
        booking_id=booking_id,
        starts_at=padded_start,
        ends_at=padded_end,
    )
    session.add(buffer)
    await session.flush()
    return buffer


async def release(session: AsyncSession, assignment_id: str) -> int:
    result = await session.execute(delete(BufferRequest).where(BufferRequest.assignment_id == assignment_id))
    return result.rowcount or 0
