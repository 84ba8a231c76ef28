from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.domain.bookings import slots, statuses
from servicebook.domain.bookings.db_models import Booking, ServiceArea, SlotHold
from servicebook.domain.config.service import ConfigSnapshot
from servicebook.domain.errors import NotFound
from servicebook.domain.workers.db_models import Worker
from servicebook.infra.db import as_utc
from servicebook.infra.metrics import metrics

logger = logging.getLogger(__name__)


async def _lock_area(session: AsyncSession, area_id: int) -> ServiceArea:
    stmt = select(ServiceArea).where(ServiceArea.area_id == area_id).with_for_update()
    area = await session.scalar(stmt)
    if area is None:
        raise NotFound("Service area not found", resource="service_area", area_id=area_id)
    return area


async def _lock_worker(session: AsyncSession, worker_id: int) -> Worker:
    stmt = select(Worker).where(Worker.worker_id == worker_id).with_for_update()
    worker = await session.scalar(stmt)
    if worker is None:
        raise NotFound("Worker not found", resource="worker", worker_id=worker_id)
    return worker


async def create_hold(
    session: AsyncSession,
    config: ConfigSnapshot,
    token: slots.SlotToken,
    *,
    booking_id: str,
    now: datetime,
) -> SlotHold:
    """Turn a checked slot into an exclusive hold.

    The area row (and the worker row for worker-specific holds) is locked
    before the overlap query is repeated, so two requests that both passed
    :func:`slots.evaluate_slot` serialize here and the later one conflicts.
    """

    await _lock_area(session, token.area_id)
    if token.worker_id is not None:
        await _lock_worker(session, token.worker_id)

    conflict = await slots.find_conflict(session, token, now)
    if conflict is not None:
        metrics.record_hold("conflict")
        logger.info(
            "hold_conflict",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "area_id": token.area_id,
                    "worker_id": token.worker_id,
                    **conflict.context,
                }
            },
        )
        raise conflict

    hold = SlotHold(
        booking_id=booking_id,
        area_id=token.area_id,
        worker_id=token.worker_id,
        starts_at=token.starts_at,
        ends_at=token.blocked_until,
        expires_at=now + timedelta(minutes=config.booking_hold_time_minutes),
        status=statuses.HOLD_ACTIVE,
    )
    session.add(hold)
    await session.flush()
    metrics.record_hold("created")
    return hold


async def get_hold(session: AsyncSession, booking_id: str, *, lock: bool = False) -> SlotHold | None:
    stmt = select(SlotHold).where(SlotHold.booking_id == booking_id)
    if lock:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


def is_live(hold: SlotHold, now: datetime) -> bool:
    if hold.status == statuses.HOLD_PROMOTED:
        return True
    expires_at = as_utc(hold.expires_at)
    return hold.status == statuses.HOLD_ACTIVE and expires_at is not None and expires_at > now


def extend_hold(hold: SlotHold, expires_at: datetime) -> SlotHold:
    hold.expires_at = as_utc(expires_at)
    return hold


def promote_hold(hold: SlotHold) -> SlotHold:
    hold.status = statuses.HOLD_PROMOTED
    hold.expires_at = None
    return hold


def bind_worker(hold: SlotHold | None, worker_id: int | None) -> None:
    if hold is not None:
        hold.worker_id = worker_id


def release_hold(hold: SlotHold | None, now: datetime, *, status: str = statuses.HOLD_RELEASED) -> None:
    if hold is None or hold.status not in statuses.LIVE_HOLD_STATUSES:
        return
    hold.status = status
    hold.released_at = now
    metrics.record_hold(status)


async def reclaim_hold(
    session: AsyncSession,
    config: ConfigSnapshot,
    booking: Booking,
    hold: SlotHold,
    *,
    now: datetime,
) -> bool:
    """Re-arm a lapsed active hold if nobody else has taken its window.

    Live holds are returned as-is. A lapsed hold is re-checked under the
    same area and worker locks :func:`create_hold` takes, so a late payment
    never confirms a slot another booking now holds.
    """

    if is_live(hold, now):
        return True
    if hold.status != statuses.HOLD_ACTIVE:
        return False

    await _lock_area(session, hold.area_id)
    if hold.worker_id is not None:
        await _lock_worker(session, hold.worker_id)

    starts_at = as_utc(hold.starts_at)
    ends_at = as_utc(booking.ends_at)
    blocked_until = as_utc(hold.ends_at)
    token = slots.SlotToken(
        service_id=booking.service_id,
        area_id=hold.area_id,
        worker_id=hold.worker_id,
        starts_at=starts_at,
        ends_at=ends_at,
        blocked_until=blocked_until,
        duration_minutes=booking.duration_minutes,
        buffer_minutes=int((blocked_until - ends_at).total_seconds() // 60),
    )
    conflict = await slots.find_conflict(session, token, now)
    if conflict is not None:
        metrics.record_hold("lost")
        logger.info(
            "hold_lost",
            extra={"extra": {"booking_id": booking.booking_id, "area_id": hold.area_id, **conflict.context}},
        )
        return False

    hold.expires_at = now + timedelta(minutes=config.booking_hold_time_minutes)
    metrics.record_hold("reclaimed")
    logger.info("hold_reclaimed", extra={"extra": {"booking_id": booking.booking_id}})
    return True
