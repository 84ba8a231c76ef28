"""Offer-based worker dispatch.

A confirmed booking has at most one outstanding offer. Each offer either
becomes an accepted assignment, or is closed (rejected, expired, buffer
conflict) and the next ranked candidate is offered. When nobody is left the
booking stays ``confirmed`` and is flagged for a human.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from servicebook.domain.bookings import holds, slots
from servicebook.domain.bookings import service as booking_service
from servicebook.domain.bookings import statuses as booking_statuses
from servicebook.domain.bookings.db_models import Booking, SlotHold
from servicebook.domain.config.service import ConfigSnapshot, config_provider
from servicebook.domain.errors import (
    BufferConflict,
    HoldExpired,
    InvalidCompletionCode,
    InvalidTransition,
    NoAvailableWorker,
    NotFound,
)
from servicebook.domain.outbox.service import enqueue_outbox_event
from servicebook.domain.workers import buffers, statuses
from servicebook.domain.workers.db_models import Worker, WorkerAssignment
from servicebook.domain.workers.ranking import Candidate, rank_candidates
from servicebook.infra.db import as_utc, utcnow
from servicebook.infra.metrics import metrics
from servicebook.settings import settings

logger = logging.getLogger(__name__)


async def get_worker_by_sub(session: AsyncSession, user_sub: str) -> Worker:
    worker = await session.scalar(select(Worker).where(Worker.user_sub == user_sub))
    if worker is None or not worker.is_active:
        raise NotFound("Worker profile not found", resource="worker")
    return worker


async def list_worker_assignments(
    session: AsyncSession, worker_id: int, *, status: str | None = None
) -> list[WorkerAssignment]:
    stmt = select(WorkerAssignment).where(WorkerAssignment.worker_id == worker_id)
    if status:
        stmt = stmt.where(WorkerAssignment.status == status)
    result = await session.execute(stmt.order_by(WorkerAssignment.offered_at.desc()))
    return list(result.scalars().all())


async def list_booking_assignments(session: AsyncSession, booking_id: str) -> list[WorkerAssignment]:
    stmt = (
        select(WorkerAssignment)
        .where(WorkerAssignment.booking_id == booking_id)
        .order_by(WorkerAssignment.offered_at, WorkerAssignment.assignment_id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def set_worker_availability(session: AsyncSession, worker: Worker, is_available: bool) -> Worker:
    worker.is_available = is_available
    await session.flush()
    logger.info(
        "worker_availability_changed",
        extra={"extra": {"worker_id": worker.worker_id, "is_available": is_available}},
    )
    return worker


async def _active_assignment(session: AsyncSession, booking_id: str) -> WorkerAssignment | None:
    stmt = select(WorkerAssignment).where(
        WorkerAssignment.booking_id == booking_id,
        WorkerAssignment.status.in_(statuses.ACTIVE_ASSIGNMENT_STATUSES),
    )
    return await session.scalar(stmt.limit(1))


async def _busy_elsewhere(session: AsyncSession, worker_id: int, booking: Booking, now: datetime) -> bool:
    start, end = as_utc(booking.starts_at), as_utc(booking.ends_at)
    if await buffers.has_conflict(session, worker_id, start, end):
        return True

    pending_offer = await session.scalar(
        select(WorkerAssignment.assignment_id)
        .join(Booking, Booking.booking_id == WorkerAssignment.booking_id)
        .where(
            WorkerAssignment.worker_id == worker_id,
            WorkerAssignment.status == statuses.OFFERED,
            WorkerAssignment.booking_id != booking.booking_id,
            Booking.starts_at < end,
            Booking.ends_at > start,
        )
        .limit(1)
    )
    if pending_offer is not None:
        return True

    # worker-specific holds of other bookings
    held = await session.scalar(
        select(SlotHold.hold_id)
        .where(
            SlotHold.worker_id == worker_id,
            SlotHold.booking_id != booking.booking_id,
            SlotHold.starts_at < end,
            SlotHold.ends_at > start,
            or_(
                SlotHold.status == booking_statuses.HOLD_PROMOTED,
                and_(SlotHold.status == booking_statuses.HOLD_ACTIVE, SlotHold.expires_at > now),
            ),
        )
        .limit(1)
    )
    return held is not None


async def find_candidates(session: AsyncSession, booking: Booking, *, now: datetime) -> list[Candidate]:
    offered = await session.execute(
        select(WorkerAssignment.worker_id).where(WorkerAssignment.booking_id == booking.booking_id)
    )
    already_offered = set(offered.scalars().all())

    candidates: list[Candidate] = []
    for worker in await slots.eligible_workers(session, booking.service_id, booking.area_id):
        if worker.worker_id in already_offered:
            continue
        if await _busy_elsewhere(session, worker.worker_id, booking, now):
            continue
        candidates.append(
            Candidate(
                worker_id=worker.worker_id,
                rating=worker.rating,
                last_assigned_at=as_utc(worker.last_assigned_at),
                is_preferred=worker.worker_id == booking.preferred_worker_id,
            )
        )
    return rank_candidates(candidates)


async def _flag_unassignable(session: AsyncSession, booking: Booking, *, now: datetime) -> None:
    booking.dispatch_flag = booking_statuses.DISPATCH_FLAG_UNASSIGNABLE
    await enqueue_outbox_event(
        session,
        kind="booking.unassignable",
        booking_id=booking.booking_id,
        dedupe_key=f"booking.unassignable:{booking.booking_id}:{now.isoformat()}",
        payload={"booking_id": booking.booking_id, "remaining_candidates": 0},
    )
    metrics.record_assignment("unassignable")
    logger.warning(
        "booking_unassignable",
        extra={"extra": {"booking_id": booking.booking_id, "remaining_candidates": 0}},
    )


async def dispatch_booking(
    session: AsyncSession,
    config: ConfigSnapshot,
    booking: Booking,
    *,
    now: datetime,
    raise_on_empty: bool = True,
) -> WorkerAssignment | None:
    """Offer the booking to the best remaining candidate.

    Returns the outstanding offer (an existing one is returned unchanged). When
    no candidate is left the booking is flagged and, if ``raise_on_empty``,
    :class:`NoAvailableWorker` is raised after the flag is written.
    """

    if booking.status != booking_statuses.CONFIRMED:
        raise InvalidTransition(
            f"Only confirmed bookings can be dispatched, not {booking.status}",
            from_status=booking.status,
            to_status=booking_statuses.ASSIGNED,
        )
    existing = await _active_assignment(session, booking.booking_id)
    if existing is not None:
        return existing

    ranked = await find_candidates(session, booking, now=now)
    if not ranked:
        await _flag_unassignable(session, booking, now=now)
        await session.flush()
        if raise_on_empty:
            raise NoAvailableWorker(
                "No eligible worker is left for this booking",
                booking_id=booking.booking_id,
                remaining_candidates=0,
            )
        return None

    chosen = ranked[0]
    assignment = WorkerAssignment(
        booking_id=booking.booking_id,
        worker_id=chosen.worker_id,
        status=statuses.OFFERED,
        assigned_by=statuses.ASSIGNED_BY_POOL,
        offered_at=now,
        offer_expires_at=now + timedelta(minutes=config.worker_offer_timeout_minutes),
    )
    session.add(assignment)
    booking.dispatch_flag = None
    await session.flush()
    await enqueue_outbox_event(
        session,
        kind="assignment.offered",
        booking_id=booking.booking_id,
        dedupe_key=f"assignment.offered:{assignment.assignment_id}",
        payload={
            "booking_id": booking.booking_id,
            "assignment_id": assignment.assignment_id,
            "worker_id": chosen.worker_id,
            "offer_expires_at": assignment.offer_expires_at.isoformat(),
        },
    )
    metrics.record_assignment("offered")
    logger.info(
        "assignment_offered",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "assignment_id": assignment.assignment_id,
                "worker_id": chosen.worker_id,
                "remaining_candidates": len(ranked) - 1,
            }
        },
    )
    return assignment


async def _lock_assignment(
    session: AsyncSession, assignment_id: str, *, worker_id: int | None = None
) -> WorkerAssignment:
    stmt = select(WorkerAssignment).where(WorkerAssignment.assignment_id == assignment_id).with_for_update()
    assignment = await session.scalar(stmt)
    if assignment is None or (worker_id is not None and assignment.worker_id != worker_id):
        raise NotFound("Assignment not found", resource="assignment", assignment_id=assignment_id)
    return assignment


def _require_status(assignment: WorkerAssignment, allowed: set[str], target: str) -> None:
    if assignment.status not in allowed:
        raise InvalidTransition(
            f"Assignment cannot move from {assignment.status} to {target}",
            from_status=assignment.status,
            to_status=target,
        )


def _close_offer(assignment: WorkerAssignment, status: str, *, now: datetime, reason: str | None = None) -> None:
    assignment.status = status
    assignment.ended_at = now
    if status == statuses.REJECTED:
        assignment.rejected_at = now
        assignment.rejection_reason = reason
    metrics.record_assignment(status)


async def _offer_next(session: AsyncSession, config: ConfigSnapshot, booking: Booking, *, now: datetime) -> None:
    if booking.status == booking_statuses.CONFIRMED:
        await dispatch_booking(session, config, booking, now=now, raise_on_empty=False)


async def accept_assignment(
    session: AsyncSession,
    config: ConfigSnapshot,
    assignment_id: str,
    *,
    worker_id: int,
    now: datetime,
) -> WorkerAssignment:
    """Accept an offer and reserve the worker's padded window.

    An expired offer raises :class:`HoldExpired` and a clashing buffer raises
    :class:`BufferConflict`; in both cases the offer is already closed and the
    next candidate offered, so callers commit before surfacing the error.
    """

    assignment = await _lock_assignment(session, assignment_id, worker_id=worker_id)
    booking = await booking_service.lock_booking(session, assignment.booking_id)
    if assignment.status == statuses.ACCEPTED:
        return assignment
    _require_status(assignment, {statuses.OFFERED}, statuses.ACCEPTED)

    expires_at = as_utc(assignment.offer_expires_at)
    if expires_at is not None and expires_at <= now:
        _close_offer(assignment, statuses.EXPIRED, now=now)
        await _offer_next(session, config, booking, now=now)
        raise HoldExpired("Offer has expired", assignment_id=assignment_id, expired_at=expires_at)

    try:
        await buffers.reserve(
            session,
            worker_id=worker_id,
            assignment_id=assignment.assignment_id,
            booking_id=booking.booking_id,
            starts_at=as_utc(booking.starts_at),
            ends_at=as_utc(booking.ends_at),
            buffer_minutes=config.booking_buffer_time_minutes,
        )
    except BufferConflict:
        _close_offer(assignment, statuses.REJECTED, now=now, reason=statuses.REASON_BUFFER_CONFLICT)
        await _offer_next(session, config, booking, now=now)
        raise

    worker = await session.get(Worker, worker_id)
    assignment.status = statuses.ACCEPTED
    assignment.accepted_at = now
    worker.last_assigned_at = now
    booking.worker_id = worker_id
    holds.bind_worker(await holds.get_hold(session, booking.booking_id), worker_id)
    await booking_service.transition_booking(
        session,
        booking,
        booking_statuses.ASSIGNED,
        now=now,
        actor=f"worker:{worker_id}",
        payload={"worker_id": worker_id, "assignment_id": assignment.assignment_id},
    )
    metrics.record_assignment(statuses.ACCEPTED)
    return assignment


async def reject_assignment(
    session: AsyncSession,
    config: ConfigSnapshot,
    assignment_id: str,
    *,
    worker_id: int,
    reason: str | None = None,
    now: datetime,
) -> WorkerAssignment:
    assignment = await _lock_assignment(session, assignment_id, worker_id=worker_id)
    booking = await booking_service.lock_booking(session, assignment.booking_id)
    if assignment.status == statuses.REJECTED:
        return assignment
    _require_status(assignment, {statuses.OFFERED}, statuses.REJECTED)
    _close_offer(assignment, statuses.REJECTED, now=now, reason=reason or statuses.REASON_DECLINED)
    await session.flush()
    await _offer_next(session, config, booking, now=now)
    return assignment


async def start_assignment(
    session: AsyncSession,
    assignment_id: str,
    *,
    worker_id: int,
    now: datetime,
) -> WorkerAssignment:
    assignment = await _lock_assignment(session, assignment_id, worker_id=worker_id)
    booking = await booking_service.lock_booking(session, assignment.booking_id)
    if assignment.status == statuses.STARTED:
        return assignment
    _require_status(assignment, {statuses.ACCEPTED}, statuses.STARTED)
    assignment.status = statuses.STARTED
    assignment.started_at = now
    await booking_service.transition_booking(
        session, booking, booking_statuses.IN_PROGRESS, now=now, actor=f"worker:{worker_id}"
    )
    metrics.record_assignment(statuses.STARTED)
    return assignment


async def complete_assignment(
    session: AsyncSession,
    assignment_id: str,
    *,
    worker_id: int,
    otp: str,
    now: datetime,
) -> WorkerAssignment:
    assignment = await _lock_assignment(session, assignment_id, worker_id=worker_id)
    booking = await booking_service.lock_booking(session, assignment.booking_id)
    if assignment.status == statuses.COMPLETED:
        return assignment
    _require_status(assignment, {statuses.STARTED}, statuses.COMPLETED)
    if not booking.completion_otp or not hmac.compare_digest(booking.completion_otp, otp.strip()):
        logger.info(
            "completion_code_rejected",
            extra={"extra": {"booking_id": booking.booking_id, "assignment_id": assignment_id}},
        )
        raise InvalidCompletionCode("Completion code does not match", booking_id=booking.booking_id)

    assignment.status = statuses.COMPLETED
    assignment.completed_at = now
    assignment.ended_at = now
    await buffers.release(session, assignment.assignment_id)
    holds.release_hold(await holds.get_hold(session, booking.booking_id, lock=True), now)
    worker = await session.get(Worker, worker_id)
    worker.completed_jobs = (worker.completed_jobs or 0) + 1
    await booking_service.transition_booking(
        session, booking, booking_statuses.COMPLETED, now=now, actor=f"worker:{worker_id}"
    )
    metrics.record_assignment(statuses.COMPLETED)
    return assignment


async def fail_assignment(
    session: AsyncSession,
    config: ConfigSnapshot,
    assignment_id: str,
    *,
    worker_id: int,
    reason: str | None = None,
    now: datetime,
    stripe_client: Any | None = None,
) -> WorkerAssignment:
    """Worker pulls out. Before the job starts the booking is re-dispatched;
    after it starts the booking is cancelled with a full refund."""

    assignment = await _lock_assignment(session, assignment_id, worker_id=worker_id)
    booking = await booking_service.lock_booking(session, assignment.booking_id)
    if assignment.status == statuses.FAILED:
        return assignment
    _require_status(assignment, statuses.BUSY_ASSIGNMENT_STATUSES, statuses.FAILED)

    was_started = assignment.status == statuses.STARTED
    assignment.status = statuses.FAILED
    assignment.ended_at = now
    assignment.notes = reason
    await buffers.release(session, assignment.assignment_id)
    metrics.record_assignment(statuses.FAILED)
    actor = f"worker:{worker_id}"

    if was_started:
        await booking_service.cancel_booking(
            session,
            config,
            booking,
            actor=actor,
            reason=reason or "worker_failed",
            now=now,
            stripe_client=stripe_client,
            waive_fee=True,
        )
        return assignment

    booking.worker_id = None
    holds.bind_worker(await holds.get_hold(session, booking.booking_id), None)
    await booking_service.transition_booking(
        session, booking, booking_statuses.CONFIRMED, now=now, actor=actor, reason=reason or "worker_failed"
    )
    await _offer_next(session, config, booking, now=now)
    return assignment


async def force_assign_worker(
    session: AsyncSession,
    config: ConfigSnapshot,
    booking: Booking,
    *,
    worker_id: int,
    actor: str,
    now: datetime,
    notes: str | None = None,
) -> WorkerAssignment:
    """Admin override. Skips skill and area checks but never a buffer clash."""

    if booking.status not in {booking_statuses.CONFIRMED, booking_statuses.ASSIGNED}:
        raise InvalidTransition(
            f"Cannot assign a worker to a booking in status {booking.status}",
            from_status=booking.status,
            to_status=booking_statuses.ASSIGNED,
        )
    worker = await session.get(Worker, worker_id)
    if worker is None or not worker.is_active:
        raise NotFound("Worker not found", resource="worker", worker_id=worker_id)

    current = await _active_assignment(session, booking.booking_id)
    if current is not None and current.worker_id == worker_id and current.status == statuses.ACCEPTED:
        return current
    if current is not None:
        was_accepted = current.status == statuses.ACCEPTED
        current.status = statuses.CANCELLED
        current.ended_at = now
        current.notes = f"withdrawn by {actor}"
        await buffers.release(session, current.assignment_id)
        if was_accepted:
            await booking_service.transition_booking(
                session, booking, booking_statuses.CONFIRMED, now=now, actor=actor, reason="worker_withdrawn"
            )

    assignment = WorkerAssignment(
        booking_id=booking.booking_id,
        worker_id=worker_id,
        status=statuses.ACCEPTED,
        assigned_by=statuses.ASSIGNED_BY_ADMIN,
        offered_at=now,
        accepted_at=now,
        notes=notes,
    )
    session.add(assignment)
    await session.flush()
    await buffers.reserve(
        session,
        worker_id=worker_id,
        assignment_id=assignment.assignment_id,
        booking_id=booking.booking_id,
        starts_at=as_utc(booking.starts_at),
        ends_at=as_utc(booking.ends_at),
        buffer_minutes=config.booking_buffer_time_minutes,
    )
    worker.last_assigned_at = now
    booking.worker_id = worker_id
    booking.dispatch_flag = None
    holds.bind_worker(await holds.get_hold(session, booking.booking_id), worker_id)
    await booking_service.transition_booking(
        session,
        booking,
        booking_statuses.ASSIGNED,
        now=now,
        actor=actor,
        payload={"worker_id": worker_id, "assignment_id": assignment.assignment_id, "assigned_by": "admin"},
    )
    metrics.record_assignment("force_assigned")
    return assignment


async def expire_offer(
    session: AsyncSession, config: ConfigSnapshot, assignment: WorkerAssignment, *, now: datetime
) -> str | None:
    expires_at = as_utc(assignment.offer_expires_at)
    if assignment.status != statuses.OFFERED or expires_at is None or expires_at > now:
        return None
    booking = await booking_service.lock_booking(session, assignment.booking_id)
    _close_offer(assignment, statuses.EXPIRED, now=now)
    await session.flush()
    if booking.status != booking_statuses.CONFIRMED:
        return "expired"
    follow_up = await dispatch_booking(session, config, booking, now=now, raise_on_empty=False)
    return "reoffered" if follow_up is not None else "unassignable"


async def expire_stale_offers(
    session_factory: async_sessionmaker,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> dict[str, int]:
    current = as_utc(now) if now else utcnow()
    limit = batch_size or settings.sweep_batch_size
    async with session_factory() as session:
        result = await session.execute(
            select(WorkerAssignment.assignment_id)
            .where(WorkerAssignment.status == statuses.OFFERED, WorkerAssignment.offer_expires_at <= current)
            .order_by(WorkerAssignment.offer_expires_at)
            .limit(limit)
        )
        assignment_ids = list(result.scalars().all())

    counts = {"expired": 0, "reoffered": 0, "unassignable": 0, "skipped": 0, "failed": 0}
    for assignment_id in assignment_ids:
        try:
            async with session_factory() as session:
                config = await config_provider.get(session)
                assignment = await _lock_assignment(session, assignment_id)
                outcome = await expire_offer(session, config, assignment, now=current)
                await session.commit()
        except Exception as exc:  # noqa: BLE001
            counts["failed"] += 1
            metrics.record_sweep("expire-offers", "failed")
            logger.warning(
                "sweep_item_failed",
                extra={"extra": {"job": "expire-offers", "assignment_id": assignment_id, "reason": type(exc).__name__}},
            )
            continue
        key = outcome or "skipped"
        counts[key] += 1
        metrics.record_sweep("expire-offers", key)
    return counts
