"""Slot legality and availability checks.

Everything here is read-only. Reserving a slot is a separate step in
:mod:`servicebook.domain.bookings.holds`, which locks the capacity rows and
re-runs :func:`find_conflict` inside its transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.domain.bookings import statuses
from servicebook.domain.bookings.db_models import Service, ServiceArea, SlotHold
from servicebook.domain.config.service import ConfigSnapshot
from servicebook.domain.errors import (
    DomainError,
    NoAvailableWorker,
    NotFound,
    OutsideWorkingHours,
    SlotConflict,
    SlotInPast,
    TooFarInAdvance,
)
from servicebook.domain.workers.db_models import BufferRequest, Worker, WorkerSkill
from servicebook.infra.db import as_utc, utcnow
from servicebook.settings import settings

SLOT_STEP_MINUTES = 30


def service_timezone() -> ZoneInfo:
    return ZoneInfo(settings.service_timezone)


def service_duration_minutes(service: Service) -> int:
    return service.duration_minutes or settings.default_service_duration_minutes


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


@dataclass(frozen=True)
class SlotToken:
    service_id: int
    area_id: int
    worker_id: int | None
    starts_at: datetime
    ends_at: datetime
    blocked_until: datetime
    duration_minutes: int
    buffer_minutes: int


@dataclass(frozen=True)
class SlotDecision:
    token: SlotToken | None = None
    rejection: DomainError | None = None

    @property
    def ok(self) -> bool:
        return self.token is not None

    def unwrap(self) -> SlotToken:
        if self.rejection is not None:
            raise self.rejection
        assert self.token is not None
        return self.token


@dataclass(frozen=True)
class DaySlot:
    starts_at: datetime
    ends_at: datetime
    available_workers: int

    @property
    def is_available(self) -> bool:
        return self.available_workers > 0


def check_calendar(
    config: ConfigSnapshot,
    starts_at: datetime,
    duration_minutes: int,
    now: datetime,
) -> DomainError | None:
    """Advance-window, weekday and working-hour rules for one start time."""

    tz = service_timezone()
    start = as_utc(starts_at)
    if start < now:
        return SlotInPast("Requested start is in the past", requested_start=start)

    local_start = start.astimezone(tz)
    latest_date = now.astimezone(tz).date() + timedelta(days=config.booking_advance_days)
    if local_start.date() > latest_date:
        return TooFarInAdvance(
            f"Bookings open at most {config.booking_advance_days} days ahead",
            latest_date=latest_date.isoformat(),
        )

    window_start = datetime.combine(local_start.date(), config.working_hours_start, tzinfo=tz)
    window_end = datetime.combine(local_start.date(), config.working_hours_end, tzinfo=tz)
    blocked_until = local_start + timedelta(minutes=duration_minutes + config.booking_buffer_time_minutes)
    if (
        local_start.isoweekday() not in config.working_days
        or local_start < window_start
        or blocked_until > window_end
    ):
        return OutsideWorkingHours(
            "Requested slot is outside working hours",
            working_hours_start=config.working_hours_start.strftime("%H:%M"),
            working_hours_end=config.working_hours_end.strftime("%H:%M"),
            working_days=",".join(str(day) for day in sorted(config.working_days)),
        )
    return None


def _live_hold_clause(now: datetime):
    return or_(
        SlotHold.status == statuses.HOLD_PROMOTED,
        and_(SlotHold.status == statuses.HOLD_ACTIVE, SlotHold.expires_at > now),
    )


def _eligible_workers_stmt(service_id: int, area_id: int):
    return (
        select(Worker)
        .join(WorkerSkill, WorkerSkill.worker_id == Worker.worker_id)
        .where(
            WorkerSkill.service_id == service_id,
            Worker.area_id == area_id,
            Worker.is_active.is_(True),
            Worker.is_available.is_(True),
        )
    )


async def eligible_workers(session: AsyncSession, service_id: int, area_id: int) -> list[Worker]:
    result = await session.execute(_eligible_workers_stmt(service_id, area_id).order_by(Worker.worker_id))
    return list(result.scalars().all())


async def pool_capacity(session: AsyncSession, service_id: int, area_id: int) -> int:
    stmt = select(func.count()).select_from(_eligible_workers_stmt(service_id, area_id).subquery())
    return int(await session.scalar(stmt) or 0)


async def _overlapping_area_holds(
    session: AsyncSession, area_id: int, start: datetime, end: datetime, now: datetime
) -> list[SlotHold]:
    stmt = select(SlotHold).where(
        SlotHold.area_id == area_id,
        SlotHold.starts_at < end,
        SlotHold.ends_at > start,
        _live_hold_clause(now),
    )
    result = await session.execute(stmt.order_by(SlotHold.starts_at))
    return list(result.scalars().all())


async def _worker_conflict_window(
    session: AsyncSession, worker_id: int, start: datetime, end: datetime, now: datetime
) -> tuple[datetime, datetime] | None:
    hold = await session.scalar(
        select(SlotHold)
        .where(
            SlotHold.worker_id == worker_id,
            SlotHold.starts_at < end,
            SlotHold.ends_at > start,
            _live_hold_clause(now),
        )
        .limit(1)
    )
    if hold is not None:
        return as_utc(hold.starts_at), as_utc(hold.ends_at)
    buffer = await session.scalar(
        select(BufferRequest)
        .where(
            BufferRequest.worker_id == worker_id,
            BufferRequest.starts_at < end,
            BufferRequest.ends_at > start,
        )
        .limit(1)
    )
    if buffer is not None:
        return as_utc(buffer.starts_at), as_utc(buffer.ends_at)
    return None


async def find_conflict(session: AsyncSession, token: SlotToken, now: datetime) -> SlotConflict | None:
    """Overlap check for ``[starts_at, blocked_until)``; expired holds never count."""

    start, end = token.starts_at, token.blocked_until
    if token.worker_id is not None:
        window = await _worker_conflict_window(session, token.worker_id, start, end, now)
        if window is not None:
            return SlotConflict(
                "Worker is already booked for an overlapping window",
                worker_id=token.worker_id,
                conflict_start=window[0],
                conflict_end=window[1],
            )

    capacity = await pool_capacity(session, token.service_id, token.area_id)
    overlapping = await _overlapping_area_holds(session, token.area_id, start, end, now)
    if len(overlapping) >= capacity:
        first = overlapping[0] if overlapping else None
        return SlotConflict(
            "No capacity left in this service area for the requested window",
            area_id=token.area_id,
            capacity=capacity,
            conflict_start=as_utc(first.starts_at) if first else start,
            conflict_end=as_utc(first.ends_at) if first else end,
        )
    return None


async def _load_service(session: AsyncSession, service_id: int) -> Service:
    service = await session.get(Service, service_id)
    if service is None or not service.is_active:
        raise NotFound("Service not found", resource="service", service_id=service_id)
    return service


async def _check_area(session: AsyncSession, area_id: int) -> None:
    area = await session.get(ServiceArea, area_id)
    if area is None or not area.is_active:
        raise NotFound("Service area not found", resource="service_area", area_id=area_id)


async def _check_worker(session: AsyncSession, worker_id: int, service_id: int, area_id: int) -> DomainError | None:
    stmt = _eligible_workers_stmt(service_id, area_id).where(Worker.worker_id == worker_id)
    if await session.scalar(stmt) is None:
        return NoAvailableWorker(
            "Preferred worker cannot take this service in this area",
            worker_id=worker_id,
            remaining_candidates=0,
        )
    return None


async def evaluate_slot(
    session: AsyncSession,
    config: ConfigSnapshot,
    *,
    service_id: int,
    area_id: int,
    starts_at: datetime,
    worker_id: int | None = None,
    now: datetime | None = None,
) -> SlotDecision:
    current = as_utc(now) if now else utcnow()
    service = await _load_service(session, service_id)
    await _check_area(session, area_id)
    duration = service_duration_minutes(service)
    start = as_utc(starts_at)

    rejection = check_calendar(config, start, duration, current)
    if rejection is None and worker_id is not None:
        rejection = await _check_worker(session, worker_id, service_id, area_id)
    if rejection is not None:
        return SlotDecision(rejection=rejection)

    ends_at = start + timedelta(minutes=duration)
    token = SlotToken(
        service_id=service_id,
        area_id=area_id,
        worker_id=worker_id,
        starts_at=start,
        ends_at=ends_at,
        blocked_until=ends_at + timedelta(minutes=config.booking_buffer_time_minutes),
        duration_minutes=duration,
        buffer_minutes=config.booking_buffer_time_minutes,
    )
    conflict = await find_conflict(session, token, current)
    if conflict is not None:
        return SlotDecision(rejection=conflict)
    return SlotDecision(token=token)


async def ensure_slot(
    session: AsyncSession,
    config: ConfigSnapshot,
    *,
    service_id: int,
    area_id: int,
    starts_at: datetime,
    worker_id: int | None = None,
    now: datetime | None = None,
) -> SlotToken:
    decision = await evaluate_slot(
        session,
        config,
        service_id=service_id,
        area_id=area_id,
        starts_at=starts_at,
        worker_id=worker_id,
        now=now,
    )
    return decision.unwrap()


async def list_day_slots(
    session: AsyncSession,
    config: ConfigSnapshot,
    *,
    service_id: int,
    area_id: int,
    day: date,
    now: datetime | None = None,
) -> list[DaySlot]:
    current = as_utc(now) if now else utcnow()
    service = await _load_service(session, service_id)
    await _check_area(session, area_id)
    if day.isoweekday() not in config.working_days:
        return []

    tz = service_timezone()
    duration = timedelta(minutes=service_duration_minutes(service))
    buffer = timedelta(minutes=config.booking_buffer_time_minutes)
    day_start = datetime.combine(day, config.working_hours_start, tzinfo=tz)
    day_end = datetime.combine(day, config.working_hours_end, tzinfo=tz)

    capacity = await pool_capacity(session, service_id, area_id)
    holds = await _overlapping_area_holds(session, area_id, as_utc(day_start), as_utc(day_end), current)
    windows = [(as_utc(hold.starts_at), as_utc(hold.ends_at)) for hold in holds]

    slots: list[DaySlot] = []
    candidate = day_start
    while candidate + duration + buffer <= day_end:
        start_utc = as_utc(candidate)
        if check_calendar(config, start_utc, int(duration.total_seconds() // 60), current) is None:
            blocked_until = start_utc + duration + buffer
            busy = sum(1 for w_start, w_end in windows if overlaps(start_utc, blocked_until, w_start, w_end))
            slots.append(
                DaySlot(
                    starts_at=start_utc,
                    ends_at=start_utc + duration,
                    available_workers=max(capacity - busy, 0),
                )
            )
        candidate += timedelta(minutes=SLOT_STEP_MINUTES)
    return slots
