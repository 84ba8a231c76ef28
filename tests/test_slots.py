import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from tests.conftest import AREA_ID, CLEANING_SERVICE_ID, FIXED_NOW, WORKER_ONE, fixed_start
from servicebook.domain.bookings import service as booking_service
from servicebook.domain.bookings import slots
from servicebook.domain.config.service import ConfigSnapshot
from servicebook.domain.errors import (
    NoAvailableWorker,
    NotFound,
    OutsideWorkingHours,
    SlotConflict,
    SlotInPast,
    TooFarInAdvance,
)

CONFIG = ConfigSnapshot()


def test_check_calendar_rules():
    assert slots.check_calendar(CONFIG, fixed_start(1, 10), 120, FIXED_NOW) is None
    assert isinstance(slots.check_calendar(CONFIG, FIXED_NOW - timedelta(minutes=1), 120, FIXED_NOW), SlotInPast)
    assert isinstance(slots.check_calendar(CONFIG, fixed_start(4, 10), 120, FIXED_NOW), TooFarInAdvance)
    assert isinstance(slots.check_calendar(CONFIG, fixed_start(1, 8), 120, FIXED_NOW), OutsideWorkingHours)
    # 120 minutes of work plus 30 of buffer must end by 22:00
    assert slots.check_calendar(CONFIG, fixed_start(1, 19, 30), 120, FIXED_NOW) is None
    assert isinstance(slots.check_calendar(CONFIG, fixed_start(1, 20), 120, FIXED_NOW), OutsideWorkingHours)


def test_check_calendar_respects_working_days():
    # FIXED_NOW is a Monday, so one day ahead is a Tuesday (ISO 2)
    weekdays_only = replace(CONFIG, working_days=frozenset({1, 3, 4, 5}))

    rejection = slots.check_calendar(weekdays_only, fixed_start(1, 10), 120, FIXED_NOW)

    assert isinstance(rejection, OutsideWorkingHours)
    assert rejection.context["working_days"] == "1,3,4,5"


def _hold_booking(async_session_maker, starts_at, *, worker_id=None, now=FIXED_NOW, customer="cust-1"):
    async def _run():
        async with async_session_maker() as session:
            created = await booking_service.create_booking(
                session,
                CONFIG,
                customer_id=customer,
                service_id=CLEANING_SERVICE_ID,
                area_id=AREA_ID,
                starts_at=starts_at,
                preferred_worker_id=worker_id,
                now=now,
            )
            await session.commit()
            return created.booking.booking_id

    return asyncio.run(_run())


def _day_slots(async_session_maker, *, now=FIXED_NOW):
    async def _run():
        async with async_session_maker() as session:
            return await slots.list_day_slots(
                session,
                CONFIG,
                service_id=CLEANING_SERVICE_ID,
                area_id=AREA_ID,
                day=fixed_start(1, 10).date(),
                now=now,
            )

    return asyncio.run(_run())


def test_day_slots_cover_working_hours(async_session_maker):
    day = _day_slots(async_session_maker)

    assert len(day) == 22
    assert day[0].starts_at == fixed_start(1, 9)
    assert day[-1].starts_at == fixed_start(1, 19, 30)
    assert all(slot.available_workers == 2 for slot in day)


def test_hold_reduces_capacity_including_buffer(async_session_maker):
    _hold_booking(async_session_maker, fixed_start(1, 10))

    by_start = {slot.starts_at: slot for slot in _day_slots(async_session_maker)}

    # the hold blocks 10:00-12:30; a 150 minute window starting 09:00..12:00 overlaps it
    assert by_start[fixed_start(1, 9)].available_workers == 1
    assert by_start[fixed_start(1, 12)].available_workers == 1
    assert by_start[fixed_start(1, 12, 30)].available_workers == 2


def test_area_capacity_is_enforced(async_session_maker):
    _hold_booking(async_session_maker, fixed_start(1, 10), customer="cust-a")
    _hold_booking(async_session_maker, fixed_start(1, 11), customer="cust-b")

    with pytest.raises(SlotConflict):
        _hold_booking(async_session_maker, fixed_start(1, 11, 30), customer="cust-c")

    # both earlier holds have ended by 14:00
    _hold_booking(async_session_maker, fixed_start(1, 14), customer="cust-d")


def test_worker_specific_hold_blocks_the_buffer(async_session_maker):
    _hold_booking(async_session_maker, fixed_start(1, 10), worker_id=WORKER_ONE)

    with pytest.raises(SlotConflict) as excinfo:
        _hold_booking(async_session_maker, fixed_start(1, 12), worker_id=WORKER_ONE, customer="cust-b")
    assert excinfo.value.context["worker_id"] == WORKER_ONE

    _hold_booking(async_session_maker, fixed_start(1, 12, 30), worker_id=WORKER_ONE, customer="cust-c")


def test_expired_holds_do_not_block(async_session_maker):
    _hold_booking(async_session_maker, fixed_start(1, 10), worker_id=WORKER_ONE)

    later = FIXED_NOW + timedelta(minutes=CONFIG.booking_hold_time_minutes + 1)
    _hold_booking(async_session_maker, fixed_start(1, 10), worker_id=WORKER_ONE, now=later, customer="cust-b")


def test_evaluate_slot_reports_unknown_service_and_worker(async_session_maker):
    async def _evaluate(**kwargs):
        async with async_session_maker() as session:
            return await slots.evaluate_slot(session, CONFIG, area_id=AREA_ID, now=FIXED_NOW, **kwargs)

    with pytest.raises(NotFound):
        asyncio.run(_evaluate(service_id=99, starts_at=fixed_start(1, 10)))

    decision = asyncio.run(_evaluate(service_id=CLEANING_SERVICE_ID, starts_at=fixed_start(1, 10), worker_id=77))
    assert not decision.ok
    assert isinstance(decision.rejection, NoAvailableWorker)

    decision = asyncio.run(_evaluate(service_id=CLEANING_SERVICE_ID, starts_at=fixed_start(1, 10)))
    assert decision.ok
    token = decision.unwrap()
    assert token.ends_at - token.starts_at == timedelta(minutes=120)
    assert token.blocked_until - token.ends_at == timedelta(minutes=30)
