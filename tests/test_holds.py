import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from tests.conftest import AREA_ID, CLEANING_SERVICE_ID, FIXED_NOW, WORKER_ONE, StubStripe, fixed_start
from servicebook.domain.bookings import holds, slots
from servicebook.domain.bookings import service as booking_service
from servicebook.domain.bookings import statuses
from servicebook.domain.bookings.db_models import Booking, SlotHold
from servicebook.domain.config.service import ConfigSnapshot
from servicebook.domain.errors import HoldExpired, InvalidTransition, SlotConflict
from servicebook.domain.outbox.service import events_for_booking
from servicebook.domain.payments import service as ledger
from servicebook.infra.db import as_utc

CONFIG = ConfigSnapshot()


def _create(async_session_maker, *, worker_id=None, now=FIXED_NOW):
    async def _run():
        async with async_session_maker() as session:
            created = await booking_service.create_booking(
                session,
                CONFIG,
                customer_id="cust-1",
                service_id=CLEANING_SERVICE_ID,
                area_id=AREA_ID,
                starts_at=fixed_start(1, 10),
                preferred_worker_id=worker_id,
                now=now,
            )
            await session.commit()
            return created

    return asyncio.run(_run())


def _initiate(async_session_maker, booking_id, method, now):
    async def _run():
        async with async_session_maker() as session:
            booking = await booking_service.lock_booking(session, booking_id)
            await booking_service.mark_payment_initiated(session, CONFIG, booking, method=method, now=now)
            await session.commit()
            hold = await holds.get_hold(session, booking_id)
            return booking, hold

    return asyncio.run(_run())


def _state(async_session_maker, booking_id):
    async def _run():
        async with async_session_maker() as session:
            booking = await session.get(Booking, booking_id)
            hold = await holds.get_hold(session, booking_id)
            events = await events_for_booking(session, booking_id)
            return booking, hold, [event.kind for event in events]

    return asyncio.run(_run())


def test_create_booking_places_a_timed_hold(async_session_maker):
    created = _create(async_session_maker, worker_id=WORKER_ONE)

    assert created.booking.status == statuses.HELD
    assert created.booking.booking_reference.startswith("SB-")
    assert created.hold.status == statuses.HOLD_ACTIVE
    assert created.hold.worker_id == WORKER_ONE
    assert as_utc(created.hold.expires_at) == FIXED_NOW + timedelta(minutes=CONFIG.booking_hold_time_minutes)
    assert as_utc(created.hold.ends_at) == fixed_start(1, 10) + timedelta(minutes=150)
    assert [segment.amount_cents for segment in created.segments] == [created.booking.total_cents]

    _, _, kinds = _state(async_session_maker, created.booking.booking_id)
    assert kinds == ["booking.held"]


def test_payment_start_moves_the_hold_expiry_to_the_deadline(async_session_maker):
    booking_id = _create(async_session_maker).booking.booking_id

    booking, hold = _initiate(async_session_maker, booking_id, "gateway", FIXED_NOW + timedelta(minutes=1))
    gateway_deadline = FIXED_NOW + timedelta(minutes=1 + 30 + 5)
    assert booking.status == statuses.PENDING_PAYMENT
    assert as_utc(booking.payment_expires_at) == gateway_deadline
    assert as_utc(hold.expires_at) == gateway_deadline

    # switching to the wallet never shortens the window
    booking, hold = _initiate(async_session_maker, booking_id, "wallet", FIXED_NOW + timedelta(minutes=2))
    assert booking.payment_method == statuses.METHOD_WALLET
    assert as_utc(booking.payment_expires_at) == gateway_deadline
    assert as_utc(hold.expires_at) == gateway_deadline


def test_payment_cannot_start_on_an_expired_hold(async_session_maker):
    booking_id = _create(async_session_maker).booking.booking_id

    with pytest.raises(HoldExpired):
        _initiate(async_session_maker, booking_id, "wallet", FIXED_NOW + timedelta(minutes=8))


def test_payment_cannot_start_on_a_closed_booking(async_session_maker):
    booking_id = _create(async_session_maker).booking.booking_id
    asyncio.run(booking_service.expire_stale_holds(async_session_maker, now=FIXED_NOW + timedelta(minutes=8)))

    with pytest.raises(InvalidTransition):
        _initiate(async_session_maker, booking_id, "wallet", FIXED_NOW + timedelta(minutes=9))


def test_sweep_expires_unpaid_holds(async_session_maker):
    booking_id = _create(async_session_maker).booking.booking_id

    early = asyncio.run(booking_service.expire_stale_holds(async_session_maker, now=FIXED_NOW + timedelta(minutes=5)))
    assert early == {"expired": 0, "cancelled": 0, "skipped": 0, "failed": 0}

    counts = asyncio.run(booking_service.expire_stale_holds(async_session_maker, now=FIXED_NOW + timedelta(minutes=8)))
    assert counts["expired"] == 1

    booking, hold, kinds = _state(async_session_maker, booking_id)
    assert booking.status == statuses.EXPIRED
    assert hold.status == statuses.HOLD_EXPIRED
    assert set(kinds) == {"booking.held", "booking.expired"}

    # idempotent: nothing left to expire
    again = asyncio.run(booking_service.expire_stale_holds(async_session_maker, now=FIXED_NOW + timedelta(minutes=9)))
    assert again["expired"] == 0


def test_sweep_cancels_bookings_past_the_payment_deadline(async_session_maker):
    booking_id = _create(async_session_maker).booking.booking_id
    _initiate(async_session_maker, booking_id, "wallet", FIXED_NOW + timedelta(minutes=1))

    # past the original hold lifetime but inside the wallet window
    counts = asyncio.run(booking_service.expire_stale_holds(async_session_maker, now=FIXED_NOW + timedelta(minutes=20)))
    assert counts["cancelled"] == 0

    counts = asyncio.run(booking_service.expire_stale_holds(async_session_maker, now=FIXED_NOW + timedelta(minutes=32)))
    assert counts["cancelled"] == 1

    booking, hold, kinds = _state(async_session_maker, booking_id)
    assert booking.status == statuses.CANCELLED
    assert booking.cancellation_reason == "payment_timeout"
    assert booking.payment_expires_at is None
    assert hold.status == statuses.HOLD_EXPIRED
    assert "booking.cancelled" in kinds


def test_expired_hold_frees_the_worker(async_session_maker):
    _create(async_session_maker, worker_id=WORKER_ONE)
    asyncio.run(booking_service.expire_stale_holds(async_session_maker, now=FIXED_NOW + timedelta(minutes=8)))

    again = _create(async_session_maker, worker_id=WORKER_ONE, now=FIXED_NOW + timedelta(minutes=8))
    assert again.hold.status == statuses.HOLD_ACTIVE


def _start_gateway(async_session_maker, booking_id, stripe, now):
    async def _run():
        async with async_session_maker() as session:
            booking = await booking_service.lock_booking(session, booking_id)
            outcome = await booking_service.pay_booking_segment(
                session, CONFIG, booking, segment_number=1, method="gateway", stripe_client=stripe, now=now
            )
            await session.commit()
            return outcome.segment.segment_id

    return asyncio.run(_run())


def _settle_gateway(async_session_maker, booking_id, segment_id, stripe, now):
    async def _run():
        async with async_session_maker() as session:
            booking = await booking_service.lock_booking(session, booking_id)
            segment = await ledger.get_segment(session, booking_id, segment_id=segment_id)
            outcome = await booking_service.apply_gateway_payment(
                session,
                CONFIG,
                booking,
                segment,
                amount_cents=segment.amount_cents,
                reference=f"pi_{booking_id}",
                now=now,
                stripe_client=stripe,
            )
            await session.commit()
            return outcome

    return asyncio.run(_run())


def test_late_gateway_payment_refunds_when_the_slot_was_taken(async_session_maker):
    stripe = StubStripe()
    first_id = _create(async_session_maker, worker_id=WORKER_ONE).booking.booking_id
    segment_id = _start_gateway(async_session_maker, first_id, stripe, FIXED_NOW)

    # the gateway deadline is 35 minutes out; another customer takes the worker after it lapses
    second = _create(async_session_maker, worker_id=WORKER_ONE, now=FIXED_NOW + timedelta(minutes=40))
    assert second.hold.status == statuses.HOLD_ACTIVE

    outcome = _settle_gateway(async_session_maker, first_id, segment_id, stripe, FIXED_NOW + timedelta(minutes=41))

    assert outcome.refunded_late is True
    assert outcome.fully_funded is False
    booking, hold, kinds = _state(async_session_maker, first_id)
    assert booking.status == statuses.CANCELLED
    assert booking.cancellation_reason == "slot_lost"
    assert booking.completion_otp is None
    assert hold.status == statuses.HOLD_EXPIRED
    assert "booking.confirmed" not in kinds
    assert [refund["payment_intent"] for refund in stripe.refunds] == [f"pi_{first_id}"]

    _, other_hold, _ = _state(async_session_maker, second.booking.booking_id)
    assert other_hold.status == statuses.HOLD_ACTIVE


def test_late_gateway_payment_confirms_when_the_slot_is_still_free(async_session_maker):
    stripe = StubStripe()
    booking_id = _create(async_session_maker, worker_id=WORKER_ONE).booking.booking_id
    segment_id = _start_gateway(async_session_maker, booking_id, stripe, FIXED_NOW)

    outcome = _settle_gateway(async_session_maker, booking_id, segment_id, stripe, FIXED_NOW + timedelta(minutes=41))

    assert outcome.fully_funded is True
    assert outcome.refunded_late is False
    booking, hold, _ = _state(async_session_maker, booking_id)
    assert booking.status == statuses.CONFIRMED
    assert hold.status == statuses.HOLD_PROMOTED
    assert stripe.refunds == []


def test_second_of_two_interleaved_holds_conflicts(async_session_maker):
    async def _place(session, token):
        booking = Booking(
            customer_id="cust-1",
            service_id=CLEANING_SERVICE_ID,
            area_id=AREA_ID,
            preferred_worker_id=WORKER_ONE,
            starts_at=token.starts_at,
            ends_at=token.ends_at,
            duration_minutes=token.duration_minutes,
            status=statuses.HELD,
            total_cents=100_000,
            currency="inr",
            payment_status=statuses.PAYMENT_UNPAID,
        )
        session.add(booking)
        await session.flush()
        return await holds.create_hold(session, CONFIG, token, booking_id=booking.booking_id, now=FIXED_NOW)

    async def _run():
        async with async_session_maker() as first, async_session_maker() as second:
            # both requests see a free slot before either reserves it
            tokens = [
                await slots.ensure_slot(
                    session,
                    CONFIG,
                    service_id=CLEANING_SERVICE_ID,
                    area_id=AREA_ID,
                    starts_at=fixed_start(1, 10),
                    worker_id=WORKER_ONE,
                    now=FIXED_NOW,
                )
                for session in (first, second)
            ]
            await _place(first, tokens[0])
            await first.commit()

            with pytest.raises(SlotConflict):
                await _place(second, tokens[1])
            await second.rollback()

        async with async_session_maker() as session:
            live = await session.scalars(select(SlotHold).where(SlotHold.worker_id == WORKER_ONE))
            return [hold.status for hold in live]

    assert asyncio.run(_run()) == [statuses.HOLD_ACTIVE]


def test_sweep_skips_a_booking_whose_payment_started_after_selection(async_session_maker, monkeypatch):
    booking_id = _create(async_session_maker).booking.booking_id
    original_lock = booking_service.lock_booking

    async def _lock_after_payment_started(session, locked_id):
        # the customer starts paying between the sweep's selection and its row lock
        async with async_session_maker() as other:
            booking = await original_lock(other, locked_id)
            await booking_service.mark_payment_initiated(
                other, CONFIG, booking, method="wallet", now=FIXED_NOW + timedelta(minutes=6)
            )
            await other.commit()
        return await original_lock(session, locked_id)

    monkeypatch.setattr(booking_service, "lock_booking", _lock_after_payment_started)
    counts = asyncio.run(booking_service.expire_stale_holds(async_session_maker, now=FIXED_NOW + timedelta(minutes=8)))

    assert counts == {"expired": 0, "cancelled": 0, "skipped": 1, "failed": 0}
    booking, hold, kinds = _state(async_session_maker, booking_id)
    assert booking.status == statuses.PENDING_PAYMENT
    assert as_utc(booking.payment_expires_at) == FIXED_NOW + timedelta(minutes=6 + 30)
    assert hold.status == statuses.HOLD_ACTIVE
    assert set(kinds) == {"booking.held", "booking.pending_payment"}
