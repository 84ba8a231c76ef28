import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from tests.conftest import (
    AREA_ID,
    CLEANING_PRICE,
    CLEANING_SERVICE_ID,
    CUSTOMER,
    CUSTOMER_WALLET,
    FIXED_NOW,
    PLUMBING_SERVICE_ID,
    WORKER_ONE,
    fixed_start,
)
from servicebook.domain.bookings import holds
from servicebook.domain.bookings import service as booking_service
from servicebook.domain.bookings import statuses
from servicebook.domain.config.service import ConfigSnapshot
from servicebook.domain.errors import (
    DuplicateWebhook,
    InsufficientWalletBalance,
    InvalidTransition,
    PaymentMismatch,
)
from servicebook.domain.payments import service as ledger
from servicebook.domain.payments import statuses as payment_statuses
from servicebook.domain.payments.db_models import Wallet
from servicebook.domain.workers import assignment as assignment_service
from servicebook.domain.workers import statuses as assignment_statuses

CONFIG = ConfigSnapshot()


def test_split_amounts():
    assert ledger.split_amounts(50_000, 30) == [15_000, 35_000]
    assert ledger.split_amounts(100, 33) == [33, 67]
    assert ledger.split_amounts(999, 50) == [500, 499]
    assert ledger.split_amounts(1_000, None) == [1_000]
    assert ledger.split_amounts(1_000, 100) == [1_000]
    assert ledger.split_amounts(1, 50) == [1]


def _create(async_session_maker, *, service_id=PLUMBING_SERVICE_ID, customer=CUSTOMER, hour=10):
    async def _run():
        async with async_session_maker() as session:
            created = await booking_service.create_booking(
                session,
                CONFIG,
                customer_id=customer,
                service_id=service_id,
                area_id=AREA_ID,
                starts_at=fixed_start(1, hour),
                now=FIXED_NOW,
            )
            await session.commit()
            return created.booking.booking_id

    return asyncio.run(_run())


def _pay(async_session_maker, booking_id, segment_number, *, config=CONFIG, amount_cents=None, minutes=1):
    async def _run():
        async with async_session_maker() as session:
            booking = await booking_service.lock_booking(session, booking_id)
            outcome = await booking_service.pay_booking_segment(
                session,
                config,
                booking,
                segment_number=segment_number,
                method="wallet",
                amount_cents=amount_cents,
                now=FIXED_NOW + timedelta(minutes=minutes),
            )
            await session.commit()
            return outcome

    return asyncio.run(_run())


def _wallet_balance(async_session_maker, customer=CUSTOMER) -> int:
    async def _run():
        async with async_session_maker() as session:
            wallet = await session.get(Wallet, customer)
            return wallet.balance_cents if wallet else 0

    return asyncio.run(_run())


def test_deposit_service_gets_two_segments(async_session_maker):
    booking_id = _create(async_session_maker)

    async def _segments():
        async with async_session_maker() as session:
            return await ledger.list_segments(session, booking_id)

    segments = asyncio.run(_segments())
    assert [(segment.segment_number, segment.amount_cents) for segment in segments] == [(1, 15_000), (2, 35_000)]
    assert all(segment.status == payment_statuses.SEGMENT_PENDING for segment in segments)


def test_partial_payment_keeps_booking_pending(async_session_maker):
    booking_id = _create(async_session_maker)

    outcome = _pay(async_session_maker, booking_id, 1)

    assert outcome.fully_funded is False
    assert outcome.segment.status == payment_statuses.SEGMENT_PAID
    assert outcome.booking.status == statuses.PENDING_PAYMENT
    assert outcome.booking.payment_status == statuses.PAYMENT_PARTIALLY_PAID
    assert _wallet_balance(async_session_maker) == CUSTOMER_WALLET - 15_000


def test_full_payment_confirms_and_dispatches(async_session_maker):
    booking_id = _create(async_session_maker)
    _pay(async_session_maker, booking_id, 1)

    outcome = _pay(async_session_maker, booking_id, 2, minutes=2)

    assert outcome.fully_funded is True
    booking = outcome.booking
    assert booking.status == statuses.CONFIRMED
    assert booking.payment_status == statuses.PAYMENT_PAID
    assert booking.payment_expires_at is None
    assert booking.completion_otp is not None and len(booking.completion_otp) == 6
    assert booking.completion_otp.isdigit()

    async def _follow_up():
        async with async_session_maker() as session:
            hold = await holds.get_hold(session, booking_id)
            offers = await assignment_service.list_booking_assignments(session, booking_id)
            entries = await ledger.list_ledger_entries(session, booking_id)
            return hold, offers, entries

    hold, offers, entries = asyncio.run(_follow_up())
    assert hold.status == statuses.HOLD_PROMOTED
    assert hold.expires_at is None
    assert [(offer.worker_id, offer.status) for offer in offers] == [(WORKER_ONE, assignment_statuses.OFFERED)]
    kinds = sorted(entry.kind for entry in entries)
    assert kinds == ["payment", "payment", "wallet_debit", "wallet_debit"]
    assert sum(entry.amount_cents for entry in entries) == 0
    assert _wallet_balance(async_session_maker) == CUSTOMER_WALLET - 50_000


def test_auto_dispatch_can_be_disabled(async_session_maker):
    manual = replace(CONFIG, auto_assign_workers_on_booking=False)
    booking_id = _create(async_session_maker, service_id=CLEANING_SERVICE_ID)

    outcome = _pay(async_session_maker, booking_id, 1, config=manual)

    assert outcome.booking.status == statuses.CONFIRMED

    async def _offers():
        async with async_session_maker() as session:
            return await assignment_service.list_booking_assignments(session, booking_id)

    assert asyncio.run(_offers()) == []


def test_paid_segment_cannot_be_paid_again(async_session_maker):
    booking_id = _create(async_session_maker)
    _pay(async_session_maker, booking_id, 1)

    with pytest.raises(InvalidTransition):
        _pay(async_session_maker, booking_id, 1, minutes=2)
    assert _wallet_balance(async_session_maker) == CUSTOMER_WALLET - 15_000


def test_wrong_amount_is_rejected(async_session_maker):
    booking_id = _create(async_session_maker)

    with pytest.raises(PaymentMismatch):
        _pay(async_session_maker, booking_id, 1, amount_cents=14_999)


def test_insufficient_wallet_balance(async_session_maker):
    booking_id = _create(async_session_maker, customer="cust-empty")

    with pytest.raises(InsufficientWalletBalance) as excinfo:
        _pay(async_session_maker, booking_id, 1)

    assert excinfo.value.context == {"balance": 0, "required": 15_000}


def test_reused_gateway_reference_is_a_duplicate(async_session_maker):
    booking_id = _create(async_session_maker)

    async def _run():
        async with async_session_maker() as session:
            booking = await booking_service.lock_booking(session, booking_id)
            first = await ledger.get_segment(session, booking_id, segment_number=1)
            await ledger.pay_segment(
                session, booking, first, amount_cents=15_000, method="gateway", reference="pi_1", now=FIXED_NOW
            )
            second = await ledger.get_segment(session, booking_id, segment_number=2)
            await ledger.pay_segment(
                session, booking, second, amount_cents=35_000, method="gateway", reference="pi_1", now=FIXED_NOW
            )

    with pytest.raises(DuplicateWebhook):
        asyncio.run(_run())


def test_failed_segment_stays_payable(async_session_maker):
    booking_id = _create(async_session_maker)

    async def _fail():
        async with async_session_maker() as session:
            booking = await booking_service.lock_booking(session, booking_id)
            segment = await ledger.get_segment(session, booking_id, segment_number=1)
            await ledger.record_segment_failure(session, booking, segment, reason="card_declined")
            await session.commit()
            return segment

    failed = asyncio.run(_fail())
    assert failed.status == payment_statuses.SEGMENT_FAILED
    assert failed.failure_reason == "card_declined"

    outcome = _pay(async_session_maker, booking_id, 1)
    assert outcome.segment.status == payment_statuses.SEGMENT_PAID
    assert outcome.segment.failure_reason is None


def test_partial_wallet_refund(async_session_maker):
    booking_id = _create(async_session_maker)
    _pay(async_session_maker, booking_id, 1)

    async def _refund():
        async with async_session_maker() as session:
            booking = await booking_service.lock_booking(session, booking_id)
            segment = await ledger.get_segment(session, booking_id, segment_number=1)
            outcome = await ledger.refund_segment(
                session, booking, segment, actor="admin:finance", reason="goodwill", amount_cents=5_000
            )
            await session.commit()
            return booking, outcome

    booking, outcome = asyncio.run(_refund())
    assert outcome.succeeded is True
    assert outcome.segment.status == payment_statuses.SEGMENT_PAID
    assert outcome.segment.refunded_cents == 5_000
    assert booking.payment_status == statuses.PAYMENT_PARTIALLY_REFUNDED
    assert _wallet_balance(async_session_maker) == CUSTOMER_WALLET - 15_000 + 5_000


def test_unpaid_segment_cannot_be_refunded(async_session_maker):
    booking_id = _create(async_session_maker)

    async def _refund():
        async with async_session_maker() as session:
            booking = await booking_service.lock_booking(session, booking_id)
            segment = await ledger.get_segment(session, booking_id, segment_number=1)
            await ledger.refund_segment(session, booking, segment, actor="admin", reason="oops")

    with pytest.raises(InvalidTransition):
        asyncio.run(_refund())


def test_wallet_balance_is_exhausted_across_bookings(async_session_maker):
    first = _create(async_session_maker, service_id=CLEANING_SERVICE_ID)
    second = _create(async_session_maker, service_id=CLEANING_SERVICE_ID)

    _pay(async_session_maker, first, 1)
    _pay(async_session_maker, second, 1)

    assert _wallet_balance(async_session_maker) == CUSTOMER_WALLET - 2 * CLEANING_PRICE

    third = _create(async_session_maker, service_id=PLUMBING_SERVICE_ID, hour=15)
    with pytest.raises(InsufficientWalletBalance):
        _pay(async_session_maker, third, 1)
    assert _wallet_balance(async_session_maker) == 0
