import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.api.identity import UserIdentity, require_customer
from servicebook.dependencies import get_config, get_db_session, get_stripe_client
from servicebook.domain.bookings import holds
from servicebook.domain.bookings import quotes as quote_service
from servicebook.domain.bookings import schemas as booking_schemas
from servicebook.domain.bookings import service as booking_service
from servicebook.domain.bookings import slots as slot_service
from servicebook.domain.config.service import ConfigSnapshot
from servicebook.domain.errors import InsufficientWalletBalance
from servicebook.domain.payments import schemas as payment_schemas
from servicebook.domain.payments import service as ledger
from servicebook.infra.db import utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


def _payment_response(outcome: booking_service.PaymentOutcome) -> payment_schemas.PaymentResponse:
    checkout = outcome.checkout
    return payment_schemas.PaymentResponse(
        booking_id=outcome.booking.booking_id,
        booking_status=outcome.booking.status,
        payment_status=outcome.booking.payment_status,
        segment=payment_schemas.PaymentSegmentResponse.from_model(outcome.segment),
        checkout_url=checkout.checkout_url if checkout else None,
        checkout_session_id=checkout.checkout_session_id if checkout else None,
        checkout_expires_at=checkout.expires_at if checkout else None,
        fully_funded=outcome.fully_funded,
    )


@router.get("/v1/slots", response_model=booking_schemas.SlotListResponse)
async def get_slots(
    service_id: int = Query(...),
    area_id: int = Query(...),
    day: date = Query(..., alias="date"),
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
) -> booking_schemas.SlotListResponse:
    day_slots = await slot_service.list_day_slots(
        session, config, service_id=service_id, area_id=area_id, day=day
    )
    return booking_schemas.SlotListResponse(
        service_id=service_id,
        area_id=area_id,
        date=day,
        slots=[booking_schemas.DaySlotResponse.from_slot(slot) for slot in day_slots],
    )


@router.post("/v1/bookings", response_model=booking_schemas.BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: booking_schemas.BookingCreateRequest,
    identity: UserIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
) -> booking_schemas.BookingResponse:
    created = await booking_service.create_booking(
        session,
        config,
        customer_id=identity.subject,
        service_id=payload.service_id,
        area_id=payload.area_id,
        starts_at=payload.normalized_start(),
        preferred_worker_id=payload.preferred_worker_id,
        address=payload.address,
        latitude=payload.latitude,
        longitude=payload.longitude,
    )
    await session.commit()
    return booking_schemas.BookingResponse.from_model(created.booking, hold=created.hold)


@router.post("/v1/bookings/with-payment", response_model=payment_schemas.PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_booking_with_payment(
    payload: booking_schemas.BookingWithPaymentRequest,
    identity: UserIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
    stripe_client=Depends(get_stripe_client),
) -> payment_schemas.PaymentResponse:
    now = utcnow()
    created = await booking_service.create_booking(
        session,
        config,
        customer_id=identity.subject,
        service_id=payload.service_id,
        area_id=payload.area_id,
        starts_at=payload.normalized_start(),
        preferred_worker_id=payload.preferred_worker_id,
        address=payload.address,
        latitude=payload.latitude,
        longitude=payload.longitude,
        now=now,
    )
    outcome = await booking_service.pay_booking_segment(
        session,
        config,
        created.booking,
        segment_number=created.segments[0].segment_number,
        method=payload.payment_method,
        stripe_client=stripe_client,
        now=now,
    )
    await session.commit()
    return _payment_response(outcome)


@router.post("/v1/bookings/verify-payment", response_model=payment_schemas.PaymentResponse)
async def verify_payment(
    payload: payment_schemas.VerifyPaymentRequest,
    identity: UserIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
    stripe_client=Depends(get_stripe_client),
) -> payment_schemas.PaymentResponse:
    outcome = await booking_service.verify_gateway_payment(
        session,
        config,
        checkout_session_id=payload.checkout_session_id,
        customer_id=identity.subject,
        stripe_client=stripe_client,
        now=utcnow(),
    )
    await session.commit()
    return _payment_response(outcome)


@router.get("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingResponse)
async def get_booking(
    booking_id: str,
    identity: UserIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.get_customer_booking(session, booking_id, identity.subject)
    hold = await holds.get_hold(session, booking_id)
    return booking_schemas.BookingResponse.from_model(booking, hold=hold)


@router.put("/v1/bookings/{booking_id}/cancel", response_model=booking_schemas.CancellationResponse)
async def cancel_booking(
    booking_id: str,
    payload: booking_schemas.CancelBookingRequest | None = None,
    identity: UserIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
    stripe_client=Depends(get_stripe_client),
) -> booking_schemas.CancellationResponse:
    await booking_service.get_customer_booking(session, booking_id, identity.subject)
    booking = await booking_service.lock_booking(session, booking_id)
    result = await booking_service.cancel_booking(
        session,
        config,
        booking,
        actor=f"customer:{identity.subject}",
        reason=payload.reason if payload else None,
        now=utcnow(),
        stripe_client=stripe_client,
    )
    await session.commit()
    return booking_schemas.CancellationResponse(
        booking=booking_schemas.BookingResponse.from_model(booking),
        refund_cents=result.refund_cents,
        fee_cents=result.fee_cents,
        within_free_window=result.within_free_window,
        refund_failures=result.refund_failures,
    )


@router.get("/v1/bookings/{booking_id}/payment-segments", response_model=payment_schemas.PaymentSegmentListResponse)
async def list_payment_segments(
    booking_id: str,
    identity: UserIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> payment_schemas.PaymentSegmentListResponse:
    booking = await booking_service.get_customer_booking(session, booking_id, identity.subject)
    segments = await ledger.list_segments(session, booking_id)
    return payment_schemas.PaymentSegmentListResponse(
        booking_id=booking_id,
        total_cents=booking.total_cents,
        paid_cents=ledger.paid_cents(segments),
        payment_status=booking.payment_status,
        segments=[payment_schemas.PaymentSegmentResponse.from_model(segment) for segment in segments],
    )


@router.post("/v1/bookings/{booking_id}/payment-segments/pay", response_model=payment_schemas.PaymentResponse)
async def pay_payment_segment(
    booking_id: str,
    payload: payment_schemas.PaySegmentRequest,
    identity: UserIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
    stripe_client=Depends(get_stripe_client),
) -> payment_schemas.PaymentResponse:
    await booking_service.get_customer_booking(session, booking_id, identity.subject)
    booking = await booking_service.lock_booking(session, booking_id)
    try:
        outcome = await booking_service.pay_booking_segment(
            session,
            config,
            booking,
            segment_number=payload.segment_number,
            method=payload.payment_method,
            amount_cents=payload.amount_cents,
            stripe_client=stripe_client,
            now=utcnow(),
        )
    except InsufficientWalletBalance:
        # the booking stays pending_payment until the wallet deadline
        await session.commit()
        raise
    await session.commit()
    return _payment_response(outcome)



@router.post("/v1/bookings/{booking_id}/quote/accept", response_model=booking_schemas.BookingResponse)
async def accept_quote(
    booking_id: str,
    identity: UserIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    await booking_service.get_customer_booking(session, booking_id, identity.subject)
    booking = await booking_service.lock_booking(session, booking_id)
    await quote_service.accept_quote(session, booking, actor=f"customer:{identity.subject}", now=utcnow())
    await session.commit()
    hold = await holds.get_hold(session, booking_id)
    return booking_schemas.BookingResponse.from_model(booking, hold=hold)


@router.post("/v1/bookings/{booking_id}/quote/reject", response_model=booking_schemas.CancellationResponse)
async def reject_quote(
    booking_id: str,
    payload: booking_schemas.CancelBookingRequest | None = None,
    identity: UserIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
    stripe_client=Depends(get_stripe_client),
) -> booking_schemas.CancellationResponse:
    await booking_service.get_customer_booking(session, booking_id, identity.subject)
    booking = await booking_service.lock_booking(session, booking_id)
    result = await quote_service.reject_quote(
        session,
        config,
        booking,
        actor=f"customer:{identity.subject}",
        reason=payload.reason if payload else None,
        now=utcnow(),
        stripe_client=stripe_client,
    )
    await session.commit()
    return booking_schemas.CancellationResponse(
        booking=booking_schemas.BookingResponse.from_model(booking),
        refund_cents=result.refund_cents,
        fee_cents=result.fee_cents,
        within_free_window=result.within_free_window,
        refund_failures=result.refund_failures,
    )
