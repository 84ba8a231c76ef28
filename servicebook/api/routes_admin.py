import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.api.admin_auth import (
    AdminIdentity,
    require_admin,
    require_dispatch,
    require_finance,
    require_viewer,
)
from servicebook.dependencies import get_config, get_db_session, get_stripe_client
from servicebook.domain.admin_audit import service as audit_service
from servicebook.domain.bookings import holds
from servicebook.domain.bookings import quotes as quote_service
from servicebook.domain.bookings import schemas as booking_schemas
from servicebook.domain.bookings import service as booking_service
from servicebook.domain.config import schemas as config_schemas
from servicebook.domain.config import service as config_service
from servicebook.domain.config.service import ConfigSnapshot
from servicebook.domain.errors import NoAvailableWorker, NotFound
from servicebook.domain.outbox import service as outbox_service
from servicebook.domain.payments import schemas as payment_schemas
from servicebook.domain.payments import service as ledger
from servicebook.domain.payments.db_models import PaymentSegment
from servicebook.domain.workers import assignment as assignment_service
from servicebook.domain.workers import schemas as worker_schemas
from servicebook.infra.db import as_utc, utcnow
from servicebook.jobs import sweeps

router = APIRouter()
logger = logging.getLogger(__name__)


class AdminReasonRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=255)


class AuditEntryResponse(BaseModel):
    action: str
    actor: str
    role: str
    reason: str | None = None
    created_at: datetime


class OutboxEventResponse(BaseModel):
    event_id: str
    booking_id: str | None = None
    kind: str
    payload: dict[str, Any]
    status: str
    created_at: datetime


class OutboxAckRequest(BaseModel):
    event_ids: list[str] = Field(min_length=1)


class BookingDetailResponse(BaseModel):
    booking: booking_schemas.BookingResponse
    segments: list[payment_schemas.PaymentSegmentResponse]
    ledger: list[payment_schemas.LedgerEntryResponse]
    assignments: list[worker_schemas.AssignmentResponse]
    events: list[OutboxEventResponse]
    audit: list[AuditEntryResponse]


def _outbox_response(event) -> OutboxEventResponse:
    return OutboxEventResponse(
        event_id=event.event_id,
        booking_id=event.booking_id,
        kind=event.kind,
        payload=event.payload_json or {},
        status=event.status,
        created_at=as_utc(event.created_at),
    )


def _snapshot(booking) -> dict[str, Any]:
    return {
        "status": booking.status,
        "worker_id": booking.worker_id,
        "payment_status": booking.payment_status,
        "dispatch_flag": booking.dispatch_flag,
    }


@router.get("/v1/admin/bookings", response_model=list[booking_schemas.BookingResponse])
async def list_bookings(
    status: str | None = Query(None),
    flag: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
    identity: AdminIdentity = Depends(require_viewer),
) -> list[booking_schemas.BookingResponse]:
    del identity
    bookings = await booking_service.list_bookings(session, status=status, flag=flag, limit=limit)
    return [booking_schemas.BookingResponse.from_model(booking, include_otp=False) for booking in bookings]


@router.get("/v1/admin/bookings/{booking_id}", response_model=BookingDetailResponse)
async def get_booking_detail(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    identity: AdminIdentity = Depends(require_viewer),
) -> BookingDetailResponse:
    del identity
    booking = await booking_service.lock_booking(session, booking_id)
    segments = await ledger.list_segments(session, booking_id)
    entries = await ledger.list_ledger_entries(session, booking_id)
    assignments = await assignment_service.list_booking_assignments(session, booking_id)
    events = await outbox_service.events_for_booking(session, booking_id)
    audit = await audit_service.list_booking_actions(session, booking_id)
    return BookingDetailResponse(
        booking=booking_schemas.BookingResponse.from_model(booking, include_otp=False),
        segments=[payment_schemas.PaymentSegmentResponse.from_model(segment) for segment in segments],
        ledger=[payment_schemas.LedgerEntryResponse.from_model(entry) for entry in entries],
        assignments=[worker_schemas.AssignmentResponse.from_model(item) for item in assignments],
        events=[_outbox_response(event) for event in events],
        audit=[
            AuditEntryResponse(
                action=entry.action,
                actor=entry.actor,
                role=entry.role,
                reason=entry.reason,
                created_at=as_utc(entry.created_at),
            )
            for entry in audit
        ],
    )


@router.post("/v1/admin/bookings/{booking_id}/assign-worker", response_model=worker_schemas.AssignmentResponse)
async def assign_worker(
    booking_id: str,
    payload: worker_schemas.AssignWorkerRequest,
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
    identity: AdminIdentity = Depends(require_dispatch),
) -> worker_schemas.AssignmentResponse:
    booking = await booking_service.lock_booking(session, booking_id)
    before = _snapshot(booking)
    assignment = await assignment_service.force_assign_worker(
        session,
        config,
        booking,
        worker_id=payload.worker_id,
        actor=f"admin:{identity.username}",
        now=utcnow(),
        notes=payload.notes,
    )
    await audit_service.record_action(
        session,
        identity=identity,
        action="assign_worker",
        resource_type="booking",
        resource_id=booking_id,
        booking_id=booking_id,
        before=before,
        after=_snapshot(booking),
    )
    await session.commit()
    return worker_schemas.AssignmentResponse.from_model(assignment)


@router.post("/v1/admin/bookings/{booking_id}/dispatch", response_model=worker_schemas.AssignmentResponse)
async def dispatch_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
    identity: AdminIdentity = Depends(require_dispatch),
) -> worker_schemas.AssignmentResponse:
    booking = await booking_service.lock_booking(session, booking_id)
    before = _snapshot(booking)
    try:
        assignment = await assignment_service.dispatch_booking(session, config, booking, now=utcnow())
    except NoAvailableWorker:
        # keep the unassignable flag and its event
        await session.commit()
        raise
    await audit_service.record_action(
        session,
        identity=identity,
        action="dispatch",
        resource_type="booking",
        resource_id=booking_id,
        booking_id=booking_id,
        before=before,
        after=_snapshot(booking),
    )
    await session.commit()
    return worker_schemas.AssignmentResponse.from_model(assignment)


@router.put("/v1/admin/bookings/{booking_id}/cancel", response_model=booking_schemas.CancellationResponse)
async def cancel_booking(
    booking_id: str,
    payload: AdminReasonRequest,
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
    identity: AdminIdentity = Depends(require_dispatch),
    stripe_client=Depends(get_stripe_client),
) -> booking_schemas.CancellationResponse:
    booking = await booking_service.lock_booking(session, booking_id)
    before = _snapshot(booking)
    result = await booking_service.cancel_booking(
        session,
        config,
        booking,
        actor=f"admin:{identity.username}",
        reason=payload.reason,
        now=utcnow(),
        stripe_client=stripe_client,
        waive_fee=True,
    )
    await audit_service.record_action(
        session,
        identity=identity,
        action="cancel_booking",
        resource_type="booking",
        resource_id=booking_id,
        booking_id=booking_id,
        reason=payload.reason,
        before=before,
        after=_snapshot(booking),
    )
    await session.commit()
    return booking_schemas.CancellationResponse(
        booking=booking_schemas.BookingResponse.from_model(booking, include_otp=False),
        refund_cents=result.refund_cents,
        fee_cents=result.fee_cents,
        within_free_window=result.within_free_window,
        refund_failures=result.refund_failures,
    )


@router.post("/v1/admin/bookings/{booking_id}/reject", response_model=booking_schemas.CancellationResponse)
async def reject_booking(
    booking_id: str,
    payload: AdminReasonRequest,
    session: AsyncSession = Depends(get_db_session),
    identity: AdminIdentity = Depends(require_dispatch),
    stripe_client=Depends(get_stripe_client),
) -> booking_schemas.CancellationResponse:
    booking = await booking_service.lock_booking(session, booking_id)
    before = _snapshot(booking)
    result = await booking_service.reject_booking(
        session,
        booking,
        actor=f"admin:{identity.username}",
        reason=payload.reason,
        now=utcnow(),
        stripe_client=stripe_client,
    )
    await audit_service.record_action(
        session,
        identity=identity,
        action="reject_booking",
        resource_type="booking",
        resource_id=booking_id,
        booking_id=booking_id,
        reason=payload.reason,
        before=before,
        after=_snapshot(booking),
    )
    await session.commit()
    return booking_schemas.CancellationResponse(
        booking=booking_schemas.BookingResponse.from_model(booking, include_otp=False),
        refund_cents=result.refund_cents,
        fee_cents=0,
        within_free_window=True,
        refund_failures=result.refund_failures,
    )


@router.put("/v1/admin/bookings/{booking_id}/quote", response_model=payment_schemas.QuoteResponse)
async def provide_quote(
    booking_id: str,
    payload: payment_schemas.QuoteRequest,
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
    identity: AdminIdentity = Depends(require_finance),
) -> payment_schemas.QuoteResponse:
    booking = await booking_service.lock_booking(session, booking_id)
    before = {**_snapshot(booking), "total_cents": booking.total_cents, "quote_status": booking.quote_status}
    segments = await quote_service.provide_quote(
        session,
        config,
        booking,
        amounts=[item.amount_cents for item in payload.segments],
        segment_notes=[item.notes for item in payload.segments],
        notes=payload.notes,
        actor=f"admin:{identity.username}",
        now=utcnow(),
    )
    await audit_service.record_action(
        session,
        identity=identity,
        action="provide_quote",
        resource_type="booking",
        resource_id=booking_id,
        booking_id=booking_id,
        before=before,
        after={**_snapshot(booking), "total_cents": booking.total_cents, "quote_status": booking.quote_status},
    )
    await session.commit()
    hold = await holds.get_hold(session, booking_id)
    return payment_schemas.QuoteResponse(
        booking_id=booking_id,
        quote_status=booking.quote_status,
        quote_notes=booking.quote_notes,
        total_cents=booking.total_cents,
        hold_expires_at=as_utc(hold.expires_at) if hold is not None else None,
        segments=[payment_schemas.PaymentSegmentResponse.from_model(segment) for segment in segments],
    )


@router.post("/v1/admin/payment-segments/{segment_id}/refund", response_model=payment_schemas.PaymentSegmentResponse)
async def refund_segment(
    segment_id: str,
    payload: payment_schemas.SegmentRefundRequest,
    session: AsyncSession = Depends(get_db_session),
    identity: AdminIdentity = Depends(require_finance),
    stripe_client=Depends(get_stripe_client),
) -> payment_schemas.PaymentSegmentResponse:
    found = await session.get(PaymentSegment, segment_id)
    if found is None:
        raise NotFound("Payment segment not found", resource="payment_segment", segment_id=segment_id)
    booking = await booking_service.lock_booking(session, found.booking_id)
    segment = await ledger.get_segment(session, booking.booking_id, segment_id=segment_id)
    before = {"status": segment.status, "refunded_cents": segment.refunded_cents}
    outcome = await booking_service.refund_paid_segment(
        session,
        booking,
        segment,
        actor=f"admin:{identity.username}",
        reason=payload.reason,
        amount_cents=payload.amount_cents,
        stripe_client=stripe_client,
    )
    await audit_service.record_action(
        session,
        identity=identity,
        action="refund_segment" if outcome.succeeded else "refund_segment_failed",
        resource_type="payment_segment",
        resource_id=segment_id,
        booking_id=booking.booking_id,
        reason=payload.reason,
        before=before,
        after={"status": segment.status, "refunded_cents": segment.refunded_cents},
    )
    await session.commit()
    return payment_schemas.PaymentSegmentResponse.from_model(segment)


@router.get("/v1/admin/configs", response_model=list[config_schemas.ConfigEntryResponse])
async def list_configs(
    session: AsyncSession = Depends(get_db_session),
    identity: AdminIdentity = Depends(require_viewer),
) -> list[config_schemas.ConfigEntryResponse]:
    del identity
    entries = await config_service.list_configs(session)
    return [config_schemas.ConfigEntryResponse.from_entry(entry) for entry in entries]


@router.put("/v1/admin/configs/{key}", response_model=config_schemas.ConfigEntryResponse)
async def update_config(
    key: str,
    payload: config_schemas.ConfigUpdateRequest,
    session: AsyncSession = Depends(get_db_session),
    identity: AdminIdentity = Depends(require_admin),
) -> config_schemas.ConfigEntryResponse:
    previous = {entry.key: entry.value for entry in await config_service.list_configs(session)}.get(key)
    await config_service.set_config_value(session, key, payload.value, updated_by=identity.username)
    await audit_service.record_action(
        session,
        identity=identity,
        action="update_config",
        resource_type="admin_config",
        resource_id=key,
        before={"value": previous},
        after={"value": payload.value},
    )
    await session.commit()
    entries = await config_service.list_configs(session)
    entry = next(item for item in entries if item.key == key)
    return config_schemas.ConfigEntryResponse.from_entry(entry)


@router.get("/v1/admin/outbox", response_model=list[OutboxEventResponse])
async def list_outbox(
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
    identity: AdminIdentity = Depends(require_viewer),
) -> list[OutboxEventResponse]:
    del identity
    events = await outbox_service.list_pending_events(session, limit=limit)
    return [_outbox_response(event) for event in events]


@router.post("/v1/admin/outbox/ack")
async def acknowledge_outbox(
    payload: OutboxAckRequest,
    session: AsyncSession = Depends(get_db_session),
    identity: AdminIdentity = Depends(require_admin),
) -> dict[str, int]:
    del identity
    delivered = await outbox_service.mark_delivered(session, payload.event_ids, now=utcnow())
    await session.commit()
    return {"delivered": delivered}


@router.post("/v1/admin/sweeps/run")
async def run_sweeps(
    request: Request,
    identity: AdminIdentity = Depends(require_admin),
    stripe_client=Depends(get_stripe_client),
) -> dict[str, dict[str, int]]:
    del identity
    session_factory = request.app.state.db_session_factory
    return {
        name: await runner(session_factory, stripe_client=stripe_client)
        for name, runner in sweeps.SWEEPS.items()
    }
