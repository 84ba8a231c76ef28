from __future__ import annotations

import hashlib
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.domain.bookings import service as booking_service
from servicebook.domain.config.service import ConfigSnapshot, config_provider
from servicebook.domain.errors import DuplicateWebhook, NotFound, PaymentMismatch
from servicebook.domain.payments import service as ledger
from servicebook.domain.payments import statuses as payment_statuses
from servicebook.domain.payments.db_models import GatewayEvent
from servicebook.infra import stripe_client as stripe_infra
from servicebook.infra.db import get_db_session, utcnow
from servicebook.infra.metrics import metrics
from servicebook.infra.stripe_client import safe_get
from servicebook.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)

PAID_EVENTS = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
FAILED_EVENTS = {"checkout.session.async_payment_failed", "payment_intent.payment_failed"}
EXPIRED_EVENTS = {"checkout.session.expired"}


def _segment_number(metadata: Any) -> int | None:
    raw = safe_get(metadata, "segment_number")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


async def _locate_segment(session: AsyncSession, payload_object: Any, event_type: str):
    metadata = safe_get(payload_object, "metadata", {}) or {}
    booking_id = safe_get(metadata, "booking_id")
    number = _segment_number(metadata)
    if event_type.startswith("checkout.session") and booking_id is None:
        segment = await booking_service.find_segment_by_checkout(session, str(safe_get(payload_object, "id")))
        if segment is not None:
            booking_id, number = segment.booking_id, segment.segment_number
    if not booking_id or number is None:
        return None, None
    try:
        booking = await booking_service.lock_booking(session, str(booking_id))
        segment = await ledger.get_segment(session, booking.booking_id, segment_number=number)
    except NotFound:
        return None, None
    return booking, segment


async def _handle_segment_event(
    session: AsyncSession,
    config: ConfigSnapshot,
    event: Any,
    stripe_client: Any,
) -> bool:
    event_type = str(safe_get(event, "type") or "")
    data = safe_get(event, "data", {}) or {}
    payload_object = safe_get(data, "object", {}) or {}
    booking, segment = await _locate_segment(session, payload_object, event_type)
    if booking is None:
        logger.info(
            "stripe_webhook_ignored",
            extra={"extra": {"reason": "unknown_segment", "event_type": event_type}},
        )
        return False
    now = utcnow()

    if event_type in PAID_EVENTS:
        if safe_get(payload_object, "payment_status") != "paid":
            return False
        reference = safe_get(payload_object, "payment_intent") or safe_get(payload_object, "id")
        amount = safe_get(payload_object, "amount_total")
        try:
            await booking_service.apply_gateway_payment(
                session,
                config,
                booking,
                segment,
                amount_cents=int(amount) if amount is not None else segment.amount_cents,
                reference=str(reference),
                now=now,
                stripe_client=stripe_client,
            )
        except DuplicateWebhook:
            logger.info(
                "gateway_webhook_duplicate",
                extra={"extra": {"booking_id": booking.booking_id, "segment_number": segment.segment_number}},
            )
            return False
        except PaymentMismatch as exc:
            await ledger.record_segment_failure(session, booking, segment, reason="amount_mismatch")
            logger.warning(
                "gateway_amount_mismatch",
                extra={"extra": {"booking_id": booking.booking_id, **exc.context}},
            )
        return True

    if event_type in FAILED_EVENTS:
        error = safe_get(payload_object, "last_payment_error", {}) or {}
        reason = safe_get(error, "code") or "payment_failed"
        await ledger.record_segment_failure(session, booking, segment, reason=str(reason))
        return True

    if event_type in EXPIRED_EVENTS:
        return await booking_service.expire_gateway_checkout(
            session,
            booking,
            segment,
            checkout_session_id=str(safe_get(payload_object, "id")),
            now=now,
            stripe_client=stripe_client,
        )

    return False


async def _record_event_error(
    session: AsyncSession, event_id: str, event_type: str | None, payload_hash: str, exc: Exception
) -> None:
    async with session.begin():
        record = await session.get(GatewayEvent, event_id)
        if record is None:
            record = GatewayEvent(event_id=event_id, event_type=event_type, payload_hash=payload_hash, status="")
            session.add(record)
        record.status = payment_statuses.GATEWAY_EVENT_ERROR
        record.last_error = type(exc).__name__


@router.post("/v1/payments/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    http_request: Request, session: AsyncSession = Depends(get_db_session)
) -> dict[str, bool]:
    payload = await http_request.body()
    sig_header = http_request.headers.get("Stripe-Signature")
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook disabled")

    stripe_client = stripe_infra.resolve_client(http_request.app.state)
    try:
        event = stripe_client.verify_webhook(payload=payload, signature=sig_header)
    except Exception as exc:  # noqa: BLE001
        metrics.record_webhook("invalid")
        logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe webhook") from exc

    event_id = safe_get(event, "id")
    if not event_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id")
    event_id = str(event_id)
    event_type = safe_get(event, "type")
    payload_hash = hashlib.sha256(payload or b"").hexdigest()

    try:
        async with session.begin():
            existing = await session.scalar(
                select(GatewayEvent).where(GatewayEvent.event_id == event_id).with_for_update()
            )
            if existing:
                if existing.payload_hash != payload_hash:
                    logger.warning("stripe_webhook_replayed_mismatch", extra={"extra": {"event_id": event_id}})
                    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Event payload mismatch")
                if existing.status != payment_statuses.GATEWAY_EVENT_ERROR:
                    metrics.record_webhook("duplicate")
                    logger.info(
                        "gateway_webhook_duplicate",
                        extra={"extra": {"event_id": event_id, "status": existing.status}},
                    )
                    return {"received": True, "processed": False}
                record = existing
                record.status = payment_statuses.GATEWAY_EVENT_PROCESSING
            else:
                record = GatewayEvent(
                    event_id=event_id,
                    event_type=event_type,
                    status=payment_statuses.GATEWAY_EVENT_PROCESSING,
                    payload_hash=payload_hash,
                )
                session.add(record)

            config = await config_provider.get(session)
            processed = await _handle_segment_event(session, config, event, stripe_client)
            record.status = (
                payment_statuses.GATEWAY_EVENT_SUCCEEDED if processed else payment_statuses.GATEWAY_EVENT_IGNORED
            )
            record.last_error = None
    except HTTPException:
        raise
    except Exception as exc:  # noqa: BLE001
        metrics.record_webhook("error")
        logger.exception(
            "stripe_webhook_error",
            extra={"extra": {"event_id": event_id, "reason": type(exc).__name__}},
        )
        await _record_event_error(session, event_id, event_type, payload_hash, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe webhook processing error",
        ) from exc

    metrics.record_webhook("processed" if processed else "ignored")
    return {"received": True, "processed": processed}
