from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.domain.outbox.db_models import OutboxEvent
from servicebook.infra.db import utcnow

logger = logging.getLogger(__name__)

PENDING = "pending"
DELIVERED = "delivered"


async def enqueue_outbox_event(
    session: AsyncSession,
    *,
    kind: str,
    payload: dict,
    booking_id: str | None = None,
    dedupe_key: str | None = None,
) -> OutboxEvent:
    """Persist a domain event inside the caller's transaction.

    Subscribers (notifications, chat rooms) read the table; nothing is
    delivered from here. A repeated ``dedupe_key`` returns the stored row.
    """

    key = dedupe_key or f"{kind}:{uuid.uuid4()}"
    values = {
        "event_id": str(uuid.uuid4()),
        "booking_id": booking_id,
        "kind": kind,
        "payload_json": payload,
        "dedupe_key": key,
        "status": PENDING,
    }
    bind = session.get_bind()
    dialect = bind.dialect.name if bind else ""
    if dialect == "postgresql":
        stmt = pg_insert(OutboxEvent).values(**values).on_conflict_do_nothing(index_elements=["dedupe_key"])
        result = await session.execute(stmt.returning(OutboxEvent.event_id))
        created_id = result.scalar_one_or_none()
        if created_id is not None:
            return await session.get(OutboxEvent, created_id)
    else:
        existing = await session.scalar(select(OutboxEvent).where(OutboxEvent.dedupe_key == key))
        if existing is None:
            event = OutboxEvent(**values)
            session.add(event)
            await session.flush()
            return event
        return existing

    logger.info("outbox_event_deduplicated", extra={"extra": {"kind": kind, "dedupe_key": key}})
    return await session.scalar(select(OutboxEvent).where(OutboxEvent.dedupe_key == key))


async def list_pending_events(session: AsyncSession, *, limit: int = 100) -> list[OutboxEvent]:
    stmt = (
        select(OutboxEvent)
        .where(OutboxEvent.status == PENDING)
        .order_by(OutboxEvent.created_at, OutboxEvent.event_id)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def mark_delivered(session: AsyncSession, event_ids: list[str], *, now: datetime | None = None) -> int:
    if not event_ids:
        return 0
    result = await session.execute(
        update(OutboxEvent)
        .where(OutboxEvent.event_id.in_(event_ids), OutboxEvent.status == PENDING)
        .values(status=DELIVERED, delivered_at=now or utcnow())
    )
    return result.rowcount or 0


async def events_for_booking(session: AsyncSession, booking_id: str) -> list[OutboxEvent]:
    stmt = (
        select(OutboxEvent)
        .where(OutboxEvent.booking_id == booking_id)
        .order_by(OutboxEvent.created_at, OutboxEvent.event_id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
