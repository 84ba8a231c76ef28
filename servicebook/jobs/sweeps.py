"""Expiry sweeps shared by the job runner and the admin trigger."""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker

from servicebook.domain.bookings import service as booking_service
from servicebook.domain.workers import assignment as assignment_service


async def expire_holds(
    session_factory: async_sessionmaker, *, stripe_client: Any | None = None, now: datetime | None = None
) -> dict[str, int]:
    return await booking_service.expire_stale_holds(session_factory, now=now, stripe_client=stripe_client)


async def expire_offers(
    session_factory: async_sessionmaker, *, stripe_client: Any | None = None, now: datetime | None = None
) -> dict[str, int]:
    del stripe_client
    return await assignment_service.expire_stale_offers(session_factory, now=now)


SWEEPS: dict[str, Callable[..., Awaitable[dict[str, int]]]] = {
    "expire-holds": expire_holds,
    "expire-offers": expire_offers,
}
