from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from servicebook.domain.ops.db_models import JobHeartbeat
from servicebook.infra.db import as_utc, utcnow


async def record_heartbeat(
    session_factory: async_sessionmaker,
    name: str = "jobs-runner",
    *,
    result: dict | None = None,
) -> None:
    now = utcnow()
    async with session_factory() as session:
        heartbeat = await session.get(JobHeartbeat, name)
        if heartbeat is None:
            heartbeat = JobHeartbeat(name=name, last_heartbeat=now, updated_at=now)
            session.add(heartbeat)
        else:
            heartbeat.last_heartbeat = now
        heartbeat.last_result = result
        await session.commit()


async def heartbeat_age(session: AsyncSession, name: str = "jobs-runner", *, now: datetime | None = None) -> timedelta | None:
    heartbeat = await session.get(JobHeartbeat, name)
    if heartbeat is None:
        return None
    return (now or utcnow()) - as_utc(heartbeat.last_heartbeat)
