from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.api.admin_auth import AdminIdentity, mark_explicit_audit
from servicebook.domain.admin_audit.db_models import AdminAuditLog


async def record_action(
    session: AsyncSession,
    *,
    identity: AdminIdentity,
    action: str,
    resource_type: str | None,
    resource_id: str | None,
    before: Any,
    after: Any,
    booking_id: str | None = None,
    reason: str | None = None,
) -> AdminAuditLog:
    log = AdminAuditLog(
        action=action,
        actor=identity.username,
        role=identity.role.value,
        booking_id=booking_id,
        resource_type=resource_type,
        resource_id=resource_id,
        reason=reason,
        before=before,
        after=after,
    )
    session.add(log)
    mark_explicit_audit()
    return log


async def list_booking_actions(session: AsyncSession, booking_id: str) -> list[AdminAuditLog]:
    stmt = (
        select(AdminAuditLog)
        .where(AdminAuditLog.booking_id == booking_id)
        .order_by(AdminAuditLog.created_at, AdminAuditLog.audit_id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
