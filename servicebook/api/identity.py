"""Customer and worker identity taken from gateway-injected headers.

The upstream auth gateway verifies tokens and forwards the subject in
``X-User-Sub`` and a comma separated role list in ``X-User-Roles``.
"""

import logging
from dataclasses import dataclass, field

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.dependencies import get_db_session
from servicebook.domain.workers import assignment as assignment_service
from servicebook.domain.workers.db_models import Worker

logger = logging.getLogger(__name__)

ROLE_CUSTOMER = "customer"
ROLE_WORKER = "worker"


@dataclass
class UserIdentity:
    subject: str
    roles: set[str] = field(default_factory=set)


def _parse_roles(raw: str | None) -> set[str]:
    if not raw:
        return {ROLE_CUSTOMER}
    return {role.strip().lower() for role in raw.split(",") if role.strip()}


async def get_user_identity(request: Request) -> UserIdentity:
    cached: UserIdentity | None = getattr(request.state, "user_identity", None)
    if cached:
        return cached
    subject = (request.headers.get("X-User-Sub") or "").strip()
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    identity = UserIdentity(subject=subject, roles=_parse_roles(request.headers.get("X-User-Roles")))
    request.state.user_identity = identity
    return identity


async def require_customer(identity: UserIdentity = Depends(get_user_identity)) -> UserIdentity:
    if ROLE_CUSTOMER not in identity.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return identity


async def require_worker(
    identity: UserIdentity = Depends(get_user_identity),
    session: AsyncSession = Depends(get_db_session),
) -> Worker:
    if ROLE_WORKER not in identity.roles:
        logger.info("worker_access_denied", extra={"extra": {"reason": "missing_role"}})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return await assignment_service.get_worker_by_sub(session, identity.subject)
