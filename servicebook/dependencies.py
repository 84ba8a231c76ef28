from typing import Any

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.domain.config.service import ConfigSnapshot, config_provider
from servicebook.infra.db import get_db_session
from servicebook.infra.stripe_client import StripeClient, resolve_client


async def get_config(session: AsyncSession = Depends(get_db_session)) -> ConfigSnapshot:
    """One admin-config snapshot per request."""

    return await config_provider.get(session)


def get_stripe_client(request: Request) -> StripeClient | Any:
    return resolve_client(request.app.state)


__all__ = ["get_config", "get_db_session", "get_stripe_client"]
