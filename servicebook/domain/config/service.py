"""Operational parameters read by every booking decision.

Values live in ``admin_configs`` as strings with a declared type. They are
parsed into an immutable :class:`ConfigSnapshot` that callers load once per
request and pass down explicitly, so an admin edit never changes the rules in
the middle of a transaction. Unparsable values fall back to the defaults.
"""

from __future__ import annotations

import logging
import time as monotonic_clock
from dataclasses import dataclass, fields
from datetime import datetime, time
from typing import Any, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.domain.config.db_models import AdminConfig
from servicebook.domain.errors import InvalidConfigValue, NotFound
from servicebook.infra.db import utcnow
from servicebook.settings import settings

logger = logging.getLogger(__name__)

TYPE_BOOL = "bool"
TYPE_INT = "int"
TYPE_STRING = "string"
CONFIG_TYPES = {TYPE_BOOL, TYPE_INT, TYPE_STRING}

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


@dataclass(frozen=True)
class ConfigDefinition:
    default: str
    type: str
    category: str
    description: str


CONFIG_DEFINITIONS: dict[str, ConfigDefinition] = {
    "working_hours_start": ConfigDefinition("09:00", TYPE_STRING, "booking", "Earliest service start (HH:MM)"),
    "working_hours_end": ConfigDefinition("22:00", TYPE_STRING, "booking", "Latest service end incl. buffer (HH:MM)"),
    "working_days": ConfigDefinition(
        "1,2,3,4,5,6,7", TYPE_STRING, "booking", "ISO weekdays open for booking (1=Monday)"
    ),
    "booking_advance_days": ConfigDefinition("3", TYPE_INT, "booking", "How many days ahead customers may book"),
    "booking_cancellation_hours": ConfigDefinition(
        "24", TYPE_INT, "booking", "Free cancellation cutoff before the scheduled start"
    ),
    "booking_buffer_time_minutes": ConfigDefinition(
        "30", TYPE_INT, "booking", "Idle time appended to each worker assignment"
    ),
    "booking_hold_time_minutes": ConfigDefinition("7", TYPE_INT, "booking", "Lifetime of an unpaid slot hold"),
    "wallet_payment_timeout_minutes": ConfigDefinition(
        "30", TYPE_INT, "payment", "Deadline for completing a wallet payment"
    ),
    "auto_assign_workers_on_booking": ConfigDefinition(
        "true", TYPE_BOOL, "worker", "Dispatch a worker as soon as a booking is fully paid"
    ),
    "worker_offer_timeout_minutes": ConfigDefinition(
        "15", TYPE_INT, "worker", "How long a worker has to accept an offer"
    ),
    "booking_cancellation_fee_percent": ConfigDefinition(
        "10", TYPE_INT, "payment", "Share of the paid amount kept on late cancellation"
    ),
    "quote_acceptance_minutes": ConfigDefinition(
        "60", TYPE_INT, "payment", "How long a customer has to accept a quoted payment plan"
    ),
}


@dataclass(frozen=True)
class ConfigSnapshot:
    working_hours_start: time = time(9, 0)
    working_hours_end: time = time(22, 0)
    working_days: frozenset[int] = frozenset(range(1, 8))
    booking_advance_days: int = 3
    booking_cancellation_hours: int = 24
    booking_buffer_time_minutes: int = 30
    booking_hold_time_minutes: int = 7
    wallet_payment_timeout_minutes: int = 30
    auto_assign_workers_on_booking: bool = True
    worker_offer_timeout_minutes: int = 15
    booking_cancellation_fee_percent: int = 10
    quote_acceptance_minutes: int = 60
    loaded_at: datetime | None = None


def _parse_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_int(raw: str) -> int:
    return int(raw.strip())


def _parse_clock(raw: str) -> time:
    hours, _, minutes = raw.strip().partition(":")
    return time(int(hours), int(minutes or 0))


def _parse_days(raw: str) -> frozenset[int]:
    days = frozenset(int(part) for part in raw.split(",") if part.strip())
    if not days or any(day < 1 or day > 7 for day in days):
        raise ValueError(f"weekdays must be within 1..7: {raw!r}")
    return days


def _at_least(minimum: int) -> Callable[[int], int]:
    def _check(value: int) -> int:
        if value < minimum:
            raise ValueError(f"must be >= {minimum}")
        return value

    return _check


def _percent(value: int) -> int:
    if value < 0 or value > 100:
        raise ValueError("must be between 0 and 100")
    return value


_PARSERS: dict[str, Callable[[str], Any]] = {
    "working_hours_start": _parse_clock,
    "working_hours_end": _parse_clock,
    "working_days": _parse_days,
    "booking_advance_days": lambda raw: _at_least(0)(_parse_int(raw)),
    "booking_cancellation_hours": lambda raw: _at_least(0)(_parse_int(raw)),
    "booking_buffer_time_minutes": lambda raw: _at_least(0)(_parse_int(raw)),
    "booking_hold_time_minutes": lambda raw: _at_least(1)(_parse_int(raw)),
    "wallet_payment_timeout_minutes": lambda raw: _at_least(1)(_parse_int(raw)),
    "auto_assign_workers_on_booking": _parse_bool,
    "worker_offer_timeout_minutes": lambda raw: _at_least(1)(_parse_int(raw)),
    "booking_cancellation_fee_percent": lambda raw: _percent(_parse_int(raw)),
    "quote_acceptance_minutes": lambda raw: _at_least(1)(_parse_int(raw)),
}


def parse_config_value(key: str, raw: str, declared_type: str | None = None) -> Any:
    definition = CONFIG_DEFINITIONS[key]
    if declared_type is not None and declared_type != definition.type:
        raise ValueError(f"declared type {declared_type!r} does not match {definition.type!r}")
    return _PARSERS[key](raw)


def build_snapshot(values: Mapping[str, tuple[str, str | None]], *, loaded_at: datetime | None = None) -> ConfigSnapshot:
    """Parse raw ``{key: (value, type)}`` pairs; never raises."""

    parsed: dict[str, Any] = {}
    for key in CONFIG_DEFINITIONS:
        if key not in values:
            continue
        raw, declared_type = values[key]
        try:
            parsed[key] = parse_config_value(key, raw, declared_type)
        except (TypeError, ValueError) as exc:
            logger.warning(
                "admin_config_invalid",
                extra={"extra": {"key": key, "value": raw, "type": declared_type, "reason": str(exc)}},
            )

    defaults = ConfigSnapshot()
    start = parsed.get("working_hours_start", defaults.working_hours_start)
    end = parsed.get("working_hours_end", defaults.working_hours_end)
    if start >= end:
        logger.warning(
            "admin_config_invalid",
            extra={"extra": {"key": "working_hours", "reason": "start must be before end"}},
        )
        parsed.pop("working_hours_start", None)
        parsed.pop("working_hours_end", None)

    known = {field.name for field in fields(ConfigSnapshot)}
    return ConfigSnapshot(loaded_at=loaded_at, **{key: value for key, value in parsed.items() if key in known})


async def load_raw_values(session: AsyncSession) -> dict[str, tuple[str, str | None]]:
    result = await session.execute(select(AdminConfig).where(AdminConfig.is_active.is_(True)))
    return {row.key: (row.value, row.type) for row in result.scalars().all()}


async def load_snapshot(session: AsyncSession) -> ConfigSnapshot:
    return build_snapshot(await load_raw_values(session), loaded_at=utcnow())


class ConfigProvider:
    """Caches the parsed snapshot for ``settings.config_cache_ttl_seconds``."""

    def __init__(self) -> None:
        self._snapshot: ConfigSnapshot | None = None
        self._loaded_monotonic = 0.0

    async def get(self, session: AsyncSession) -> ConfigSnapshot:
        ttl = settings.config_cache_ttl_seconds
        now = monotonic_clock.monotonic()
        if self._snapshot is not None and ttl > 0 and now - self._loaded_monotonic < ttl:
            return self._snapshot
        snapshot = await load_snapshot(session)
        self._snapshot = snapshot
        self._loaded_monotonic = now
        return snapshot

    def invalidate(self) -> None:
        self._snapshot = None
        self._loaded_monotonic = 0.0


config_provider = ConfigProvider()


@dataclass
class EffectiveConfig:
    key: str
    value: str
    type: str
    category: str
    description: str
    is_default: bool


async def list_configs(session: AsyncSession) -> list[EffectiveConfig]:
    raw_values = await load_raw_values(session)
    entries: list[EffectiveConfig] = []
    for key, definition in CONFIG_DEFINITIONS.items():
        stored = raw_values.get(key)
        usable = False
        if stored is not None:
            try:
                parse_config_value(key, stored[0], stored[1])
                usable = True
            except (TypeError, ValueError):
                usable = False
        entries.append(
            EffectiveConfig(
                key=key,
                value=stored[0] if usable else definition.default,
                type=definition.type,
                category=definition.category,
                description=definition.description,
                is_default=not usable,
            )
        )
    return entries


async def set_config_value(
    session: AsyncSession, key: str, value: str, *, updated_by: str | None = None
) -> AdminConfig:
    definition = CONFIG_DEFINITIONS.get(key)
    if definition is None:
        raise NotFound(f"Unknown config key {key}", resource="admin_config", key=key)
    try:
        parse_config_value(key, value)
    except (TypeError, ValueError) as exc:
        raise InvalidConfigValue(str(exc), key=key, expected_type=definition.type) from exc

    record = await session.get(AdminConfig, key)
    if record is None:
        record = AdminConfig(
            key=key,
            value=value,
            type=definition.type,
            category=definition.category,
            description=definition.description,
        )
        session.add(record)
    record.value = value
    record.type = definition.type
    record.is_active = True
    record.updated_by = updated_by
    await session.flush()
    config_provider.invalidate()
    logger.info("admin_config_updated", extra={"extra": {"key": key, "value": value, "updated_by": updated_by}})
    return record
