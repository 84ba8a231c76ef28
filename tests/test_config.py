import asyncio
from datetime import time

import pytest

from servicebook.domain.config import service as config_service
from servicebook.domain.config.db_models import AdminConfig
from servicebook.domain.config.service import ConfigSnapshot, build_snapshot, config_provider
from servicebook.domain.errors import InvalidConfigValue, NotFound
from servicebook.settings import settings


def test_defaults_when_nothing_is_stored():
    snapshot = build_snapshot({})

    assert snapshot == ConfigSnapshot()
    assert snapshot.booking_hold_time_minutes == 7
    assert snapshot.working_days == frozenset(range(1, 8))


def test_stored_values_are_parsed_by_type():
    snapshot = build_snapshot(
        {
            "working_hours_start": ("08:30", "string"),
            "working_days": ("1,2,3,4,5", "string"),
            "booking_buffer_time_minutes": ("45", "int"),
            "auto_assign_workers_on_booking": ("off", "bool"),
        }
    )

    assert snapshot.working_hours_start == time(8, 30)
    assert snapshot.working_days == frozenset({1, 2, 3, 4, 5})
    assert snapshot.booking_buffer_time_minutes == 45
    assert snapshot.auto_assign_workers_on_booking is False


def test_unparsable_values_fall_back_to_defaults():
    snapshot = build_snapshot(
        {
            "booking_hold_time_minutes": ("soon", "int"),
            "booking_cancellation_fee_percent": ("150", "int"),
            "working_days": ("0,8", "string"),
            "booking_advance_days": ("5", "bool"),
        }
    )

    defaults = ConfigSnapshot()
    assert snapshot.booking_hold_time_minutes == defaults.booking_hold_time_minutes
    assert snapshot.booking_cancellation_fee_percent == defaults.booking_cancellation_fee_percent
    assert snapshot.working_days == defaults.working_days
    assert snapshot.booking_advance_days == defaults.booking_advance_days


def test_inverted_working_hours_are_ignored():
    snapshot = build_snapshot(
        {"working_hours_start": ("18:00", "string"), "working_hours_end": ("10:00", "string")}
    )

    assert snapshot.working_hours_start == time(9, 0)
    assert snapshot.working_hours_end == time(22, 0)


def test_set_config_value_validates_and_invalidates(async_session_maker):
    settings.config_cache_ttl_seconds = 300

    async def _run():
        async with async_session_maker() as session:
            before = await config_provider.get(session)
            await config_service.set_config_value(session, "booking_hold_time_minutes", "12", updated_by="admin")
            await session.commit()
            after = await config_provider.get(session)
            record = await session.get(AdminConfig, "booking_hold_time_minutes")
            return before, after, record

    before, after, record = asyncio.run(_run())
    assert before.booking_hold_time_minutes == 7
    assert after.booking_hold_time_minutes == 12
    assert record.type == "int"
    assert record.updated_by == "admin"


def test_set_config_value_rejects_bad_input(async_session_maker):
    async def _run(key: str, value: str):
        async with async_session_maker() as session:
            await config_service.set_config_value(session, key, value)

    with pytest.raises(InvalidConfigValue):
        asyncio.run(_run("worker_offer_timeout_minutes", "0"))
    with pytest.raises(InvalidConfigValue):
        asyncio.run(_run("auto_assign_workers_on_booking", "maybe"))
    with pytest.raises(NotFound):
        asyncio.run(_run("surge_pricing", "1"))


def test_list_configs_reports_defaults_and_overrides(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            session.add(AdminConfig(key="booking_advance_days", value="7", type="int", category="booking"))
            session.add(AdminConfig(key="booking_hold_time_minutes", value="never", type="int", category="booking"))
            await session.commit()
            return {entry.key: entry for entry in await config_service.list_configs(session)}

    entries = asyncio.run(_run())
    assert set(entries) == set(config_service.CONFIG_DEFINITIONS)
    assert entries["booking_advance_days"].value == "7"
    assert entries["booking_advance_days"].is_default is False
    assert entries["booking_hold_time_minutes"].value == "7"
    assert entries["booking_hold_time_minutes"].is_default is True


def test_provider_caches_within_ttl(async_session_maker):
    settings.config_cache_ttl_seconds = 300

    async def _run():
        async with async_session_maker() as session:
            first = await config_provider.get(session)
            session.add(AdminConfig(key="booking_advance_days", value="9", type="int", category="booking"))
            await session.commit()
            cached = await config_provider.get(session)
            config_provider.invalidate()
            fresh = await config_provider.get(session)
            return first, cached, fresh

    first, cached, fresh = asyncio.run(_run())
    assert cached is first
    assert fresh.booking_advance_days == 9
