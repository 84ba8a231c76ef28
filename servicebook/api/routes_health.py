import logging
import time
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from servicebook.jobs.heartbeat import heartbeat_age
from servicebook.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)

_HEAD_CACHE: dict[str, Any] = {"timestamp": 0.0, "heads": None, "skip_reason": None}
_HEAD_CACHE_TTL_SECONDS = 60


def _load_expected_heads() -> tuple[list[str] | None, str | None]:
    """Alembic heads of the checked-out migrations, cached for a minute.

    Packaged deployments without migration files report ``skipped_no_alembic_files``.
    """

    now = time.monotonic()
    if now - _HEAD_CACHE["timestamp"] < _HEAD_CACHE_TTL_SECONDS:
        return _HEAD_CACHE["heads"], _HEAD_CACHE["skip_reason"]

    repo_root = Path(__file__).resolve().parents[2]
    alembic_ini = repo_root / "alembic.ini"
    script_location = repo_root / "alembic"
    if not alembic_ini.exists() or not script_location.exists():
        _HEAD_CACHE.update({"timestamp": now, "heads": None, "skip_reason": "skipped_no_alembic_files"})
        return None, "skipped_no_alembic_files"

    try:
        cfg = Config(str(alembic_ini))
        cfg.set_main_option("script_location", str(script_location))
        heads = ScriptDirectory.from_config(cfg).get_heads()
    except Exception as exc:  # noqa: BLE001
        logger.warning("migrations_check_error_loading_alembic", extra={"extra": {"reason": type(exc).__name__}})
        _HEAD_CACHE.update({"timestamp": now, "heads": [], "skip_reason": "error_loading_alembic"})
        return [], "error_loading_alembic"
    _HEAD_CACHE.update({"timestamp": now, "heads": heads, "skip_reason": None})
    return heads, None


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


async def _get_current_revision(session) -> str | None:
    try:
        result = await session.execute(text("SELECT version_num FROM alembic_version"))
    except SQLAlchemyError:
        return None
    row = result.first()
    return row[0] if row else None


async def _database_status(request: Request) -> dict[str, Any]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    expected_heads, skip_reason = _load_expected_heads()
    expected_heads = expected_heads or []
    if session_factory is None:
        return {"ok": False, "message": "database session factory unavailable", "migrations_current": False}

    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            current_version = await _get_current_revision(session)
            age = await heartbeat_age(session)
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return {
            "ok": False,
            "message": "database check failed",
            "migrations_current": False,
            "error": exc.__class__.__name__,
        }

    if skip_reason == "skipped_no_alembic_files":
        migrations_current = True
    elif not expected_heads:
        migrations_current = False
    else:
        migrations_current = current_version in expected_heads

    return {
        "ok": True,
        "message": "database reachable",
        "migrations_current": migrations_current,
        "current_version": current_version,
        "expected_heads": expected_heads,
        "migrations_check": skip_reason or "ok",
        "heartbeat_age_seconds": int(age.total_seconds()) if age is not None else None,
    }


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    database = await _database_status(request)
    overall_ok = bool(database.get("ok")) and bool(database.get("migrations_current"))

    jobs_ok = True
    if settings.job_heartbeat_required:
        age = database.get("heartbeat_age_seconds")
        jobs_ok = age is not None and age <= settings.job_heartbeat_ttl_seconds
    overall_ok = overall_ok and jobs_ok

    payload = {
        "status": "ok" if overall_ok else "unhealthy",
        "database": database,
        "jobs": {"ok": jobs_ok, "required": settings.job_heartbeat_required},
    }
    return JSONResponse(status_code=200 if overall_ok else 503, content=payload)
