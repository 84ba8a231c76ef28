import argparse
import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from servicebook.infra.db import get_session_factory
from servicebook.infra.logging import configure_logging
from servicebook.infra.metrics import configure_metrics, metrics
from servicebook.infra.stripe_client import StripeClient
from servicebook.jobs.heartbeat import record_heartbeat
from servicebook.jobs.sweeps import SWEEPS
from servicebook.settings import settings

logger = logging.getLogger(__name__)


async def _run_job(name: str, session_factory: async_sessionmaker, stripe_client: StripeClient | None) -> dict[str, int]:
    runner = SWEEPS.get(name)
    if runner is None:
        raise ValueError(f"unknown_job:{name}")
    result = await runner(session_factory, stripe_client=stripe_client)
    logger.info("job_complete", extra={"extra": {"job": name, **result}})
    return result


def _stripe_client() -> StripeClient | None:
    if not settings.stripe_secret_key:
        return None
    return StripeClient(secret_key=settings.stripe_secret_key, webhook_secret=settings.stripe_webhook_secret)


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run expiry sweeps")
    parser.add_argument("--job", action="append", dest="jobs", choices=sorted(SWEEPS), help="Job name to run")
    parser.add_argument("--interval", type=int, default=30, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    stripe_client = _stripe_client()
    job_names = args.jobs or list(SWEEPS)

    while True:
        results: dict[str, dict[str, int]] = {}
        for name in job_names:
            try:
                results[name] = await _run_job(name, session_factory, stripe_client)
            except Exception as exc:  # noqa: BLE001
                metrics.record_sweep(name, "error")
                logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        await record_heartbeat(session_factory, name="jobs-runner", result=results)
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
