"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate scheduler.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.trigger_detector_job import run_trigger_scan_job, start_trigger_scan_scheduler

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def run_trigger_scan_once() -> None:
    """Single scan, for platforms that schedule the worker process themselves."""
    metrics = await run_trigger_scan_job()
    logger.info("Trigger scan finished", skipped=metrics.get("skipped", False))


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "trigger_scan": start_trigger_scan_scheduler,
    "trigger_scan_once": run_trigger_scan_once,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "trigger_scan").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


async def _run_with_database(job_name: str) -> None:
    await db_pool.initialize()
    try:
        await run_worker(job_name)
    finally:
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.log_level)
    job_name = _resolve_job_name()
    asyncio.run(_run_with_database(job_name))


if __name__ == "__main__":
    main()
