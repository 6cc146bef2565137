"""
Single entrypoint for hubmirror worker jobs.

Usage:
    JOB_TYPE=repo_sync python -m hm_workers     # Onboard/refresh repositories listed in REPO_SYNC_TARGETS
    JOB_TYPE=stale_sweep python -m hm_workers   # Re-sync mirrored issues past the staleness threshold
"""

import asyncio
import logging
import os
import signal
import sys

from hm_workers.logging_config import setup_logging


class GracefulShutdown:
    """Lets a running job stop between units of work on SIGTERM/SIGINT."""

    def __init__(self):
        self._shutdown_event = asyncio.Event()

    def signal_handler(self, signum: int) -> None:
        logger = logging.getLogger(__name__)
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self._shutdown_event.set()

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    @property
    def requested(self) -> bool:
        return self._shutdown_event.is_set()


async def run_worker_task(job_type: str, shutdown: GracefulShutdown) -> dict:
    """Run the specified worker job."""

    match job_type:
        case "repo_sync":
            from hm_workers.jobs.repo_sync_job import run_repo_sync_job
            return await run_repo_sync_job(shutdown.shutdown_event)

        case "stale_sweep":
            from hm_workers.jobs.stale_sweep_job import run_stale_sweep_job
            return await run_stale_sweep_job(shutdown.shutdown_event)

        case _:
            raise ValueError(f"Unknown job type: {job_type}")


async def main() -> None:
    job_id = setup_logging()
    logger = logging.getLogger(__name__)

    job_type = os.getenv("JOB_TYPE", "stale_sweep").lower()

    logger.info(
        "Starting job",
        extra={"job_type": job_type, "job_id": job_id},
    )

    shutdown = GracefulShutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: shutdown.signal_handler(s))

    try:
        result = await run_worker_task(job_type, shutdown)
        logger.info(
            "Job completed successfully",
            extra={"job_type": job_type, "result": result},
        )
    except Exception as e:
        logger.exception(
            f"Job failed: {e}",
            extra={"job_type": job_type},
        )
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
