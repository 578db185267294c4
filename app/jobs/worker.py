"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the matching runner. ``queue`` runs the job
queue's workers without the HTTP surface.
"""

import asyncio
import os
import signal
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.container import PipelineContainer
from app.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def run_queue_worker(stop: asyncio.Event | None = None) -> None:
    """Start the pipeline with queue workers and block until signalled."""
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # no signal support in this loop; rely on cancellation
            pass

    container = PipelineContainer()
    await container.start(run_workers=True)
    try:
        await stop.wait()
    finally:
        await container.shutdown()


async def retry_failed_jobs() -> None:
    """One-shot: re-queue every failed job, then exit."""
    container = PipelineContainer()
    await container.start(run_workers=False)
    try:
        count = await container.queue.retry_failed(os.getenv("WORKER_JOB_TYPE") or None)
        logger.info("Failed jobs re-queued", count=count)
    finally:
        await container.shutdown()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "queue": run_queue_worker,
    "retry_failed": retry_failed_jobs,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "queue").strip().lower()


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


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL, service=f"{settings.SERVICE_NAME}-worker")
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
