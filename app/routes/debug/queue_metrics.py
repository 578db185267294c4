"""Debug-only job queue metrics."""

from fastapi import APIRouter, Request

router = APIRouter(prefix="/debug/queue", tags=["debug-queue"])


@router.get("/metrics")
async def queue_metrics(request: Request) -> dict:
    """Per-type counts, throughput and active alerts for dashboards."""
    return await request.app.state.container.queue.metrics()


@router.post("/retry-failed")
async def retry_failed(request: Request, job_type: str | None = None) -> dict:
    """Re-queue failed jobs, optionally only those of ``job_type``."""
    requeued = await request.app.state.container.queue.retry_failed(job_type)
    return {"requeued": requeued, "job_type": job_type}
