"""
Durable job queue feature package.

Domain models, pluggable storage backends and the queue service live side
by side so the retry/backoff logic is written once for every backend.
"""

from app.config import settings

from .domain import Job, JobPriority, JobStatus
from .services.job_queue import DurableJobQueue, JobQueueError, NonRetryableJobError
from .storage import FileJobStore, JobStore, PostgresJobStore


def build_job_store(db=None, backend: str | None = None) -> JobStore:
    """Pick the storage backend named by QUEUE_BACKEND."""
    backend = (backend or settings.QUEUE_BACKEND).strip().lower()
    if backend == "file":
        return FileJobStore(settings.QUEUE_DIR)
    if backend == "postgres":
        if db is None:
            raise ValueError("PostgreSQL queue backend needs a database pool")
        return PostgresJobStore(db)
    raise ValueError(f"Unknown queue backend '{backend}'. Use 'file' or 'postgres'.")


__all__ = [
    "DurableJobQueue",
    "FileJobStore",
    "Job",
    "JobPriority",
    "JobQueueError",
    "JobStatus",
    "JobStore",
    "NonRetryableJobError",
    "PostgresJobStore",
    "build_job_store",
]
