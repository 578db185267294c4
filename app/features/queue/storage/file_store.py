"""
File-backed job store: one JSON document per job.

Layout under the queue directory::

    <root>/<job_id>.json            pending / processing
    <root>/completed/<job_id>.json  terminal success
    <root>/failed/<job_id>.json     terminal failure

Writes go to a temp file followed by ``os.replace`` so a crash never leaves
a half-written job. The in-memory index mirrors the files and is only
updated after the file write succeeded.
"""

import asyncio
import json
import os
from datetime import datetime
from pathlib import Path

from app.features.queue.domain import Job, JobStatus, JobTypeCounts
from app.features.queue.storage.base import JobStore, JobStoreError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_TERMINAL_DIRS = {
    JobStatus.COMPLETED: "completed",
    JobStatus.FAILED: "failed",
}


class FileJobStore(JobStore):
    """Single-process durable store; claims are serialised with an asyncio.Lock."""

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root)
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()
        self._sequence = 0
        self._opened = False

    async def open(self) -> None:
        if self._opened:
            return
        self.root.mkdir(parents=True, exist_ok=True)
        for sub in _TERMINAL_DIRS.values():
            (self.root / sub).mkdir(exist_ok=True)

        loaded = 0
        for directory in (self.root, *(self.root / sub for sub in _TERMINAL_DIRS.values())):
            for path in directory.glob("*.json"):
                try:
                    job = Job.from_dict(json.loads(path.read_text(encoding="utf-8")))
                except (OSError, ValueError, KeyError) as e:
                    logger.error("Skipping unreadable job file", path=str(path), error=str(e))
                    continue
                self._jobs[job.id] = job
                self._sequence = max(self._sequence, job.sequence)
                loaded += 1

        self._opened = True
        logger.info("File job store opened", root=str(self.root), jobs_loaded=loaded)

    def _path_for(self, job: Job) -> Path:
        sub = _TERMINAL_DIRS.get(job.status)
        directory = self.root / sub if sub else self.root
        return directory / f"{job.id}.json"

    def _write(self, job: Job) -> None:
        target = self._path_for(job)
        tmp = target.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(job.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, target)
        except OSError as e:
            raise JobStoreError(f"Failed to persist job {job.id}: {e}", operation="file_write") from e

        # drop copies left in other directories by a previous status
        for candidate in (self.root, *(self.root / sub for sub in _TERMINAL_DIRS.values())):
            stale = candidate / f"{job.id}.json"
            if stale != target and stale.exists():
                stale.unlink()

    async def insert(self, job: Job) -> Job:
        async with self._lock:
            self._sequence += 1
            job.sequence = self._sequence
            self._write(job)
            self._jobs[job.id] = job
        return job

    async def save(self, job: Job) -> None:
        async with self._lock:
            self._write(job)
            self._jobs[job.id] = job

    async def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def claim_next(self, job_type: str, now: datetime) -> Job | None:
        async with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if job.job_type == job_type
                and job.status == JobStatus.PENDING
                and job.available_at <= now
            ]
            if not eligible:
                return None

            job = min(eligible, key=Job.sort_key)
            job.status = JobStatus.PROCESSING
            job.updated_at = now
            try:
                self._write(job)
            except JobStoreError:
                job.status = JobStatus.PENDING
                raise
            return job

    async def recover(self) -> int:
        recovered = 0
        async with self._lock:
            for job in self._jobs.values():
                if job.status == JobStatus.PROCESSING:
                    job.status = JobStatus.PENDING
                    self._write(job)
                    recovered += 1
        return recovered

    async def counts(self) -> dict[str, JobTypeCounts]:
        result: dict[str, JobTypeCounts] = {}
        for job in self._jobs.values():
            bucket = result.setdefault(job.job_type, JobTypeCounts())
            setattr(bucket, str(job.status), getattr(bucket, str(job.status)) + 1)
        return result

    async def completed_since(self, since: datetime) -> dict[str, int]:
        result: dict[str, int] = {}
        for job in self._jobs.values():
            if job.status == JobStatus.COMPLETED and job.completed_at and job.completed_at >= since:
                result[job.job_type] = result.get(job.job_type, 0) + 1
        return result

    async def list_jobs(
        self, *, job_type: str | None = None, status: JobStatus | None = None
    ) -> list[Job]:
        jobs = [
            job
            for job in self._jobs.values()
            if (job_type is None or job.job_type == job_type)
            and (status is None or job.status == status)
        ]
        return sorted(jobs, key=Job.sort_key)
