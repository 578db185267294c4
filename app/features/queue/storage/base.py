"""Storage contract shared by every job-queue backend."""

from abc import ABC, abstractmethod
from datetime import datetime

from app.db.helpers import DatabaseError
from app.features.queue.domain import Job, JobStatus, JobTypeCounts


class JobStoreError(DatabaseError):
    """Raised when a job cannot be persisted or loaded."""


class JobStore(ABC):
    """
    Durable home of queue jobs.

    Implementations must make ``claim_next`` atomic: a job moves from
    pending to processing for exactly one caller.
    """

    async def open(self) -> None:  # noqa: B027
        """Prepare storage (directories, connections). Optional."""

    async def close(self) -> None:  # noqa: B027
        """Release storage resources. Optional."""

    @abstractmethod
    async def insert(self, job: Job) -> Job:
        """Persist a new job and assign its creation sequence."""

    @abstractmethod
    async def save(self, job: Job) -> None:
        """Persist the current state of an existing job."""

    @abstractmethod
    async def get(self, job_id: str) -> Job | None: ...

    @abstractmethod
    async def claim_next(self, job_type: str, now: datetime) -> Job | None:
        """Move the most urgent eligible pending job to processing and return it."""

    @abstractmethod
    async def recover(self) -> int:
        """Reset processing jobs no live worker owns to pending; returns how many were reset."""

    @abstractmethod
    async def counts(self) -> dict[str, JobTypeCounts]: ...

    @abstractmethod
    async def completed_since(self, since: datetime) -> dict[str, int]:
        """Per-type count of jobs completed at or after ``since``."""

    @abstractmethod
    async def list_jobs(
        self, *, job_type: str | None = None, status: JobStatus | None = None
    ) -> list[Job]: ...
