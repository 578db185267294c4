"""
Domain models for the durable job queue.

Jobs are plain dataclasses so both storage backends (JSON files and
PostgreSQL rows) can round-trip them without an ORM.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any


class JobPriority(IntEnum):
    """Lower value is more urgent."""

    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class Job:
    """One unit of deferred, retryable work."""

    id: str
    job_type: str
    payload: dict[str, Any]
    priority: JobPriority = JobPriority.NORMAL
    attempts: int = 0
    max_attempts: int = 3
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    available_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    last_error: str | None = None
    sequence: int = 0

    def sort_key(self) -> tuple[int, int]:
        """Priority first, then creation order."""
        return (int(self.priority), self.sequence)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["priority"] = int(self.priority)
        data["status"] = str(self.status)
        for key in ("created_at", "updated_at", "available_at", "completed_at"):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        def _dt(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data["id"],
            job_type=data["job_type"],
            payload=data.get("payload") or {},
            priority=JobPriority(int(data.get("priority", JobPriority.NORMAL))),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            status=JobStatus(data.get("status", JobStatus.PENDING)),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
            available_at=_dt(data.get("available_at")) or utcnow(),
            completed_at=_dt(data.get("completed_at")),
            last_error=data.get("last_error"),
            sequence=int(data.get("sequence", 0)),
        )


@dataclass(slots=True)
class JobTypeCounts:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)
