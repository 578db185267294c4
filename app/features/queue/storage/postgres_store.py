"""
PostgreSQL-backed job store (queue_jobs table).

Several processes may share one table: claims use
``FOR UPDATE SKIP LOCKED`` so a row is handed to exactly one worker.
Each claim records the worker id and a lease; ``recover()`` only touches
this worker's own rows and rows whose lease has run out.
"""

import socket
from datetime import datetime, timedelta

from psycopg.types.json import Jsonb

from app.config import settings
from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.db.pool import DatabasePoolManager
from app.features.queue.domain import Job, JobPriority, JobStatus, JobTypeCounts
from app.features.queue.storage.base import JobStore, JobStoreError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PostgresJobStore(JobStore):
    """Multi-process durable store."""

    JOB_SELECT_COLUMNS = """
        id, job_type, payload, priority, attempts, max_attempts, status,
        available_at, last_error, sequence, created_at, updated_at, completed_at
    """

    def __init__(
        self,
        db: DatabasePoolManager,
        *,
        worker_id: str | None = None,
        lease_seconds: float | None = None,
    ):
        self.db = db
        self.worker_id = worker_id or settings.QUEUE_WORKER_ID or socket.gethostname()
        self.lease = timedelta(seconds=lease_seconds or settings.QUEUE_LEASE_SECONDS)

    @staticmethod
    def _row_to_job(row: dict | None) -> Job | None:
        if not row:
            return None

        return Job(
            id=row["id"],
            job_type=row["job_type"],
            payload=row.get("payload") or {},
            priority=JobPriority(row["priority"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            status=JobStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            available_at=row["available_at"],
            completed_at=row.get("completed_at"),
            last_error=row.get("last_error"),
            sequence=row["sequence"],
        )

    async def insert(self, job: Job) -> Job:
        query = f"""
            INSERT INTO queue_jobs (
                id, job_type, payload, priority, attempts, max_attempts,
                status, available_at, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.JOB_SELECT_COLUMNS}
        """
        try:
            row = await fetch_one(
                self.db,
                query,
                (
                    job.id,
                    job.job_type,
                    Jsonb(job.payload),
                    int(job.priority),
                    job.attempts,
                    job.max_attempts,
                    str(job.status),
                    job.available_at,
                    job.created_at,
                    job.updated_at,
                ),
            )
        except DatabaseError as e:
            raise JobStoreError(str(e), operation="insert_job") from e

        if not row:
            raise JobStoreError("Failed to insert queue job", operation="insert_job")
        return self._row_to_job(row)

    async def save(self, job: Job) -> None:
        query = """
            UPDATE queue_jobs
            SET status = %s,
                attempts = %s,
                max_attempts = %s,
                available_at = %s,
                last_error = %s,
                completed_at = %s,
                updated_at = %s,
                claimed_by = NULL,
                lease_expires_at = NULL
            WHERE id = %s
        """
        try:
            await execute_query(
                self.db,
                query,
                (
                    str(job.status),
                    job.attempts,
                    job.max_attempts,
                    job.available_at,
                    job.last_error,
                    job.completed_at,
                    job.updated_at,
                    job.id,
                ),
            )
        except DatabaseError as e:
            raise JobStoreError(str(e), operation="save_job") from e

    async def get(self, job_id: str) -> Job | None:
        query = f"SELECT {self.JOB_SELECT_COLUMNS} FROM queue_jobs WHERE id = %s"
        return self._row_to_job(await fetch_one(self.db, query, (job_id,)))

    async def claim_next(self, job_type: str, now: datetime) -> Job | None:
        query = f"""
            UPDATE queue_jobs
            SET status = 'processing', claimed_by = %s, lease_expires_at = %s, updated_at = %s
            WHERE id = (
                SELECT id FROM queue_jobs
                WHERE job_type = %s
                  AND (
                    (status = 'pending' AND available_at <= %s)
                    OR (status = 'processing' AND lease_expires_at < %s)
                  )
                ORDER BY priority, sequence
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {self.JOB_SELECT_COLUMNS}
        """
        params = (self.worker_id, now + self.lease, now, job_type, now, now)
        try:
            row = await fetch_one(self.db, query, params)
        except DatabaseError as e:
            raise JobStoreError(str(e), operation="claim_job") from e
        return self._row_to_job(row)

    async def recover(self) -> int:
        """Re-queue jobs this worker left mid-flight plus any whose lease expired."""
        query = """
            UPDATE queue_jobs
            SET status = 'pending', claimed_by = NULL, lease_expires_at = NULL, updated_at = NOW()
            WHERE status = 'processing'
              AND (claimed_by = %s OR claimed_by IS NULL OR lease_expires_at < NOW())
        """
        recovered = await execute_query(self.db, query, (self.worker_id,))
        logger.info("Queue recovery scoped to worker", worker_id=self.worker_id, recovered=recovered)
        return recovered

    async def counts(self) -> dict[str, JobTypeCounts]:
        rows = await fetch_all(
            self.db,
            "SELECT job_type, status, COUNT(*) AS total FROM queue_jobs GROUP BY job_type, status",
        )
        result: dict[str, JobTypeCounts] = {}
        for row in rows:
            bucket = result.setdefault(row["job_type"], JobTypeCounts())
            setattr(bucket, row["status"], int(row["total"]))
        return result

    async def completed_since(self, since: datetime) -> dict[str, int]:
        rows = await fetch_all(
            self.db,
            """
            SELECT job_type, COUNT(*) AS total FROM queue_jobs
            WHERE status = 'completed' AND completed_at >= %s
            GROUP BY job_type
            """,
            (since,),
        )
        return {row["job_type"]: int(row["total"]) for row in rows}

    async def list_jobs(
        self, *, job_type: str | None = None, status: JobStatus | None = None
    ) -> list[Job]:
        clauses, params = [], []
        if job_type is not None:
            clauses.append("job_type = %s")
            params.append(job_type)
        if status is not None:
            clauses.append("status = %s")
            params.append(str(status))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        rows = await fetch_all(
            self.db,
            f"SELECT {self.JOB_SELECT_COLUMNS} FROM queue_jobs {where} ORDER BY priority, sequence",
            tuple(params),
        )
        return [self._row_to_job(row) for row in rows]
