"""
Durable, retryable job queue.

Retry, backoff and bookkeeping live here once; persistence is delegated to a
JobStore (JSON files or PostgreSQL). Delivery to handlers is at-least-once:
a job that was processing when the process died is handed out again after
``recover()``, so handlers must be idempotent.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from app.config import settings
from app.features.queue.domain import Job, JobPriority, JobStatus, utcnow
from app.features.queue.services.metrics import QueueMetrics
from app.features.queue.storage import JobStore
from app.infrastructure.audit import AuditLogger
from app.infrastructure.observability.logging import bind_log_context, clear_log_context, get_logger

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class JobQueueError(Exception):
    """Raised for queue misuse (e.g. enqueue after shutdown)."""


class NonRetryableJobError(Exception):
    """Raised by a handler when retrying cannot help (missing rows, bad payload)."""


@dataclass(slots=True)
class HandlerRegistration:
    handler: JobHandler
    concurrency: int
    timeout: float


class DurableJobQueue:
    """
    Priority job queue with per-type worker pools.

    Jobs of one type are claimed most-urgent first (lower JobPriority),
    ties broken by creation order.
    """

    def __init__(
        self,
        store: JobStore,
        audit: AuditLogger | None = None,
        *,
        default_max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        default_timeout_seconds: float | None = None,
        shutdown_grace_seconds: float | None = None,
        throughput_window_seconds: float | None = None,
        pending_alert_threshold: int | None = None,
        failed_alert_threshold: int | None = None,
        monitor_interval_seconds: float | None = None,
        alert_cooldown_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        config = settings.get_queue_config()

        def _pick(value, key):
            return value if value is not None else config[key]

        self.store = store
        self.audit = audit or AuditLogger()
        self.default_max_attempts = _pick(default_max_attempts, "default_max_attempts")
        self.backoff_base_seconds = _pick(backoff_base_seconds, "backoff_base_seconds")
        self.poll_interval_seconds = _pick(poll_interval_seconds, "poll_interval_seconds")
        self.default_timeout_seconds = _pick(default_timeout_seconds, "default_timeout_seconds")
        self.shutdown_grace_seconds = _pick(shutdown_grace_seconds, "shutdown_grace_seconds")
        self.monitor_interval_seconds = _pick(monitor_interval_seconds, "monitor_interval_seconds")
        self.metrics_tracker = QueueMetrics(
            window_seconds=_pick(throughput_window_seconds, "throughput_window_seconds"),
            pending_threshold=_pick(pending_alert_threshold, "pending_alert_threshold"),
            failed_threshold=_pick(failed_alert_threshold, "failed_alert_threshold"),
            alert_cooldown_seconds=_pick(alert_cooldown_seconds, "alert_cooldown_seconds"),
        )
        self._clock = clock

        self._handlers: dict[str, HandlerRegistration] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._workers: list[asyncio.Task] = []
        self._monitor: asyncio.Task | None = None
        self._running = False
        self._stopping = False

    # ------------------------------------------------------------------
    # registration / submission
    # ------------------------------------------------------------------

    def register_handler(
        self,
        job_type: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        timeout: float | None = None,
    ) -> None:
        """Attach the coroutine that processes ``job_type`` jobs."""
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self._running:
            raise JobQueueError("Handlers must be registered before start()")

        self._handlers[job_type] = HandlerRegistration(
            handler=handler,
            concurrency=concurrency,
            timeout=timeout or self.default_timeout_seconds,
        )
        self._wakeups.setdefault(job_type, asyncio.Event())
        logger.info("Queue handler registered", job_type=job_type, concurrency=concurrency)

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: JobPriority = JobPriority.NORMAL,
        max_attempts: int | None = None,
    ) -> str:
        """Persist a new pending job and return its id."""
        if self._stopping:
            raise JobQueueError("Queue is shutting down")

        now = self._clock()
        job = Job(
            id=str(uuid.uuid4()),
            job_type=job_type,
            payload=payload,
            priority=JobPriority(priority),
            max_attempts=max_attempts or self.default_max_attempts,
            created_at=now,
            updated_at=now,
            available_at=now,
        )
        job = await self.store.insert(job)

        if job_type not in self._handlers:
            # another worker process may own this type
            logger.warning("Job enqueued for type without local handler", job_type=job_type, job_id=job.id)

        logger.info(
            "Job enqueued",
            job_id=job.id,
            job_type=job_type,
            priority=job.priority.name,
            max_attempts=job.max_attempts,
        )
        if job_type in self._wakeups:
            self._wakeups[job_type].set()
        return job.id

    async def get_job(self, job_id: str) -> Job | None:
        return await self.store.get(job_id)

    # ------------------------------------------------------------------
    # processing
    # ------------------------------------------------------------------

    async def process_next(self, job_type: str) -> bool:
        """Claim and run one eligible job of ``job_type``. Returns False when none was due."""
        job = await self.store.claim_next(job_type, self._clock())
        if job is None:
            return False
        await self._run_job(job)
        return True

    async def _run_job(self, job: Job) -> None:
        registration = self._handlers.get(job.job_type)
        bind_log_context(job_id=job.id, job_type=job.job_type)
        try:
            if registration is None:
                await self._fail_terminal(job, f"No handler registered for job type '{job.job_type}'")
                return

            logger.info("Job started", attempt=job.attempts + 1, max_attempts=job.max_attempts)
            try:
                await asyncio.wait_for(registration.handler(job), timeout=registration.timeout)
            except asyncio.CancelledError:
                # left as processing on purpose; recover() re-queues it
                logger.warning("Job cancelled mid-flight")
                raise
            except TimeoutError:
                await self._handle_failure(job, f"Timed out after {registration.timeout}s")
            except NonRetryableJobError as e:
                job.attempts += 1
                await self._fail_terminal(job, str(e))
            except Exception as e:
                await self._handle_failure(job, f"{type(e).__name__}: {e}")
            else:
                await self._complete(job)
        finally:
            clear_log_context()

    async def _complete(self, job: Job) -> None:
        now = self._clock()
        job.status = JobStatus.COMPLETED
        job.completed_at = now
        job.updated_at = now
        job.last_error = None
        await self.store.save(job)
        logger.info("Job completed", attempts=job.attempts + 1)

    async def _handle_failure(self, job: Job, error: str) -> None:
        job.attempts += 1
        job.last_error = error

        if job.attempts < job.max_attempts:
            delay = self.backoff_delay(job.attempts)
            now = self._clock()
            job.status = JobStatus.PENDING
            job.available_at = now + timedelta(seconds=delay)
            job.updated_at = now
            await self.store.save(job)
            logger.warning(
                "Job failed, scheduled for retry",
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                retry_in_seconds=delay,
                error=error,
            )
            return

        await self._fail_terminal(job, error)

    async def _fail_terminal(self, job: Job, error: str) -> None:
        now = self._clock()
        job.status = JobStatus.FAILED
        job.last_error = error
        job.updated_at = now
        await self.store.save(job)

        logger.error(
            "Job failed permanently",
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            error=error,
        )
        await self.audit.log(
            "queue_job_failed",
            resource_type="queue_job",
            resource_id=job.id,
            metadata={
                "job_type": job.job_type,
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
                "last_error": error,
                "payload": job.payload,
                "created_at": job.created_at.isoformat(),
            },
        )

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait before the retry following failure number ``attempts``."""
        return self.backoff_base_seconds * (2 ** max(attempts - 1, 0))

    async def retry_failed(self, job_type: str | None = None) -> int:
        """Give every failed job (optionally of one type) a fresh set of attempts."""
        failed = await self.store.list_jobs(job_type=job_type, status=JobStatus.FAILED)
        now = self._clock()
        for job in failed:
            job.status = JobStatus.PENDING
            job.attempts = 0
            job.available_at = now
            job.updated_at = now
            await self.store.save(job)
            if job.job_type in self._wakeups:
                self._wakeups[job.job_type].set()

        if failed:
            logger.info("Failed jobs re-queued", count=len(failed), job_type=job_type)
        return len(failed)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, workers: bool = True) -> None:
        """
        Open the store and, with ``workers``, recover in-flight jobs and start
        the per-type worker tasks. Without workers the queue only accepts
        enqueues; another process consumes them.
        """
        if self._running:
            return

        await self.store.open()
        if not workers:
            self._stopping = False
            self._running = True
            logger.info("Job queue opened for enqueue only")
            return

        recovered = await self.store.recover()
        if recovered:
            logger.warning("Recovered in-flight jobs as pending", count=recovered)

        self._stopping = False
        self._running = True
        for job_type, registration in self._handlers.items():
            for slot in range(registration.concurrency):
                self._workers.append(
                    asyncio.create_task(
                        self._worker_loop(job_type), name=f"queue-worker:{job_type}:{slot}"
                    )
                )
        self._monitor = asyncio.create_task(self._monitor_loop(), name="queue-monitor")

        logger.info("Job queue started", job_types=self.job_types, workers=len(self._workers))

    async def shutdown(self) -> None:
        """Stop claiming, give running handlers a grace period, then cancel."""
        if not self._running:
            return

        self._stopping = True
        for event in self._wakeups.values():
            event.set()

        if self._monitor is not None:
            self._monitor.cancel()

        if self._workers:
            _, still_running = await asyncio.wait(self._workers, timeout=self.shutdown_grace_seconds)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("Cancelled in-flight jobs at shutdown", count=len(still_running))
            await asyncio.gather(*self._workers, return_exceptions=True)

        if self._monitor is not None:
            await asyncio.gather(self._monitor, return_exceptions=True)

        self._workers.clear()
        self._monitor = None
        self._running = False
        await self.store.close()
        logger.info("Job queue stopped")

    async def _worker_loop(self, job_type: str) -> None:
        wakeup = self._wakeups[job_type]
        while not self._stopping:
            try:
                processed = await self.process_next(job_type)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # storage trouble; back off and keep the worker alive
                logger.error("Queue worker iteration failed", job_type=job_type, error=str(e))
                processed = False

            if processed or self._stopping:
                continue

            wakeup.clear()
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval_seconds)
            except TimeoutError:
                pass

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.monitor_interval_seconds)
            try:
                await self.check_alerts()
            except Exception as e:
                logger.error("Queue monitor check failed", error=str(e))

    # ------------------------------------------------------------------
    # observability
    # ------------------------------------------------------------------

    async def metrics(self) -> dict[str, Any]:
        counts = await self.store.counts()
        since = self._clock() - timedelta(seconds=self.metrics_tracker.window_seconds)
        completed = await self.store.completed_since(since)
        return self.metrics_tracker.snapshot(counts, completed)

    async def check_alerts(self) -> list[str]:
        """Log a warning for every threshold currently exceeded; returns the alert messages."""
        counts = await self.store.counts()
        alerts = self.metrics_tracker.evaluate_alerts(counts)
        if alerts and self.metrics_tracker.should_emit_alert():
            for message in alerts:
                logger.warning("Queue alert", alert=message)
        return alerts
