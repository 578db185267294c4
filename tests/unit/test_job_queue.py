import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from app.features.queue import (
    DurableJobQueue,
    FileJobStore,
    JobPriority,
    JobQueueError,
    JobStatus,
    NonRetryableJobError,
)


class ManualClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingAudit:
    def __init__(self):
        self.entries: list[dict] = []

    async def log(self, action, **fields) -> bool:
        self.entries.append({"action": action, **fields})
        return False


def _queue(tmp_path, clock=None, audit=None, **overrides):
    options = {
        "default_max_attempts": 3,
        "backoff_base_seconds": 5,
        "poll_interval_seconds": 0.01,
        "default_timeout_seconds": 5,
        "shutdown_grace_seconds": 1,
        "monitor_interval_seconds": 60,
    }
    options.update(overrides)
    return DurableJobQueue(
        FileJobStore(tmp_path / "queue"),
        audit or RecordingAudit(),
        clock=clock or ManualClock(),
        **options,
    )


@pytest.mark.asyncio
async def test_failed_job_is_retried_with_exponential_backoff(tmp_path):
    clock = ManualClock()
    audit = RecordingAudit()
    queue = _queue(tmp_path, clock=clock, audit=audit)
    calls = []

    async def always_fails(job):
        calls.append(job.attempts)
        raise RuntimeError("provider down")

    queue.register_handler("flaky", always_fails)
    await queue.store.open()
    job_id = await queue.enqueue("flaky", {"n": 1})

    assert await queue.process_next("flaky") is True
    job = await queue.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.available_at == clock.now + timedelta(seconds=5)

    # not due yet
    assert await queue.process_next("flaky") is False

    clock.advance(5)
    assert await queue.process_next("flaky") is True
    job = await queue.get_job(job_id)
    assert job.attempts == 2
    assert job.available_at == clock.now + timedelta(seconds=10)

    clock.advance(10)
    assert await queue.process_next("flaky") is True
    job = await queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert "provider down" in job.last_error

    assert calls == [0, 1, 2]
    assert [entry["action"] for entry in audit.entries] == ["queue_job_failed"]
    assert audit.entries[0]["metadata"]["attempts"] == 3
    assert audit.entries[0]["metadata"]["payload"] == {"n": 1}


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately(tmp_path):
    queue = _queue(tmp_path)

    async def handler(job):
        raise NonRetryableJobError("document 9 not found")

    queue.register_handler("docs", handler)
    await queue.store.open()
    job_id = await queue.enqueue("docs", {})

    await queue.process_next("docs")

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_jobs_are_claimed_by_priority_then_creation_order(tmp_path):
    queue = _queue(tmp_path)
    seen = []

    async def handler(job):
        seen.append(job.payload["name"])

    queue.register_handler("work", handler)
    await queue.store.open()
    await queue.enqueue("work", {"name": "low"}, priority=JobPriority.LOW)
    await queue.enqueue("work", {"name": "normal-1"})
    await queue.enqueue("work", {"name": "critical"}, priority=JobPriority.CRITICAL)
    await queue.enqueue("work", {"name": "normal-2"})

    while await queue.process_next("work"):
        pass

    assert seen == ["critical", "normal-1", "normal-2", "low"]


@pytest.mark.asyncio
async def test_completed_job_is_not_run_again(tmp_path):
    queue = _queue(tmp_path)
    runs = []

    async def handler(job):
        runs.append(job.id)

    queue.register_handler("once", handler)
    await queue.store.open()
    job_id = await queue.enqueue("once", {})

    await queue.process_next("once")
    assert await queue.process_next("once") is False

    assert runs == [job_id]
    assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED
    assert (tmp_path / "queue" / "completed" / f"{job_id}.json").exists()


@pytest.mark.asyncio
async def test_processing_jobs_are_recovered_after_restart(tmp_path):
    clock = ManualClock()
    store = FileJobStore(tmp_path / "queue")
    queue = _queue(tmp_path, clock=clock)
    queue.store = store
    await store.open()
    job_id = await queue.enqueue("docs", {"document_id": 1})

    # simulate a crash after the claim
    claimed = await store.claim_next("docs", clock.now)
    assert claimed.id == job_id

    restarted = FileJobStore(tmp_path / "queue")
    await restarted.open()
    assert (await restarted.get(job_id)).status == JobStatus.PROCESSING

    assert await restarted.recover() == 1
    assert (await restarted.get(job_id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_retry_failed_requeues_with_fresh_attempts(tmp_path):
    queue = _queue(tmp_path, default_max_attempts=1)
    fail = {"on": True}

    async def handler(job):
        if fail["on"]:
            raise RuntimeError("boom")

    queue.register_handler("docs", handler)
    await queue.store.open()
    job_id = await queue.enqueue("docs", {})
    await queue.process_next("docs")
    assert (await queue.get_job(job_id)).status == JobStatus.FAILED

    assert await queue.retry_failed("docs") == 1
    job = await queue.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0

    fail["on"] = False
    await queue.process_next("docs")
    assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_handler_timeout_counts_as_failure(tmp_path):
    queue = _queue(tmp_path)

    async def slow(job):
        await asyncio.sleep(5)

    queue.register_handler("slow", slow, timeout=0.01)
    await queue.store.open()
    job_id = await queue.enqueue("slow", {})

    await queue.process_next("slow")

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert "Timed out" in job.last_error


@pytest.mark.asyncio
async def test_unregistered_job_type_fails_terminally(tmp_path):
    queue = _queue(tmp_path)
    await queue.store.open()
    job_id = await queue.enqueue("unknown", {})

    await queue.process_next("unknown")

    assert (await queue.get_job(job_id)).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_backoff_delay_doubles(tmp_path):
    queue = _queue(tmp_path, backoff_base_seconds=2)
    assert [queue.backoff_delay(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 16]


@pytest.mark.asyncio
async def test_metrics_report_counts_and_alerts(tmp_path):
    queue = _queue(tmp_path, pending_alert_threshold=1, failed_alert_threshold=10)

    async def handler(job):
        return None

    queue.register_handler("docs", handler)
    await queue.store.open()
    for _ in range(3):
        await queue.enqueue("docs", {})
    await queue.process_next("docs")

    metrics = await queue.metrics()

    assert metrics["job_types"]["docs"]["pending"] == 2
    assert metrics["job_types"]["docs"]["completed"] == 1
    assert metrics["totals"]["pending"] == 2
    assert metrics["throughput_per_minute"] > 0
    assert metrics["alerting"] is True
    assert "docs: 2 pending" in metrics["alerts"][0]


@pytest.mark.asyncio
async def test_throughput_is_read_from_the_store(tmp_path):
    clock = ManualClock()
    worker = _queue(tmp_path, clock=clock, throughput_window_seconds=600)

    async def handler(job):
        return None

    worker.register_handler("docs", handler)
    await worker.store.open()
    for _ in range(2):
        await worker.enqueue("docs", {})
        await worker.process_next("docs")

    # a process that runs no workers, such as an enqueue-only API
    observer = _queue(tmp_path, clock=clock, throughput_window_seconds=600)
    await observer.store.open()

    metrics = await observer.metrics()
    assert metrics["job_types"]["docs"]["throughput_per_minute"] == 0.2
    assert metrics["throughput_per_minute"] == 0.2

    clock.advance(601)
    assert (await observer.metrics())["throughput_per_minute"] == 0


@pytest.mark.asyncio
async def test_workers_process_jobs_until_shutdown(tmp_path):
    queue = DurableJobQueue(
        FileJobStore(tmp_path / "queue"),
        RecordingAudit(),
        poll_interval_seconds=0.01,
        shutdown_grace_seconds=1,
        monitor_interval_seconds=60,
    )
    done = asyncio.Event()

    async def handler(job):
        done.set()

    queue.register_handler("docs", handler, concurrency=2)
    await queue.start()
    try:
        job_id = await queue.enqueue("docs", {})
        await asyncio.wait_for(done.wait(), timeout=2)
        for _ in range(100):
            if (await queue.get_job(job_id)).status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED

        with pytest.raises(JobQueueError):
            queue.register_handler("late", handler)
    finally:
        await queue.shutdown()

    with pytest.raises(JobQueueError):
        await queue.enqueue("docs", {})
