import asyncio

import pytest

from app.jobs import worker


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert called["ok"] is True


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError):
        await worker.run_worker("missing")


def test_job_name_defaults_to_queue(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.delenv("WORKER_JOB", raising=False)

    assert worker._resolve_job_name() == "queue"


def test_job_name_from_cli_wins(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker", "Retry_Failed"])
    monkeypatch.setenv("WORKER_JOB", "queue")

    assert worker._resolve_job_name() == "retry_failed"


class RecordingContainer:
    instances: list["RecordingContainer"] = []

    def __init__(self):
        self.started_with = None
        self.shut_down = False
        self.queue = self
        self.retried = []
        RecordingContainer.instances.append(self)

    async def start(self, *, run_workers=True):
        self.started_with = run_workers

    async def shutdown(self):
        self.shut_down = True

    async def retry_failed(self, job_type=None):
        self.retried.append(job_type)
        return 2


@pytest.fixture
def recording_container(monkeypatch):
    RecordingContainer.instances = []
    monkeypatch.setattr(worker, "PipelineContainer", RecordingContainer)
    return RecordingContainer


@pytest.mark.asyncio
async def test_queue_worker_runs_until_stopped(recording_container):
    stop = asyncio.Event()
    stop.set()

    await worker.run_queue_worker(stop)

    (container,) = recording_container.instances
    assert container.started_with is True
    assert container.shut_down is True


@pytest.mark.asyncio
async def test_retry_failed_does_not_start_workers(recording_container, monkeypatch):
    monkeypatch.setenv("WORKER_JOB_TYPE", "send_message")

    await worker.retry_failed_jobs()

    (container,) = recording_container.instances
    assert container.started_with is False
    assert container.retried == ["send_message"]
    assert container.shut_down is True
