"""
Tests for health check endpoints.
"""

from types import SimpleNamespace

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.routes import health

from tests.fakes import FakeRedis


class StubDb:
    def __init__(self, healthy=True):
        self.healthy = healthy

    async def health_check(self):
        if self.healthy:
            return {"healthy": True, "pool_stats": {"pool_size": 3, "pool_available": 2}}
        return {"healthy": False, "error": "Connection failed"}


class StubQueue:
    def __init__(self, broken=False):
        self.broken = broken

    async def metrics(self):
        if self.broken:
            raise RuntimeError("queue store unreadable")
        return {"totals": {"pending": 1, "failed": 0}, "alerting": []}


def _client(container=None):
    app = FastAPI()
    app.include_router(health.router)
    if container is not None:
        app.state.container = container
    return TestClient(app)


def _container(*, db_healthy=True, redis=None, queue_broken=False, shared=True):
    redis = redis or FakeRedis()
    return SimpleNamespace(
        db=StubDb(db_healthy),
        redis=redis,
        cache=SimpleNamespace(shared=redis if shared else None),
        queue=StubQueue(queue_broken),
    )


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = _client().get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_readyz_all_dependencies_healthy():
    response = _client(_container()).get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    checks = data["checks"]
    assert checks["database"]["ok"] is True
    assert checks["database"]["pool_size"] == 3
    assert checks["redis"]["ok"] is True
    assert checks["queue"]["totals"]["pending"] == 1
    assert isinstance(checks["database"]["latency_ms"], (int, float))


def test_readyz_database_down():
    data = _client(_container(db_healthy=False)).get("/readyz").json()

    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "Connection failed"


def test_readyz_redis_outage_is_degraded_not_fatal():
    data = _client(_container(shared=False)).get("/readyz").json()

    assert data["overall_ok"] is True
    assert data["checks"]["redis"]["degraded"] is True


def test_readyz_queue_failure():
    data = _client(_container(queue_broken=True)).get("/readyz").json()

    assert data["overall_ok"] is False
    assert "RuntimeError" in data["checks"]["queue"]["error"]


def test_readyz_before_startup():
    data = _client().get("/readyz").json()

    assert data["overall_ok"] is False
    assert data["error"] == "Pipeline not started"
