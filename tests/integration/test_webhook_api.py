"""
Webhook HTTP surface wired to the real event router over in-memory repositories.
"""

from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.features.documents.services.intake import DocumentIntakeService
from app.features.messaging.api.router import router as webhook_router
from app.features.messaging.services.event_router import WebhookEventRouter

from tests.fakes import (
    FakeContactRepository,
    FakeDocumentRepository,
    FakeInstanceRepository,
    FakeMessageRepository,
    FakeNotifier,
    FakeQueue,
)


class RecordingAudit:
    def __init__(self):
        self.entries = []

    async def log(self, action, **kwargs):
        self.entries.append((action, kwargs))
        return True


@pytest.fixture
def pipeline():
    instances = FakeInstanceRepository()
    instances.add("school-1", instance_id=1, school_id=10)
    messages = FakeMessageRepository()
    event_router = WebhookEventRouter(
        instances=instances,
        contacts=FakeContactRepository(),
        messages=messages,
        intake=DocumentIntakeService(FakeDocumentRepository(), FakeQueue()),
        notifier=FakeNotifier(),
    )
    return SimpleNamespace(event_router=event_router, audit=RecordingAudit(), messages=messages)


@pytest.fixture
def client(pipeline, monkeypatch):
    monkeypatch.setattr("app.features.messaging.api.router.settings.WEBHOOK_SECRET", None)
    app = FastAPI()
    app.include_router(webhook_router)
    app.state.container = pipeline
    return TestClient(app)


def _text_message(external_id="wamid-1"):
    return {
        "event": "messages.upsert",
        "instance": "school-1",
        "data": {
            "key": {"id": external_id, "remoteJid": "5511999990000@s.whatsapp.net", "fromMe": False},
            "pushName": "Ana",
            "message": {"conversation": "Bom dia"},
        },
    }


def test_status_endpoint(client):
    response = client.get("/webhook/status")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "online"
    assert "timestamp" in data


def test_message_is_processed_and_audited(client, pipeline):
    response = client.post("/webhook", json=_text_message())

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["processed"] is True
    assert data["event"] == "messages.upsert"
    assert data["counts"]["processed"] == 1
    assert len(pipeline.messages.messages) == 1
    (action, entry) = pipeline.audit.entries[0]
    assert action == "webhook_received"
    assert entry["metadata"]["event"] == "messages.upsert"


def test_redelivery_is_a_duplicate(client, pipeline):
    client.post("/webhook", json=_text_message())
    response = client.post("/webhook", json=_text_message())

    assert response.status_code == 200
    assert response.json()["counts"]["duplicates"] == 1
    assert len(pipeline.messages.messages) == 1


def test_instance_key_from_path(client):
    body = {"event": "connection.update", "data": {"state": "open"}}

    response = client.post("/webhook/school-1", json=body)

    assert response.status_code == 200
    assert response.json()["status"] == "connected"


def test_unknown_instance_answers_200_with_error(client):
    body = {"event": "connection.update", "instance": "other", "data": {"state": "open"}}

    response = client.post("/webhook", json=body)

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["error"] == "instance_not_found"


def test_unsupported_event_is_acknowledged(client):
    response = client.post("/webhook", json={"event": "presence.update", "instance": "school-1"})

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["processed"] is False


def test_missing_event_field(client):
    response = client.post("/webhook", json={"instance": "school-1", "data": {}})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing 'event' field"


def test_non_object_body(client):
    response = client.post("/webhook", json=[1, 2, 3])

    assert response.status_code == 400


def test_invalid_json(client):
    response = client.post("/webhook", content=b"{not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400


def test_secret_is_enforced_when_configured(client, monkeypatch):
    monkeypatch.setattr("app.features.messaging.api.router.settings.WEBHOOK_SECRET", "s3cret")

    rejected = client.post("/webhook", json=_text_message())
    by_header = client.post("/webhook", json=_text_message("wamid-2"), headers={"x-webhook-secret": "s3cret"})
    by_query = client.post("/webhook?secret=s3cret", json=_text_message("wamid-3"))

    assert rejected.status_code == 401
    assert by_header.status_code == 200
    assert by_query.status_code == 200
