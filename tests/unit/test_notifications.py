import json

import httpx
import pytest

from app.services.notifications import Audience, NotificationKind, NotificationPayload, NotificationService


def test_audience_needs_exactly_one_target():
    assert Audience(user_id=7).channel == "private-user-7"
    assert Audience(school_id=10).channel == "private-school-10"
    with pytest.raises(ValueError):
        Audience()
    with pytest.raises(ValueError):
        Audience(user_id=7, school_id=10)


def test_payload_wire_format_omits_empty_fields():
    minimal = NotificationPayload(title="Oi", message="Tudo bem?")
    full = NotificationPayload(
        title="Documento processado",
        message="Documento rg validado.",
        kind=NotificationKind.ENROLLMENT,
        data={"documentId": 3},
        related_id=3,
        related_type="document",
    )

    assert minimal.to_wire() == {"title": "Oi", "message": "Tudo bem?", "type": "system"}
    assert full.to_wire()["relatedType"] == "document"
    assert full.to_wire()["type"] == "enrollment"


@pytest.mark.asyncio
async def test_unconfigured_provider_only_logs():
    service = NotificationService(url=None)
    await service.start()

    assert await service.notify(Audience(school_id=10), NotificationPayload(title="t", message="m")) is False


@pytest.mark.asyncio
async def test_notification_is_posted_to_the_channel():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = NotificationService(url="https://push.example/events", token="tok", client=client)

    delivered = await service.notify(Audience(user_id=7), NotificationPayload(title="t", message="m"))

    assert delivered is True
    (request,) = requests
    assert request.headers["Authorization"] == "Bearer tok"
    body = json.loads(request.content)
    assert body["channel"] == "private-user-7"
    assert body["event"] == "notification"
    assert body["data"]["title"] == "t"
    await client.aclose()


@pytest.mark.asyncio
async def test_provider_failure_is_reported_not_raised():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    service = NotificationService(url="https://push.example/events", client=client)

    assert await service.notify(Audience(school_id=10), NotificationPayload(title="t", message="m")) is False
    await client.aclose()
