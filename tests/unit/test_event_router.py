import pytest

from app.features.documents.domain import DocumentType
from app.features.documents.services.intake import DOCUMENT_EXTRACTION_JOB, DocumentIntakeService
from app.features.messaging.domain import InstanceStatus, MessageDirection, MessageStatus, ProcessingOutcome
from app.features.messaging.services.event_router import WebhookEventRouter, map_connection_state

PARENT = "5511999990000@s.whatsapp.net"


@pytest.fixture
def router(instances, contacts, messages, documents, fake_queue, notifier):
    instances.add("school-1", instance_id=1, school_id=10)
    return WebhookEventRouter(
        instances=instances,
        contacts=contacts,
        messages=messages,
        intake=DocumentIntakeService(documents, fake_queue),
        notifier=notifier,
    )


def _message(external_id, jid=PARENT, *, from_me=False, text="Olá, bom dia", media=None):
    message = {"imageMessage": media} if media else {"conversation": text}
    return {
        "key": {"id": external_id, "remoteJid": jid, "fromMe": from_me},
        "pushName": "Ana",
        "message": message,
        "messageTimestamp": 1767268800,
    }


def _upsert(*items):
    return {"instance": "school-1", "data": {"messages": list(items)}}


def test_map_connection_state():
    assert map_connection_state("open") == InstanceStatus.CONNECTED
    assert map_connection_state("CLOSE") == InstanceStatus.DISCONNECTED
    assert map_connection_state("refused") == "refused"


@pytest.mark.asyncio
async def test_connection_update_notifies_once_and_redelivery_is_a_no_op(router, instances, notifier):
    body = {"instance": "school-1", "data": {"state": "open"}}

    first = await router.handle("connection.update", body)
    second = await router.handle("connection.update", body)

    assert first.success and first.processed
    assert first.data["changed"] is True
    assert first.data["previousStatus"] == InstanceStatus.CONNECTING
    assert second.data["changed"] is False
    assert second.message == "Connection status unchanged"
    assert notifier.channels() == ["private-school-10"]
    assert instances.by_key["school-1"].status == InstanceStatus.CONNECTED
    assert instances.by_key["school-1"].last_connected_at is not None


@pytest.mark.asyncio
async def test_qr_pending_to_connected(router, instances, notifier):
    await router.handle(
        "QRCODE_UPDATED", {"instance": "school-1", "data": {"qrcode": {"base64": "data:image/png;base64,AAA"}}}
    )
    assert instances.by_key["school-1"].status == InstanceStatus.QR_PENDING
    assert instances.by_key["school-1"].qr_code == "data:image/png;base64,AAA"

    outcome = await router.handle("CONNECTION_UPDATE", {"instance": "school-1", "data": {"state": "open"}})

    assert outcome.data["previousStatus"] == InstanceStatus.QR_PENDING
    assert [payload.title for _, payload in notifier.sent] == ["QR Code Atualizado", "WhatsApp Conectado"]


@pytest.mark.asyncio
async def test_qr_update_without_code(router, notifier):
    outcome = await router.handle("qr", {"instance": "school-1", "data": {}})

    assert outcome.success is False
    assert outcome.error_code == "missing_qr"
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_unknown_instance(router, notifier):
    outcome = await router.handle("connection.update", {"instance": "nope", "data": {"state": "open"}})

    assert outcome.success is False
    assert outcome.processed is False
    assert outcome.error_code == "instance_not_found"
    assert outcome.to_response()["error"] == "instance_not_found"


@pytest.mark.asyncio
async def test_unsupported_event_is_acknowledged(router, instances):
    outcome = await router.handle("presence.update", {"instance": "school-1"})

    assert outcome.success is True
    assert outcome.processed is False
    assert instances.lookups == 0


@pytest.mark.asyncio
async def test_inbound_text_creates_message_and_notifies(router, contacts, messages, notifier):
    contacts.link(1, PARENT, assigned_user_id=7)

    outcome = await router.handle("messages.upsert", _upsert(_message("wamid-1")))

    assert outcome.success and outcome.processed
    (stored,) = messages.messages.values()
    assert stored.direction == MessageDirection.INBOUND
    assert stored.status == MessageStatus.RECEIVED
    assert stored.content == "Olá, bom dia"
    assert notifier.channels() == ["private-school-10", "private-user-7"]
    assert notifier.sent[0][1].title == "Nova mensagem de Ana"


@pytest.mark.asyncio
async def test_duplicate_delivery_stores_one_message(router, messages, notifier):
    body = _upsert(_message("wamid-42"))

    first = await router.handle("messages.upsert", body)
    second = await router.handle("messages.upsert", body)

    assert len(messages.messages) == 1
    assert first.data["counts"]["processed"] == 1
    assert second.data["counts"]["duplicates"] == 1
    assert second.success is True
    assert second.processed is False
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_own_messages_are_stored_without_notification(router, messages, notifier):
    await router.handle("messages.upsert", _upsert(_message("wamid-5", from_me=True)))

    (stored,) = messages.messages.values()
    assert stored.direction == MessageDirection.OUTBOUND
    assert stored.status == MessageStatus.SENT
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_broadcast_status_posts_are_skipped(router, messages):
    outcome = await router.handle("messages.upsert", _upsert(_message("wamid-6", jid="status@broadcast")))

    assert outcome.data["counts"]["skipped"] == 1
    assert messages.messages == {}


@pytest.mark.asyncio
async def test_document_from_enrolled_contact_is_queued(router, contacts, documents, fake_queue, notifier):
    contacts.link(1, PARENT, enrollment_id=55)
    media = {"url": "https://media.example/rg.jpg", "mimetype": "image/jpeg", "caption": "RG"}

    outcome = await router.handle("messages.upsert", _upsert(_message("wamid-7", media=media)))

    (result,) = outcome.data["results"]
    (job,) = fake_queue.jobs
    assert job["job_type"] == DOCUMENT_EXTRACTION_JOB
    assert job["payload"]["document_id"] == result["documentId"]
    assert job["payload"]["expected_type"] == "rg"
    assert result["jobId"] == job["id"]
    document = documents.documents[result["documentId"]]
    assert document.enrollment_id == 55
    assert document.document_type == DocumentType.RG
    assert document.source_message_id == result["messageId"]
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_media_without_enrollment_is_not_extracted(router, fake_queue, messages):
    media = {"url": "https://media.example/photo.jpg", "mimetype": "image/jpeg"}

    outcome = await router.handle("messages.upsert", _upsert(_message("wamid-8", media=media)))

    assert outcome.data["counts"]["processed"] == 1
    assert fake_queue.jobs == []
    (stored,) = messages.messages.values()
    assert stored.media_url == "https://media.example/photo.jpg"


@pytest.mark.asyncio
async def test_group_media_is_not_extracted(router, contacts, fake_queue):
    contacts.link(1, "120363@g.us", enrollment_id=55)
    media = {"url": "https://media.example/rg.jpg", "mimetype": "image/jpeg"}

    await router.handle("messages.upsert", _upsert(_message("wamid-9", jid="120363@g.us", media=media)))

    assert fake_queue.jobs == []


@pytest.mark.asyncio
async def test_item_failure_does_not_stop_the_batch(router, messages, monkeypatch):
    original_insert = messages.insert

    async def flaky_insert(**kwargs):
        if kwargs["external_id"] == "wamid-bad":
            raise RuntimeError("database unavailable")
        return await original_insert(**kwargs)

    monkeypatch.setattr(messages, "insert", flaky_insert)

    outcome = await router.handle("messages.upsert", _upsert(_message("wamid-bad"), _message("wamid-good")))

    assert outcome.success is False
    assert outcome.processed is True
    assert outcome.data["counts"]["failed"] == 1
    assert outcome.data["counts"]["processed"] == 1
    assert outcome.message == "1 processed, 0 duplicates, 0 skipped, 1 failed"


@pytest.mark.asyncio
async def test_malformed_items_count_as_failed(router):
    outcome = await router.handle("messages.upsert", _upsert({"key": {"remoteJid": PARENT}}, _message("wamid-10")))

    assert outcome.data["counts"]["failed"] == 1
    assert outcome.data["counts"]["processed"] == 1
    assert len(outcome.data["invalidItems"]) == 1


@pytest.mark.asyncio
async def test_redelivery_requeues_document_left_without_a_job(router, contacts, documents, fake_queue):
    contacts.link(1, PARENT, enrollment_id=55)
    media = {"url": "https://media.example/rg.jpg", "mimetype": "image/jpeg", "caption": "RG"}
    fake_queue.fail = True

    first = await router.handle("messages.upsert", _upsert(_message("wamid-11", media=media)))

    assert first.data["counts"]["failed"] == 1
    (document,) = documents.documents.values()
    assert document.extraction_job_id is None

    fake_queue.fail = False
    second = await router.handle("messages.upsert", _upsert(_message("wamid-11", media=media)))

    (result,) = second.data["results"]
    (job,) = fake_queue.jobs
    assert result["result"] == "duplicates"
    assert result["jobId"] == job["id"]
    assert job["payload"]["document_id"] == document.id
    assert job["payload"]["expected_type"] == "rg"
    assert documents.documents[document.id].extraction_job_id == job["id"]
    assert len(documents.documents) == 1


@pytest.mark.asyncio
async def test_redelivery_of_queued_document_is_a_plain_duplicate(router, contacts, fake_queue):
    contacts.link(1, PARENT, enrollment_id=55)
    media = {"url": "https://media.example/rg.jpg", "mimetype": "image/jpeg"}

    await router.handle("messages.upsert", _upsert(_message("wamid-12", media=media)))
    second = await router.handle("messages.upsert", _upsert(_message("wamid-12", media=media)))

    assert second.data["results"] == [{"externalId": "wamid-12", "result": "duplicates"}]
    assert len(fake_queue.jobs) == 1


def test_response_keeps_fixed_keys_over_handler_data():
    outcome = ProcessingOutcome(
        success=True,
        processed=True,
        event="messages.upsert",
        message="1 processed",
        data={"processed": 1, "success": "no", "counts": {"processed": 1}},
    )

    body = outcome.to_response()

    assert body["processed"] is True
    assert body["success"] is True
    assert body["counts"] == {"processed": 1}


async def _outbound(messages, external_id, status):
    return await messages.insert(
        instance_id=1,
        contact_id=1,
        direction=MessageDirection.OUTBOUND,
        content="Recebemos seu documento",
        status=status,
        external_id=external_id,
    )


def _status(external_id, status):
    return {"instance": "school-1", "data": [{"key": {"id": external_id}, "update": {"status": status}}]}


@pytest.mark.asyncio
async def test_status_only_moves_forward(router, messages):
    message = await _outbound(messages, "wamid-20", MessageStatus.SENT)

    delivered = await router.handle("messages.update", _status("wamid-20", "DELIVERY_ACK"))
    backwards = await router.handle("messages.update", _status("wamid-20", "SERVER_ACK"))

    assert delivered.data["updated"] == 1
    assert backwards.data["ignored"] == 1
    assert backwards.processed is False
    assert messages.messages[message.id].status == MessageStatus.DELIVERED


@pytest.mark.asyncio
async def test_failure_status_rules(router, messages):
    read = await _outbound(messages, "wamid-21", MessageStatus.READ)
    sent = await _outbound(messages, "wamid-22", MessageStatus.SENT)

    await router.handle("message.ack", _status("wamid-21", "ERROR"))
    await router.handle("message.ack", _status("wamid-22", "ERROR"))
    await router.handle("message.ack", _status("wamid-22", "READ"))

    assert messages.messages[read.id].status == MessageStatus.READ
    assert messages.messages[sent.id].status == MessageStatus.FAILED


@pytest.mark.asyncio
async def test_status_for_unknown_message(router):
    outcome = await router.handle("messages.update", _status("wamid-missing", "READ"))

    assert outcome.success is True
    assert outcome.processed is False
    assert outcome.message == "Message not found"
