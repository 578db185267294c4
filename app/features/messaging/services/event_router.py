"""
Webhook event router.

One entry point, ``handle(event_name, payload)``, classifies a provider
delivery and dispatches it to the handler for its kind. Deliveries are
at-least-once on the provider side, so every handler is safe to repeat.
"""

from typing import Any

from app.features.documents.domain import DocumentType
from app.features.documents.services.intake import DocumentIntakeService
from app.features.messaging.domain import (
    STATUS_RANK,
    ConnectionUpdateEvent,
    InboundMessageItem,
    Instance,
    InstanceStatus,
    Message,
    MessageDirection,
    MessagesReceivedEvent,
    MessageStatus,
    MessageStatusEvent,
    ProcessingOutcome,
    QrUpdateEvent,
    UnrecognizedEvent,
    WebhookEvent,
    parse_event,
)
from app.features.messaging.repository import ContactRepository, InstanceRepository, MessageRepository
from app.infrastructure.observability.logging import bind_log_context, get_logger
from app.services.notifications import Audience, NotificationKind, NotificationPayload, NotificationService

logger = get_logger(__name__)

CONNECTION_STATE_MAP = {
    "open": InstanceStatus.CONNECTED,
    "connected": InstanceStatus.CONNECTED,
    "connecting": InstanceStatus.CONNECTING,
    "close": InstanceStatus.DISCONNECTED,
    "closed": InstanceStatus.DISCONNECTED,
    "disconnected": InstanceStatus.DISCONNECTED,
}

EXPECTED_TRANSITIONS = {
    (InstanceStatus.CONNECTING, InstanceStatus.CONNECTED),
    (InstanceStatus.CONNECTED, InstanceStatus.DISCONNECTED),
    (InstanceStatus.QR_PENDING, InstanceStatus.CONNECTED),
}

DOCUMENT_MEDIA_KINDS = frozenset({"image", "document"})

# broadcast pseudo-chats, not conversations
IGNORED_ADDRESSES = frozenset({"status@broadcast"})


def map_connection_state(raw_state: str) -> str:
    """Known provider states map to InstanceStatus; anything else is kept verbatim."""
    return CONNECTION_STATE_MAP.get(raw_state.strip().lower(), raw_state.strip())


class WebhookEventRouter:
    def __init__(
        self,
        *,
        instances: InstanceRepository,
        contacts: ContactRepository,
        messages: MessageRepository,
        intake: DocumentIntakeService,
        notifier: NotificationService,
    ):
        self.instances = instances
        self.contacts = contacts
        self.messages = messages
        self.intake = intake
        self.notifier = notifier

    async def handle(
        self, raw_event_name: str, raw_payload: dict[str, Any], *, instance_key: str | None = None
    ) -> ProcessingOutcome:
        event = parse_event(raw_event_name, raw_payload, instance_key)
        return await self.dispatch(event)

    async def dispatch(self, event: WebhookEvent) -> ProcessingOutcome:
        bind_log_context(webhook_event=event.event_name, instance_key=event.instance_key)

        if isinstance(event, UnrecognizedEvent):
            logger.info("Webhook event not handled", reason=event.reason)
            return ProcessingOutcome(
                success=True,
                processed=False,
                event=event.event_name,
                message=f"Event {event.event_name} received but not supported: {event.reason}",
            )

        try:
            instance = await self.instances.get_by_key(event.instance_key) if event.instance_key else None
            if instance is None:
                # configuration problem on our side; retrying will not help
                logger.warning("Webhook for unknown instance")
                return ProcessingOutcome(
                    success=False,
                    processed=False,
                    event=event.event_name,
                    message=f"Instance not found: {event.instance_key}",
                    error_code="instance_not_found",
                )

            if isinstance(event, ConnectionUpdateEvent):
                return await self._on_connection_update(instance, event)
            if isinstance(event, QrUpdateEvent):
                return await self._on_qr_update(instance, event)
            if isinstance(event, MessagesReceivedEvent):
                return await self._on_messages(instance, event)
            if isinstance(event, MessageStatusEvent):
                return await self._on_status(instance, event)
        except Exception as e:
            logger.exception("Webhook handler failed", error=str(e))
            return ProcessingOutcome(
                success=False,
                processed=False,
                event=event.event_name,
                message="Error processing webhook",
                error_code="processing_error",
                data={"detail": str(e)},
            )

        raise TypeError(f"Unhandled event variant {type(event).__name__}")

    # ------------------------------------------------------------------
    # connection / QR
    # ------------------------------------------------------------------

    async def _on_connection_update(self, instance: Instance, event: ConnectionUpdateEvent) -> ProcessingOutcome:
        new_status = map_connection_state(event.raw_state)
        if new_status not in set(InstanceStatus):
            logger.warning("Unknown connection state stored verbatim", raw_state=event.raw_state)

        updated, previous = await self.instances.update_status(instance, new_status)
        changed = previous != new_status

        if changed and (previous, new_status) not in EXPECTED_TRANSITIONS:
            logger.warning("Unexpected instance status transition", previous=previous, status=new_status)

        if changed and new_status in (InstanceStatus.CONNECTED, InstanceStatus.DISCONNECTED):
            connected = new_status == InstanceStatus.CONNECTED
            await self.notifier.notify(
                Audience(school_id=updated.school_id),
                NotificationPayload(
                    title=f"WhatsApp {'Conectado' if connected else 'Desconectado'}",
                    message=(
                        f"A instância {updated.name or updated.instance_key} do WhatsApp "
                        f"{'foi conectada' if connected else 'foi desconectada'}."
                    ),
                    kind=NotificationKind.SYSTEM,
                    data={"instanceId": updated.id, "status": str(new_status)},
                ),
            )

        logger.info("Instance status processed", previous=previous, status=str(new_status), changed=changed)
        return ProcessingOutcome(
            success=True,
            processed=True,
            event=event.event_name,
            message="Connection status updated" if changed else "Connection status unchanged",
            data={"instanceId": updated.id, "status": str(new_status), "previousStatus": previous, "changed": changed},
        )

    async def _on_qr_update(self, instance: Instance, event: QrUpdateEvent) -> ProcessingOutcome:
        if not event.qr_code:
            return ProcessingOutcome(
                success=False,
                processed=False,
                event=event.event_name,
                message="QR code missing from payload",
                error_code="missing_qr",
            )

        updated, previous = await self.instances.mark_qr_pending(instance, event.qr_code)
        await self.notifier.notify(
            Audience(school_id=updated.school_id),
            NotificationPayload(
                title="QR Code Atualizado",
                message=f"Novo QR code disponível para a instância {updated.name or updated.instance_key} do WhatsApp.",
                kind=NotificationKind.SYSTEM,
                data={"instanceId": updated.id, "qrCodeAvailable": True},
            ),
        )
        return ProcessingOutcome(
            success=True,
            processed=True,
            event=event.event_name,
            message="QR code updated",
            data={"instanceId": updated.id, "status": str(InstanceStatus.QR_PENDING), "previousStatus": previous},
        )

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------

    async def _on_messages(self, instance: Instance, event: MessagesReceivedEvent) -> ProcessingOutcome:
        results: list[dict[str, Any]] = []
        counts = {"processed": 0, "duplicates": 0, "skipped": 0, "failed": len(event.invalid_items)}

        for reason in event.invalid_items:
            logger.warning("Malformed message item skipped", reason=reason)

        for item in event.items:
            try:
                result = await self._process_message_item(instance, item)
            except Exception as e:
                # isolate the failure to this item
                logger.exception("Message item failed", external_id=item.external_id, error=str(e))
                result = {"externalId": item.external_id, "result": "failed", "error": str(e)}
                counts["failed"] += 1
            else:
                counts[result["result"]] += 1
            results.append(result)

        return ProcessingOutcome(
            success=counts["failed"] == 0,
            processed=counts["processed"] > 0,
            event=event.event_name,
            message=(
                f"{counts['processed']} processed, {counts['duplicates']} duplicates, "
                f"{counts['skipped']} skipped, {counts['failed']} failed"
            ),
            data={"counts": counts, "results": results, "invalidItems": list(event.invalid_items)},
        )

    async def _process_message_item(self, instance: Instance, item: InboundMessageItem) -> dict[str, Any]:
        if item.remote_jid in IGNORED_ADDRESSES:
            return {"externalId": item.external_id, "result": "skipped"}

        existing = await self.messages.get_by_external_id(instance.id, item.external_id)
        if existing is not None:
            return await self._on_redelivery(existing, item)

        contact = await self.contacts.upsert(
            instance.id,
            item.remote_jid,
            phone=item.phone,
            display_name=None if item.from_me else item.push_name,
            is_group=item.is_group,
        )

        message = await self.messages.insert(
            instance_id=instance.id,
            contact_id=contact.id,
            direction=MessageDirection.OUTBOUND if item.from_me else MessageDirection.INBOUND,
            content=item.text,
            status=MessageStatus.SENT if item.from_me else MessageStatus.RECEIVED,
            external_id=item.external_id,
            media_kind=item.media_kind,
            media_url=item.media_url,
            media_mime_type=item.media_mime_type,
            created_at=item.timestamp,
        )
        if message is None:
            # lost the race against a concurrent delivery of the same event
            return {"externalId": item.external_id, "result": "duplicates"}

        result: dict[str, Any] = {"externalId": item.external_id, "result": "processed", "messageId": message.id}
        if item.from_me:
            return result

        if item.media_kind in DOCUMENT_MEDIA_KINDS and item.media_url:
            if contact.enrollment_id and not contact.is_group:
                receipt = await self.intake.submit(
                    enrollment_id=contact.enrollment_id,
                    media_url=item.media_url,
                    source_message_id=message.id,
                    expected_type=DocumentType.parse(item.text),
                    filename=item.media_filename,
                )
                result.update({"documentId": receipt.document.id, "jobId": receipt.job_id})
            else:
                logger.info(
                    "Media stored without extraction; contact not linked to an enrollment",
                    contact_id=contact.id,
                    message_id=message.id,
                )

        preview = item.text[:100] if item.text else f"[{item.media_kind or 'mensagem'}]"
        payload = NotificationPayload(
            title=f"Nova mensagem de {contact.display_name or contact.phone}",
            message=preview,
            kind=NotificationKind.MESSAGE,
            data={"contactId": contact.id, "instanceId": instance.id, "messageId": message.id},
            related_id=message.id,
            related_type="whatsapp_message",
        )
        await self.notifier.notify(Audience(school_id=instance.school_id), payload)
        if contact.assigned_user_id:
            await self.notifier.notify(Audience(user_id=contact.assigned_user_id), payload)

        return result

    async def _on_redelivery(self, existing: Message, item: InboundMessageItem) -> dict[str, Any]:
        """A repeated delivery only completes a document intake the first one left unfinished."""
        result: dict[str, Any] = {"externalId": item.external_id, "result": "duplicates"}
        if item.from_me or item.media_kind not in DOCUMENT_MEDIA_KINDS or not item.media_url:
            return result

        contact = await self.contacts.get(existing.contact_id)
        if contact is None or not contact.enrollment_id or contact.is_group:
            return result

        receipt = await self.intake.resume(
            enrollment_id=contact.enrollment_id,
            media_url=item.media_url,
            source_message_id=existing.id,
            expected_type=DocumentType.parse(item.text),
            filename=item.media_filename,
        )
        if receipt:
            result.update({"documentId": receipt.document.id, "jobId": receipt.job_id})
        return result

    # ------------------------------------------------------------------
    # delivery status
    # ------------------------------------------------------------------

    async def _on_status(self, instance: Instance, event: MessageStatusEvent) -> ProcessingOutcome:
        updated, unknown, ignored = 0, 0, 0
        for item in event.items:
            message = await self.messages.get_by_external_id(instance.id, item.external_id)
            if message is None:
                unknown += 1
                continue
            if item.status is None:
                logger.warning("Unknown delivery status ignored", raw_status=item.raw_status)
                ignored += 1
                continue
            if not self._status_moves_forward(message.status, item.status):
                ignored += 1
                continue
            await self.messages.update_status(message.id, item.status)
            updated += 1

        if updated == 0 and unknown and not ignored:
            message = "Message not found"
        else:
            message = f"{updated} status updates applied"

        return ProcessingOutcome(
            success=True,
            processed=updated > 0,
            event=event.event_name,
            message=message,
            data={"updated": updated, "unknown": unknown, "ignored": ignored},
        )

    @staticmethod
    def _status_moves_forward(current: MessageStatus, new: MessageStatus) -> bool:
        if current == MessageStatus.FAILED:
            return False
        if new == MessageStatus.FAILED:
            return current != MessageStatus.READ
        return STATUS_RANK.get(new, 0) > STATUS_RANK.get(current, 0)
