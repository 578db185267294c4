"""
Outbound message job.

The idempotency key is stored on the outbound row, so a job that ran to
completion once is a no-op when the queue hands it out again.
"""

from typing import Any

from app.features.messaging.domain import MessageDirection, MessageStatus
from app.features.messaging.repository import ContactRepository, InstanceRepository, MessageRepository
from app.features.queue import Job, NonRetryableJobError
from app.infrastructure.observability.logging import get_logger
from app.services.messaging_client import MessagingClient

logger = get_logger(__name__)

SEND_MESSAGE_JOB = "send_message"


class SendMessageJob:
    job_type = SEND_MESSAGE_JOB

    def __init__(
        self,
        *,
        instances: InstanceRepository,
        contacts: ContactRepository,
        messages: MessageRepository,
        client: MessagingClient,
    ):
        self.instances = instances
        self.contacts = contacts
        self.messages = messages
        self.client = client

    async def __call__(self, job: Job) -> dict[str, Any] | None:
        payload = job.payload
        try:
            instance_id = int(payload["instance_id"])
            contact_id = int(payload["contact_id"])
            text = str(payload["text"])
        except (KeyError, TypeError, ValueError) as e:
            raise NonRetryableJobError(f"Invalid send_message payload: {e}") from e
        idempotency_key = payload.get("idempotency_key") or f"job:{job.id}"

        existing = await self.messages.get_by_idempotency_key(idempotency_key)
        if existing is not None:
            logger.info("Message already sent, skipping", idempotency_key=idempotency_key, message_id=existing.id)
            return None

        instance = await self.instances.get(instance_id)
        contact = await self.contacts.get(contact_id)
        if instance is None or contact is None:
            raise NonRetryableJobError(f"Instance {instance_id} or contact {contact_id} not found")

        external_id = await self.client.send_text(instance.instance_key, contact.phone, text)

        message = await self.messages.insert(
            instance_id=instance.id,
            contact_id=contact.id,
            direction=MessageDirection.OUTBOUND,
            content=text,
            status=MessageStatus.SENT,
            external_id=external_id,
            idempotency_key=idempotency_key,
        )
        if message is None:
            # the provider echo (fromMe webhook) stored the row first
            logger.info("Outbound message row already present", external_id=external_id)
            return None

        logger.info("Outbound message sent", message_id=message.id, external_id=external_id)
        return {"message_id": message.id, "external_id": external_id}
