"""
Document extraction job.

Runs inside the queue worker: download the media, OCR it, store the
extracted fields, cross-validate them against the enrollment's other
documents and append a validation row. Safe to run twice for the same
source message.
"""

from typing import Any

from app.config import settings
from app.features.documents.domain import Document, DocumentStatus, ExtractionResult, Verdict
from app.features.documents.extraction import TextExtractionEngine
from app.features.documents.repository.document_repository import DocumentRepository
from app.features.documents.services.intake import DOCUMENT_EXTRACTION_JOB
from app.features.documents.validation import FIELD_SETS_NAMESPACE, CrossValidationEngine, field_sets_cache_key
from app.features.messaging.jobs.send_message_job import SEND_MESSAGE_JOB
from app.features.messaging.repository import ContactRepository, InstanceRepository, MessageRepository
from app.features.queue import DurableJobQueue, Job, JobPriority, NonRetryableJobError
from app.infrastructure.observability.logging import bind_log_context, get_logger
from app.services.cache import TwoTierCache
from app.services.messaging_client import MessagingClient
from app.services.notifications import Audience, NotificationKind, NotificationPayload, NotificationService

logger = get_logger(__name__)

STATUS_LABELS = {
    DocumentStatus.VALID: "validado",
    DocumentStatus.INVALID: "com divergências",
    DocumentStatus.NEEDS_REVIEW: "em revisão",
    DocumentStatus.PENDING: "recebido",
}


def final_status(extraction: ExtractionResult, verdict: Verdict) -> DocumentStatus:
    """An invalid verdict always wins; otherwise low extraction quality forces a review."""
    if verdict == Verdict.INVALID:
        return DocumentStatus.INVALID
    if extraction.needs_review:
        return DocumentStatus.NEEDS_REVIEW
    return DocumentStatus(verdict)


class DocumentExtractionJob:
    """Handler for ``document_extraction`` jobs."""

    job_type = DOCUMENT_EXTRACTION_JOB

    def __init__(
        self,
        *,
        documents: DocumentRepository,
        messages: MessageRepository,
        contacts: ContactRepository,
        instances: InstanceRepository,
        media: MessagingClient,
        extractor: TextExtractionEngine,
        validator: CrossValidationEngine,
        notifier: NotificationService,
        queue: DurableJobQueue,
        cache: TwoTierCache | None = None,
        send_acknowledgement: bool | None = None,
    ):
        self.documents = documents
        self.messages = messages
        self.contacts = contacts
        self.instances = instances
        self.media = media
        self.extractor = extractor
        self.validator = validator
        self.notifier = notifier
        self.queue = queue
        self.cache = cache
        self.send_acknowledgement = (
            send_acknowledgement if send_acknowledgement is not None else settings.SEND_DOCUMENT_ACKNOWLEDGEMENT
        )

    async def __call__(self, job: Job) -> dict[str, Any] | None:
        payload = job.payload
        try:
            document_id = int(payload["document_id"])
        except (KeyError, TypeError, ValueError) as e:
            raise NonRetryableJobError(f"Invalid document_extraction payload: {e}") from e

        message_id = payload.get("message_id")
        bind_log_context(document_id=document_id, source_message_id=message_id)

        document = await self.documents.get_document(document_id)
        if document is None:
            raise NonRetryableJobError(f"Document {document_id} not found")

        if await self.documents.has_validation_for_source(document.id, message_id):
            logger.info("Document already validated for this message, skipping")
            return None

        data = await self.media.download_media(payload.get("media_url") or document.file_url)
        extraction = await self.extractor.extract(
            data,
            expected_type=document.document_type if payload.get("expected_type") else None,
            filename=payload.get("filename"),
        )

        if extraction.document_type != document.document_type:
            await self.documents.update_document_type(document.id, extraction.document_type)
            document.document_type = extraction.document_type

        await self.documents.replace_metadata(document.id, extraction.fields)
        if self.cache is not None:
            await self.cache.delete(field_sets_cache_key(document.enrollment_id), namespace=FIELD_SETS_NAMESPACE)

        cross_validation = await self.validator.cross_validate(
            document.id,
            document.document_type,
            extraction.normalized_fields(),
            document.enrollment_id,
        )
        status = final_status(extraction, cross_validation.verdict)

        errors = [f"missing required field: {name}" for name in extraction.missing_required]
        errors += [
            f"{match.field_name} differs from {match.other_document_type} #{match.other_document_id}"
            for match in cross_validation.matches
            if not match.matched
        ]
        validation = await self.documents.record_validation(
            document,
            status=status,
            confidence=extraction.confidence,
            extracted_data=extraction.to_dict(),
            errors=errors,
            warnings=list(extraction.warnings),
            cross_validation=cross_validation.to_dict(),
            source_message_id=message_id,
        )

        await self._notify(document, status, validation.id, message_id)

        logger.info(
            "Document processed",
            document_type=str(document.document_type),
            status=str(status),
            confidence=extraction.confidence,
            validation_id=validation.id,
        )
        return {"validation_id": validation.id, "status": str(status)}

    async def _notify(self, document: Document, status: DocumentStatus, validation_id: str, message_id) -> None:
        if message_id is None:
            return

        message = await self.messages.get(int(message_id))
        if message is None:
            logger.warning("Source message not found, skipping notifications")
            return
        contact = await self.contacts.get(message.contact_id)
        instance = await self.instances.get(message.instance_id)
        if contact is None or instance is None:
            logger.warning("Contact or instance missing for source message, skipping notifications")
            return

        payload = NotificationPayload(
            title="Documento processado",
            message=f"Documento {document.document_type} {STATUS_LABELS[status]}.",
            kind=NotificationKind.ENROLLMENT,
            data={
                "documentId": document.id,
                "enrollmentId": document.enrollment_id,
                "status": str(status),
                "validationId": validation_id,
            },
            related_id=document.id,
            related_type="document",
        )
        await self.notifier.notify(Audience(school_id=instance.school_id), payload)
        if contact.assigned_user_id:
            await self.notifier.notify(Audience(user_id=contact.assigned_user_id), payload)

        if self.send_acknowledgement:
            await self.queue.enqueue(
                SEND_MESSAGE_JOB,
                {
                    "instance_id": instance.id,
                    "contact_id": contact.id,
                    "text": f"Recebemos seu documento ({document.document_type}). Status: {STATUS_LABELS[status]}.",
                    "idempotency_key": f"validation:{validation_id}",
                },
                priority=JobPriority.NORMAL,
            )
