"""Hands media received over chat to the document pipeline."""

from dataclasses import dataclass

from app.features.documents.domain import Document, DocumentStatus, DocumentType
from app.features.documents.repository.document_repository import DocumentRepository
from app.features.queue import DurableJobQueue, JobPriority
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DOCUMENT_EXTRACTION_JOB = "document_extraction"


@dataclass(slots=True)
class IntakeReceipt:
    document: Document
    job_id: str


class DocumentIntakeService:
    def __init__(self, documents: DocumentRepository, queue: DurableJobQueue):
        self.documents = documents
        self.queue = queue

    async def submit(
        self,
        *,
        enrollment_id: int,
        media_url: str,
        source_message_id: int | None,
        expected_type: DocumentType | None = None,
        filename: str | None = None,
    ) -> IntakeReceipt:
        """Create the Document row and queue its extraction; the heavy work happens later."""
        document = await self.documents.create_document(
            enrollment_id,
            expected_type or DocumentType.OTHER,
            media_url,
            source_message_id=source_message_id,
        )
        return await self._queue_extraction(document, expected_type, filename)

    async def resume(
        self,
        *,
        enrollment_id: int,
        media_url: str,
        source_message_id: int,
        expected_type: DocumentType | None = None,
        filename: str | None = None,
    ) -> IntakeReceipt | None:
        """
        Finish an intake that a previous delivery of the same message left
        incomplete.

        Returns None when the message's document already has an extraction
        job or has moved past ``pending``.
        """
        document = await self.documents.get_by_source_message(source_message_id)
        if document is None:
            return await self.submit(
                enrollment_id=enrollment_id,
                media_url=media_url,
                source_message_id=source_message_id,
                expected_type=expected_type,
                filename=filename,
            )
        if document.extraction_job_id or document.status != DocumentStatus.PENDING:
            return None

        logger.warning("Re-queueing document left without an extraction job", document_id=document.id)
        return await self._queue_extraction(document, expected_type, filename)

    async def _queue_extraction(
        self, document: Document, expected_type: DocumentType | None, filename: str | None
    ) -> IntakeReceipt:
        job_id = await self.queue.enqueue(
            DOCUMENT_EXTRACTION_JOB,
            {
                "document_id": document.id,
                "media_url": document.file_url,
                "message_id": document.source_message_id,
                "expected_type": str(expected_type) if expected_type else None,
                "filename": filename,
            },
            priority=JobPriority.HIGH,
        )
        await self.documents.set_extraction_job(document.id, job_id)
        document.extraction_job_id = job_id
        logger.info(
            "Document queued for extraction",
            document_id=document.id,
            enrollment_id=document.enrollment_id,
            job_id=job_id,
        )
        return IntakeReceipt(document=document, job_id=job_id)
