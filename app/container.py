"""
Long-lived pipeline components, built once per process.

The API lifespan and the standalone worker both construct a
PipelineContainer, call ``start()`` and hand it around explicitly; there
are no module-level singletons for the pool, cache or queue.
"""

from app.config import settings
from app.db.pool import DatabasePoolManager
from app.features.documents.extraction import TextExtractionEngine, build_backend
from app.features.documents.jobs.extraction_job import DocumentExtractionJob
from app.features.documents.repository.document_repository import DocumentRepository
from app.features.documents.services.intake import DocumentIntakeService
from app.features.documents.validation import CrossValidationEngine
from app.features.messaging.jobs.send_message_job import SendMessageJob
from app.features.messaging.repository import ContactRepository, InstanceRepository, MessageRepository
from app.features.messaging.services.event_router import WebhookEventRouter
from app.features.queue import DurableJobQueue, build_job_store
from app.infrastructure.audit import AuditLogger
from app.infrastructure.observability.logging import get_logger
from app.services.cache import TwoTierCache
from app.services.infrastructure.redis_client import FastRedisClient
from app.services.messaging_client import MessagingClient
from app.services.notifications import NotificationService

logger = get_logger(__name__)


class PipelineContainer:
    def __init__(
        self,
        *,
        db: DatabasePoolManager | None = None,
        redis: FastRedisClient | None = None,
        notifier: NotificationService | None = None,
        messaging_client: MessagingClient | None = None,
        queue_backend: str | None = None,
    ):
        self.db = db or DatabasePoolManager()
        self.redis = redis or FastRedisClient()
        self.cache = TwoTierCache(self.redis)
        self.audit = AuditLogger(self.db)
        self.queue = DurableJobQueue(build_job_store(self.db, queue_backend), self.audit)

        self.instances = InstanceRepository(self.db, self.cache)
        self.contacts = ContactRepository(self.db, self.cache)
        self.messages = MessageRepository(self.db)
        self.documents = DocumentRepository(self.db)

        self.notifier = notifier or NotificationService.from_settings()
        self.messaging_client = messaging_client or MessagingClient()
        self.extractor = TextExtractionEngine(build_backend())
        self.validator = CrossValidationEngine(self.documents, cache=self.cache)

        self.intake = DocumentIntakeService(self.documents, self.queue)
        self.event_router = WebhookEventRouter(
            instances=self.instances,
            contacts=self.contacts,
            messages=self.messages,
            intake=self.intake,
            notifier=self.notifier,
        )

        self.extraction_job = DocumentExtractionJob(
            documents=self.documents,
            messages=self.messages,
            contacts=self.contacts,
            instances=self.instances,
            media=self.messaging_client,
            extractor=self.extractor,
            validator=self.validator,
            notifier=self.notifier,
            queue=self.queue,
            cache=self.cache,
        )
        self.send_message_job = SendMessageJob(
            instances=self.instances,
            contacts=self.contacts,
            messages=self.messages,
            client=self.messaging_client,
        )
        self.queue.register_handler(
            self.extraction_job.job_type,
            self.extraction_job,
            concurrency=settings.QUEUE_EXTRACTION_CONCURRENCY,
            timeout=settings.OCR_TIMEOUT_SECONDS + settings.MEDIA_DOWNLOAD_TIMEOUT_SECONDS,
        )
        self.queue.register_handler(
            self.send_message_job.job_type,
            self.send_message_job,
            concurrency=settings.QUEUE_SEND_MESSAGE_CONCURRENCY,
        )

        self._started: list[str] = []

    async def start(self, *, run_workers: bool = True) -> None:
        """Bring components up in dependency order; on failure, tear down what started."""
        logger.info("Pipeline starting", run_workers=run_workers, queue_backend=settings.QUEUE_BACKEND)
        try:
            await self.db.initialize()
            self._started.append("database_pool")

            try:
                await self.redis.initialize()
                self._started.append("redis")
            except RuntimeError as e:
                # cache degrades to the in-process tier
                logger.warning("Redis unavailable, running with local cache only", error=str(e))
                self.cache.shared = None

            await self.cache.start()
            self._started.append("cache")

            await self.notifier.start()
            self._started.append("notifier")

            await self.messaging_client.start()
            self._started.append("messaging_client")

            await self.queue.start(workers=run_workers)
            self._started.append("queue")

        except Exception as e:
            logger.error("Failed to start pipeline", error=str(e), completed=list(self._started))
            await self.shutdown()
            raise

        logger.info("Pipeline started", services=list(self._started))

    async def shutdown(self) -> None:
        """Stop started components in reverse order; errors are collected, not raised."""
        closers = {
            "queue": self.queue.shutdown,
            "messaging_client": self.messaging_client.shutdown,
            "notifier": self.notifier.shutdown,
            "cache": self.cache.shutdown,
            "redis": self.redis.close,
            "database_pool": self.db.close,
        }

        errors = []
        while self._started:
            name = self._started.pop()
            try:
                await closers[name]()
            except Exception as e:
                logger.error("Error shutting down component", component=name, error=str(e))
                errors.append(f"{name}: {e}")

        if errors:
            logger.warning("Some components had shutdown errors", errors=errors)
        else:
            logger.info("Pipeline stopped")
