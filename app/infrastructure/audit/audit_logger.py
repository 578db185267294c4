"""
AuditLogger - append-only audit trail for pipeline events.

Used for:
- terminal job failures (with full context for manual replay)
- received webhooks
- document status changes

Design Principles:
- Write to both database (immutable) and structured logs (searchable)
- Never fail the caller if audit logging fails
"""

from datetime import UTC, datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.pool import DatabasePoolManager
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


class AuditLogger:
    """
    Audit logging service.

    Logs every audited event to:
    1. Database (audit_logs table) - immutable, queryable
    2. Structured logs (stdout) - real-time monitoring

    When constructed without a pool (tests, offline tooling) only the
    structured log entry is written.
    """

    def __init__(self, db: DatabasePoolManager | None = None):
        self.db = db

    async def log(
        self,
        action: str,
        *,
        actor: str = SYSTEM_ACTOR,
        resource_type: str | None = None,
        resource_id: str | int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Log an audit event to database and structured logs.

        Args:
            action: Action name (e.g., "queue_job_failed", "webhook_received")
            actor: Who caused the event; background work uses "system"
            resource_type: Type of resource (e.g., "queue_job", "document")
            resource_id: Specific resource id
            metadata: Additional context (JSON-serializable dict)

        Returns:
            True if persisted, False otherwise (never raises)
        """
        if resource_id is not None:
            resource_id = str(resource_id)

        logger.info(
            "Audit event",
            audit_action=action,
            actor=actor,
            resource_type=resource_type,
            resource_id=resource_id,
        )

        if self.db is None or not self.db.is_ready:
            return False

        try:
            async with self.db.connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO audit_logs (
                        actor, action, resource_type, resource_id, metadata, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        actor,
                        action,
                        resource_type,
                        resource_id,
                        Jsonb(metadata) if metadata is not None else None,
                        datetime.now(UTC),
                    ),
                )
            return True

        except Exception as e:
            # Never fail the caller; keep enough context to recreate the row by hand
            logger.error(
                "CRITICAL: Failed to write audit log to database",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data={
                    "actor": actor,
                    "action": action,
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "metadata": metadata,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )
            return False
