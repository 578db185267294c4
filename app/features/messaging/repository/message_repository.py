"""
Message persistence.

(instance_id, external_id) and idempotency_key are unique; inserts use
ON CONFLICT DO NOTHING and report a duplicate as ``None``.
"""

from datetime import UTC, datetime

from app.db.helpers import execute_query, fetch_one
from app.db.pool import DatabasePoolManager
from app.features.messaging.domain import Message, MessageDirection, MessageStatus
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class MessageRepository:
    SELECT_COLUMNS = """
        id, instance_id, contact_id, direction, content, status, external_id,
        media_kind, media_url, media_mime_type, idempotency_key,
        created_at, sent_at, delivered_at, read_at
    """

    def __init__(self, db: DatabasePoolManager):
        self.db = db

    @staticmethod
    def _row_to_message(row: dict | None) -> Message | None:
        if not row:
            return None

        return Message(
            id=row["id"],
            instance_id=row["instance_id"],
            contact_id=row["contact_id"],
            direction=MessageDirection(row["direction"]),
            content=row["content"],
            status=MessageStatus(row["status"]),
            external_id=row.get("external_id"),
            media_kind=row.get("media_kind"),
            media_url=row.get("media_url"),
            media_mime_type=row.get("media_mime_type"),
            idempotency_key=row.get("idempotency_key"),
            created_at=row.get("created_at"),
            sent_at=row.get("sent_at"),
            delivered_at=row.get("delivered_at"),
            read_at=row.get("read_at"),
        )

    async def insert(
        self,
        *,
        instance_id: int,
        contact_id: int,
        direction: MessageDirection,
        content: str,
        status: MessageStatus,
        external_id: str | None = None,
        media_kind: str | None = None,
        media_url: str | None = None,
        media_mime_type: str | None = None,
        idempotency_key: str | None = None,
        created_at: datetime | None = None,
    ) -> Message | None:
        """Insert a message; returns None when an identical one already exists."""
        sent_at = datetime.now(UTC) if status == MessageStatus.SENT else None
        query = f"""
            INSERT INTO whatsapp_messages (
                instance_id, contact_id, direction, content, status, external_id,
                media_kind, media_url, media_mime_type, idempotency_key, created_at, sent_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()), %s)
            ON CONFLICT DO NOTHING
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(
            self.db,
            query,
            (
                instance_id,
                contact_id,
                str(direction),
                content,
                str(status),
                external_id,
                media_kind,
                media_url,
                media_mime_type,
                idempotency_key,
                created_at,
                sent_at,
            ),
        )
        return self._row_to_message(row)

    async def get_by_external_id(self, instance_id: int, external_id: str) -> Message | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM whatsapp_messages WHERE instance_id = %s AND external_id = %s"
        return self._row_to_message(await fetch_one(self.db, query, (instance_id, external_id)))

    async def get_by_idempotency_key(self, idempotency_key: str) -> Message | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM whatsapp_messages WHERE idempotency_key = %s"
        return self._row_to_message(await fetch_one(self.db, query, (idempotency_key,)))

    async def update_status(self, message_id: int, status: MessageStatus) -> None:
        query = """
            UPDATE whatsapp_messages
            SET status = %s,
                sent_at = CASE WHEN %s = 'sent' THEN COALESCE(sent_at, NOW()) ELSE sent_at END,
                delivered_at = CASE WHEN %s = 'delivered' THEN COALESCE(delivered_at, NOW()) ELSE delivered_at END,
                read_at = CASE WHEN %s = 'read' THEN COALESCE(read_at, NOW()) ELSE read_at END
            WHERE id = %s
        """
        value = str(status)
        await execute_query(self.db, query, (value, value, value, value, message_id))

    async def get(self, message_id: int) -> Message | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM whatsapp_messages WHERE id = %s"
        return self._row_to_message(await fetch_one(self.db, query, (message_id,)))
