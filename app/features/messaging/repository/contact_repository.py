"""
Contact store: one row per (instance, external address).

Creation is a single INSERT ... ON CONFLICT statement, so concurrent
webhook deliveries for the same sender converge on one row.
"""

from app.db.helpers import DatabaseError, fetch_one
from app.db.pool import DatabasePoolManager
from app.features.messaging.domain import Contact
from app.infrastructure.observability.logging import get_logger
from app.services.cache import TwoTierCache

logger = get_logger(__name__)

CONTACT_CACHE_NAMESPACE = "contact"
CONTACT_CACHE_TTL = 300


class ContactRepositoryError(DatabaseError):
    """More specific exception for contact persistence failures."""


class ContactRepository:
    SELECT_COLUMNS = """
        id, instance_id, external_address, phone, display_name, is_group,
        enrollment_id, assigned_user_id, last_activity_at
    """

    def __init__(self, db: DatabasePoolManager, cache: TwoTierCache | None = None):
        self.db = db
        self.cache = cache

    @staticmethod
    def _row_to_contact(row: dict | None) -> Contact | None:
        if not row:
            return None

        return Contact(
            id=row["id"],
            instance_id=row["instance_id"],
            external_address=row["external_address"],
            phone=row["phone"],
            display_name=row.get("display_name"),
            is_group=bool(row.get("is_group")),
            enrollment_id=row.get("enrollment_id"),
            assigned_user_id=row.get("assigned_user_id"),
            last_activity_at=row.get("last_activity_at"),
        )

    async def upsert(
        self,
        instance_id: int,
        external_address: str,
        *,
        phone: str,
        display_name: str | None,
        is_group: bool,
    ) -> Contact:
        """Create the contact or refresh its display name and activity timestamp."""
        query = f"""
            INSERT INTO whatsapp_contacts (
                instance_id, external_address, phone, display_name, is_group, last_activity_at
            )
            VALUES (%s, %s, %s, %s, %s, NOW())
            ON CONFLICT (instance_id, external_address) DO UPDATE
            SET display_name = COALESCE(EXCLUDED.display_name, whatsapp_contacts.display_name),
                last_activity_at = NOW(),
                updated_at = NOW()
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(
            self.db, query, (instance_id, external_address, phone, display_name, is_group)
        )
        if not row:
            raise ContactRepositoryError("Contact upsert returned no row", operation="upsert_contact")

        contact = self._row_to_contact(row)
        if self.cache is not None:
            await self.cache.delete(str(contact.id), namespace=CONTACT_CACHE_NAMESPACE)
        return contact

    async def _load(self, contact_id: int) -> dict | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM whatsapp_contacts WHERE id = %s"
        row = await fetch_one(self.db, query, (contact_id,))
        if row and row.get("last_activity_at") is not None:
            row = {**row, "last_activity_at": None}
        return row

    async def get(self, contact_id: int) -> Contact | None:
        if self.cache is None:
            return self._row_to_contact(await self._load(contact_id))

        row = await self.cache.get_or_compute(
            str(contact_id), CONTACT_CACHE_TTL, lambda: self._load(contact_id), namespace=CONTACT_CACHE_NAMESPACE
        )
        return self._row_to_contact(row)
