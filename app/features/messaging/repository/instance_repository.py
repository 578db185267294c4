"""
Instance lookups and status transitions.

Key -> instance resolution goes through the cache. The status itself is
always read back from the UPDATE that changes it, so transition decisions
never depend on a cached value.
"""

from datetime import datetime

from app.db.helpers import DatabaseError, fetch_one
from app.db.pool import DatabasePoolManager
from app.features.messaging.domain import Instance, InstanceStatus
from app.infrastructure.observability.logging import get_logger
from app.services.cache import TwoTierCache

logger = get_logger(__name__)

INSTANCE_CACHE_NAMESPACE = "instance"
INSTANCE_CACHE_TTL = 3600


class InstanceRepositoryError(DatabaseError):
    """More specific exception for instance persistence failures."""


class InstanceRepository:
    SELECT_COLUMNS = """
        id, instance_key, name, status, school_id, qr_code,
        qr_code_updated_at, last_connected_at, updated_at
    """

    def __init__(self, db: DatabasePoolManager, cache: TwoTierCache | None = None):
        self.db = db
        self.cache = cache

    @staticmethod
    def _row_to_instance(row: dict | None) -> Instance | None:
        if not row:
            return None

        return Instance(
            id=row["id"],
            instance_key=row["instance_key"],
            name=row["name"],
            status=row["status"],
            school_id=row["school_id"],
            qr_code=row.get("qr_code"),
            qr_code_updated_at=row.get("qr_code_updated_at"),
            last_connected_at=row.get("last_connected_at"),
            updated_at=row.get("updated_at"),
        )

    async def _load_by_key(self, instance_key: str) -> dict | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM whatsapp_instances WHERE instance_key = %s"
        row = await fetch_one(self.db, query, (instance_key,))
        if not row:
            return None
        # identity fields only; timestamps and QR payloads are not cached
        return {
            "id": row["id"],
            "instance_key": row["instance_key"],
            "name": row["name"],
            "status": row["status"],
            "school_id": row["school_id"],
        }

    async def get_by_key(self, instance_key: str) -> Instance | None:
        if self.cache is None:
            return self._row_to_instance(await self._load_by_key(instance_key))

        row = await self.cache.get_or_compute(
            instance_key,
            INSTANCE_CACHE_TTL,
            lambda: self._load_by_key(instance_key),
            namespace=INSTANCE_CACHE_NAMESPACE,
        )
        return self._row_to_instance(row)

    async def get(self, instance_id: int) -> Instance | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM whatsapp_instances WHERE id = %s"
        return self._row_to_instance(await fetch_one(self.db, query, (instance_id,)))

    async def _invalidate(self, instance_key: str) -> None:
        if self.cache is not None:
            await self.cache.delete(instance_key, namespace=INSTANCE_CACHE_NAMESPACE)

    async def update_status(
        self,
        instance: Instance,
        status: str,
        *,
        qr_code: str | None = None,
        now: datetime | None = None,
    ) -> tuple[Instance, str]:
        """
        Set the instance status and return ``(updated, previous_status)``.

        The previous status comes from a row lock taken in the same
        statement, so two concurrent deliveries cannot both observe the
        same transition.
        """
        query = """
            UPDATE whatsapp_instances AS i
            SET status = %(status)s,
                qr_code = CASE WHEN %(set_qr)s THEN %(qr_code)s ELSE i.qr_code END,
                qr_code_updated_at = CASE WHEN %(set_qr)s THEN COALESCE(%(now)s, NOW()) ELSE i.qr_code_updated_at END,
                last_connected_at = CASE
                    WHEN %(status)s = 'connected' AND prev.status <> 'connected' THEN COALESCE(%(now)s, NOW())
                    ELSE i.last_connected_at
                END,
                updated_at = COALESCE(%(now)s, NOW())
            FROM (
                SELECT id, status FROM whatsapp_instances WHERE id = %(id)s FOR UPDATE
            ) AS prev
            WHERE i.id = prev.id
            RETURNING i.id, i.instance_key, i.name, i.status, i.school_id, i.qr_code,
                      i.qr_code_updated_at, i.last_connected_at, i.updated_at,
                      prev.status AS previous_status
        """
        params = {
            "status": status,
            "set_qr": qr_code is not None,
            "qr_code": qr_code,
            "now": now,
            "id": instance.id,
        }
        row = await fetch_one(self.db, query, params)
        if not row:
            raise InstanceRepositoryError(
                f"Instance {instance.id} disappeared during status update", operation="update_status"
            )

        await self._invalidate(instance.instance_key)
        return self._row_to_instance(row), row["previous_status"]

    async def mark_qr_pending(self, instance: Instance, qr_code: str) -> tuple[Instance, str]:
        return await self.update_status(instance, InstanceStatus.QR_PENDING, qr_code=qr_code)
