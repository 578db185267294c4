"""
Persistence for documents, their flattened metadata and the append-only
validation history.
"""

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val
from app.db.pool import DatabasePoolManager
from app.features.documents.domain import (
    Document,
    DocumentFieldSet,
    DocumentStatus,
    DocumentType,
    FieldCandidate,
    ValidationRecord,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DocumentRepositoryError(DatabaseError):
    """More specific exception for document persistence failures."""


class DocumentRepository:
    DOCUMENT_SELECT_COLUMNS = """
        id, enrollment_id, document_type, file_url, status,
        source_message_id, latest_validation_id, extraction_job_id, created_at, updated_at
    """

    VALIDATION_SELECT_COLUMNS = """
        id, document_id, document_type, status, confidence, extracted_data,
        errors, warnings, cross_validation, source_message_id, created_at
    """

    def __init__(self, db: DatabasePoolManager):
        self.db = db

    @staticmethod
    def _row_to_document(row: dict | None) -> Document | None:
        if not row:
            return None

        return Document(
            id=row["id"],
            enrollment_id=row["enrollment_id"],
            document_type=DocumentType.parse(row["document_type"]) or DocumentType.OTHER,
            file_url=row["file_url"],
            status=DocumentStatus(row["status"]),
            source_message_id=row.get("source_message_id"),
            latest_validation_id=str(row["latest_validation_id"]) if row.get("latest_validation_id") else None,
            extraction_job_id=row.get("extraction_job_id"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_validation(row: dict) -> ValidationRecord:
        return ValidationRecord(
            id=str(row["id"]),
            document_id=row["document_id"],
            document_type=DocumentType.parse(row["document_type"]) or DocumentType.OTHER,
            status=DocumentStatus(row["status"]),
            confidence=float(row["confidence"]),
            extracted_data=row.get("extracted_data") or {},
            errors=list(row.get("errors") or []),
            warnings=list(row.get("warnings") or []),
            cross_validation=row.get("cross_validation"),
            source_message_id=row.get("source_message_id"),
            created_at=row.get("created_at"),
        )

    async def create_document(
        self,
        enrollment_id: int,
        document_type: DocumentType,
        file_url: str,
        source_message_id: int | None = None,
    ) -> Document:
        query = f"""
            INSERT INTO documents (enrollment_id, document_type, file_url, source_message_id, status)
            VALUES (%s, %s, %s, %s, 'pending')
            RETURNING {self.DOCUMENT_SELECT_COLUMNS}
        """
        row = await fetch_one(
            self.db, query, (enrollment_id, str(document_type), file_url, source_message_id)
        )
        if not row:
            raise DocumentRepositoryError("Failed to create document", operation="create_document")

        logger.info(
            "Document created",
            document_id=row["id"],
            enrollment_id=enrollment_id,
            document_type=str(document_type),
        )
        return self._row_to_document(row)

    async def get_document(self, document_id: int) -> Document | None:
        query = f"SELECT {self.DOCUMENT_SELECT_COLUMNS} FROM documents WHERE id = %s"
        return self._row_to_document(await fetch_one(self.db, query, (document_id,)))

    async def get_by_source_message(self, source_message_id: int) -> Document | None:
        query = f"""
            SELECT {self.DOCUMENT_SELECT_COLUMNS} FROM documents
            WHERE source_message_id = %s
            ORDER BY id DESC
            LIMIT 1
        """
        return self._row_to_document(await fetch_one(self.db, query, (source_message_id,)))

    async def set_extraction_job(self, document_id: int, job_id: str) -> None:
        await execute_query(
            self.db,
            "UPDATE documents SET extraction_job_id = %s, updated_at = NOW() WHERE id = %s",
            (job_id, document_id),
        )

    async def update_document_type(self, document_id: int, document_type: DocumentType) -> None:
        """Correct the type once extraction has inferred it."""
        await execute_query(
            self.db,
            "UPDATE documents SET document_type = %s, updated_at = NOW() WHERE id = %s",
            (str(document_type), document_id),
        )

    async def latest_field_sets(self, enrollment_id: int) -> list[DocumentFieldSet]:
        """Normalized metadata of every document under the enrollment."""
        query = """
            SELECT d.id AS document_id, d.document_type, m.field_name, m.field_value
            FROM documents d
            JOIN document_metadata m ON m.document_id = d.id
            WHERE d.enrollment_id = %s
            ORDER BY d.id, m.created_at
        """
        rows = await fetch_all(self.db, query, (enrollment_id,))

        field_sets: dict[int, DocumentFieldSet] = {}
        for row in rows:
            document_type = DocumentType.parse(row["document_type"]) or DocumentType.OTHER
            entry = field_sets.setdefault(
                row["document_id"],
                DocumentFieldSet(document_id=row["document_id"], document_type=document_type, fields={}),
            )
            if row["field_value"]:
                entry.fields[row["field_name"]] = row["field_value"]
        return list(field_sets.values())

    async def replace_metadata(
        self, document_id: int, fields: dict[str, FieldCandidate], source: str = "ocr"
    ) -> int:
        """Swap the document's metadata rows for the new extraction in one transaction."""
        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    "DELETE FROM document_metadata WHERE document_id = %s AND source = %s",
                    (document_id, source),
                )
                for candidate in fields.values():
                    await conn.execute(
                        """
                        INSERT INTO document_metadata (document_id, field_name, field_value, confidence, source)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (document_id, candidate.name, candidate.normalized, candidate.confidence, source),
                    )
        except Exception as e:
            raise DocumentRepositoryError(
                f"Failed to store metadata for document {document_id}: {e}", operation="replace_metadata"
            ) from e
        return len(fields)

    async def has_validation_for_source(self, document_id: int, source_message_id: int | None) -> bool:
        query = """
            SELECT EXISTS (
                SELECT 1 FROM document_validations
                WHERE document_id = %s AND source_message_id IS NOT DISTINCT FROM %s
            )
        """
        return bool(await fetch_val(self.db, query, (document_id, source_message_id)))

    async def record_validation(
        self,
        document: Document,
        *,
        status: DocumentStatus,
        confidence: float,
        extracted_data: dict,
        errors: list[str],
        warnings: list[str],
        cross_validation: dict | None,
        source_message_id: int | None,
    ) -> ValidationRecord:
        """
        Append a validation row and point the document at it.

        Earlier rows are never touched.
        """
        insert_query = f"""
            INSERT INTO document_validations (
                document_id, document_type, status, confidence, extracted_data,
                errors, warnings, cross_validation, source_message_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.VALIDATION_SELECT_COLUMNS}
        """
        try:
            async with self.db.transaction() as conn:
                row = await fetch_one(
                    self.db,
                    insert_query,
                    (
                        document.id,
                        str(document.document_type),
                        str(status),
                        confidence,
                        Jsonb(extracted_data),
                        errors,
                        warnings,
                        Jsonb(cross_validation) if cross_validation is not None else None,
                        source_message_id,
                    ),
                    connection=conn,
                )
                await execute_query(
                    self.db,
                    """
                    UPDATE documents
                    SET status = %s, latest_validation_id = %s, updated_at = NOW()
                    WHERE id = %s
                    """,
                    (str(status), row["id"], document.id),
                    connection=conn,
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DocumentRepositoryError(
                f"Failed to record validation for document {document.id}: {e}",
                operation="record_validation",
            ) from e

        logger.info(
            "Document validation recorded",
            document_id=document.id,
            validation_id=str(row["id"]),
            status=str(status),
        )
        return self._row_to_validation(row)
