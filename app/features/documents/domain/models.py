"""
Domain models for enrollment documents, extraction results and
cross-validation verdicts.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class DocumentType(StrEnum):
    RG = "rg"
    CPF = "cpf"
    PROOF_OF_ADDRESS = "proof_of_address"
    SCHOOL_RECORD = "school_record"
    BIRTH_CERTIFICATE = "birth_certificate"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | None) -> "DocumentType | None":
        """Accept canonical names and the Portuguese aliases used by the CRM."""
        if not value:
            return None
        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        return _DOCUMENT_TYPE_ALIASES.get(key)


_DOCUMENT_TYPE_ALIASES: dict[str, DocumentType] = {
    **{member.value: member for member in DocumentType},
    "identity_card": DocumentType.RG,
    "identidade": DocumentType.RG,
    "tax_id": DocumentType.CPF,
    "comprovante_residencia": DocumentType.PROOF_OF_ADDRESS,
    "address_proof": DocumentType.PROOF_OF_ADDRESS,
    "certidao_nascimento": DocumentType.BIRTH_CERTIFICATE,
    "historico_escolar": DocumentType.SCHOOL_RECORD,
    "documento_escolar": DocumentType.SCHOOL_RECORD,
    "outros": DocumentType.OTHER,
}


class DocumentStatus(StrEnum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    NEEDS_REVIEW = "needs-review"


# Verdict shares its values with DocumentStatus
Verdict = DocumentStatus


@dataclass(slots=True)
class FieldCandidate:
    """One extracted field: raw match, normalized form and extractor confidence."""

    name: str
    raw: str
    normalized: str
    confidence: float


@dataclass(slots=True)
class ExtractionResult:
    text: str
    document_type: DocumentType
    fields: dict[str, FieldCandidate]
    confidence: float
    missing_required: list[str]
    needs_review: bool
    processing_time_ms: float
    detected_type: DocumentType | None = None
    detected_confidence: float | None = None
    warnings: list[str] = field(default_factory=list)

    def normalized_fields(self) -> dict[str, str]:
        return {name: candidate.normalized for name, candidate in self.fields.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_type": str(self.document_type),
            "fields": {name: asdict(candidate) for name, candidate in self.fields.items()},
            "confidence": self.confidence,
            "missing_required": list(self.missing_required),
            "needs_review": self.needs_review,
            "processing_time_ms": self.processing_time_ms,
            "detected_type": str(self.detected_type) if self.detected_type else None,
            "detected_confidence": self.detected_confidence,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class FieldMatch:
    """Comparison of one comparable field against one other document."""

    field_name: str
    other_field_name: str
    other_document_id: int
    other_document_type: DocumentType
    value: str
    other_value: str
    similarity: float
    threshold: float
    matched: bool


@dataclass(slots=True)
class CrossValidationResult:
    document_id: int
    verdict: Verdict
    matched_fields: int
    total_comparable_fields: int
    match_rate: float | None
    matches: list[FieldMatch] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": str(self.verdict),
            "matched_fields": self.matched_fields,
            "total_comparable_fields": self.total_comparable_fields,
            "match_rate": self.match_rate,
            "matches": [
                {**asdict(match), "other_document_type": str(match.other_document_type)}
                for match in self.matches
            ],
        }


@dataclass(slots=True)
class Document:
    id: int
    enrollment_id: int
    document_type: DocumentType
    file_url: str
    status: DocumentStatus
    source_message_id: int | None = None
    latest_validation_id: str | None = None
    extraction_job_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class DocumentFieldSet:
    """Latest normalized fields on file for one document."""

    document_id: int
    document_type: DocumentType
    fields: dict[str, str]


@dataclass(slots=True)
class ValidationRecord:
    """A row of the append-only document_validations table."""

    id: str
    document_id: int
    document_type: DocumentType
    status: DocumentStatus
    confidence: float
    extracted_data: dict[str, Any]
    errors: list[str]
    warnings: list[str]
    cross_validation: dict[str, Any] | None
    source_message_id: int | None
    created_at: datetime | None = None
