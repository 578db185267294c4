"""
Domain subpackage for enrollment documents.
"""

from .models import (
    CrossValidationResult,
    Document,
    DocumentFieldSet,
    DocumentStatus,
    DocumentType,
    ExtractionResult,
    FieldCandidate,
    FieldMatch,
    ValidationRecord,
    Verdict,
)

__all__ = [
    "CrossValidationResult",
    "Document",
    "DocumentFieldSet",
    "DocumentStatus",
    "DocumentType",
    "ExtractionResult",
    "FieldCandidate",
    "FieldMatch",
    "ValidationRecord",
    "Verdict",
]
