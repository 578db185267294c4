"""
Which fields of one document type may be compared with which fields of another.

Entries are declared once and read in both directions.
"""

from itertools import combinations

from app.features.documents.domain import DocumentType
from app.features.documents.extraction.normalization import NORMALIZERS

DT = DocumentType

_PERSONAL_TYPES = (DT.RG, DT.CPF, DT.PROOF_OF_ADDRESS, DT.BIRTH_CERTIFICATE, DT.SCHOOL_RECORD)
_BIRTH_DATE_TYPES = (DT.RG, DT.CPF, DT.BIRTH_CERTIFICATE, DT.SCHOOL_RECORD)

# ((type_a, field_a), (type_b, field_b), normalizer kind)
_DECLARED: list[tuple[tuple[DT, str], tuple[DT, str], str]] = [
    *(((a, "name"), (b, "name"), "name") for a, b in combinations(_PERSONAL_TYPES, 2)),
    *(((a, "birth_date"), (b, "birth_date"), "date") for a, b in combinations(_BIRTH_DATE_TYPES, 2)),
    ((DT.RG, "cpf"), (DT.CPF, "number"), "digits"),
    ((DT.RG, "mother_name"), (DT.BIRTH_CERTIFICATE, "mother_name"), "name"),
    ((DT.RG, "father_name"), (DT.BIRTH_CERTIFICATE, "father_name"), "name"),
]


def _build_table() -> dict[tuple[DT, DT], list[tuple[str, str, str]]]:
    table: dict[tuple[DT, DT], list[tuple[str, str, str]]] = {}
    for (type_a, field_a), (type_b, field_b), kind in _DECLARED:
        table.setdefault((type_a, type_b), []).append((field_a, field_b, kind))
        table.setdefault((type_b, type_a), []).append((field_b, field_a, kind))
    return table


COMPARABILITY_TABLE = _build_table()


def comparable_fields(current: DocumentType, other: DocumentType) -> list[tuple[str, str, str]]:
    """(current_field, other_field, normalizer kind) triples; empty for same-type pairs."""
    if current == other:
        return []
    return COMPARABILITY_TABLE.get((current, other), [])


def normalize_for_comparison(value: str | None, kind: str) -> str:
    return NORMALIZERS[kind](value)
