"""
Document-type inference.

``infer_document_type`` reads keyword signatures from OCR text and is what
the engine relies on. ``DocumentClassifier`` is the hook for an optional
image-level classifier whose answer is recorded but never decides the type.
"""

import re
from typing import Protocol

from app.features.documents.domain import DocumentType
from app.features.documents.extraction.normalization import normalize_text

_UTILITY_WORDS = r"(energia|eletric|luz|agua|saneamento|gas|telefon|internet|consumo|kwh|m3)"

# checked in order; RG before CPF because identity cards usually print a CPF too
TYPE_SIGNATURES: tuple[tuple[DocumentType, tuple[tuple[str, ...], ...]], ...] = (
    (
        DocumentType.BIRTH_CERTIFICATE,
        ((r"certidao de nascimento",), (r"registro civil", r"nascimento")),
    ),
    (
        DocumentType.SCHOOL_RECORD,
        ((r"historico escolar",), (r"secretaria (de|da) educacao",), (r"declaracao escolar",)),
    ),
    (
        DocumentType.PROOF_OF_ADDRESS,
        (
            (r"comprovante de (residencia|endereco)",),
            (r"(comprovante|fatura|conta de)", _UTILITY_WORDS),
        ),
    ),
    (
        DocumentType.RG,
        ((r"registro geral",), (r"carteira de identidade",), (r"cedula de identidade",)),
    ),
    (
        DocumentType.CPF,
        ((r"cadastro de pessoas? fisicas?",), (r"receita federal",), (r"ministerio da fazenda",)),
    ),
)


def infer_document_type(text: str) -> DocumentType:
    """Return the first type whose signature (all patterns of one group) appears in ``text``."""
    normalized = normalize_text(text)
    if not normalized:
        return DocumentType.OTHER

    for document_type, groups in TYPE_SIGNATURES:
        for group in groups:
            if all(re.search(pattern, normalized) for pattern in group):
                return document_type
    return DocumentType.OTHER


class DocumentClassifier(Protocol):
    """Optional image classifier: returns (type, confidence 0-100) or None."""

    async def classify(self, path: str) -> tuple[DocumentType, float] | None: ...
