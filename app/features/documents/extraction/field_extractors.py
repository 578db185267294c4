"""
Per-document-type field extraction rules.

Each rule lists regular expressions tried in order against the raw OCR
text; the first capture group of the first match is the candidate value.
"""

import re
from dataclasses import dataclass

from app.features.documents.domain import DocumentType, FieldCandidate
from app.features.documents.extraction.normalization import NORMALIZERS, normalize_text

_LINE = r"([^\n\r]+)"
_SEP = r"[\s.:]*"
_DATE = (
    r"(\d{1,2}\s*º?\s+de\s+[a-zà-ú]+\s+de\s+\d{4}"
    r"|\d{2}[\s./-]*\d{2}[\s./-]*\d{4}|\d{2}[\s./-]*\d{2}[\s./-]*\d{2})"
)
_CPF = r"(\d{3}[\s.]*\d{3}[\s.]*\d{3}[\s.-]*\d{2})"

# labels that often follow a value on the same OCR line
_TRAILING_LABEL = re.compile(
    r"\s+(?:rg|cpf|data|nascimento|naturalidade|filia[çc][ãa]o|doc\.?|emiss[ãa]o)\b.*$",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class FieldRule:
    name: str
    patterns: tuple[str, ...]
    kind: str
    confidence: float
    required: bool = False

    def compiled(self) -> list[re.Pattern]:
        return [re.compile(p, re.IGNORECASE) for p in self.patterns]


NAME_RULE = FieldRule(
    "name",
    (rf"\bnome{_SEP}{_LINE}",),
    kind="name",
    confidence=80.0,
    required=True,
)
BIRTH_DATE_RULE = FieldRule(
    "birth_date",
    (rf"nasc(?:imento)?{_SEP}(?:em)?{_SEP}{_DATE}",),
    kind="date",
    confidence=85.0,
)
MOTHER_RULE = FieldRule("mother_name", (rf"\bm[ãa]e{_SEP}{_LINE}",), kind="name", confidence=75.0)
FATHER_RULE = FieldRule("father_name", (rf"\bpai{_SEP}{_LINE}",), kind="name", confidence=75.0)


def _required(rule: FieldRule) -> FieldRule:
    return FieldRule(rule.name, rule.patterns, rule.kind, rule.confidence, required=True)


FIELD_RULES: dict[DocumentType, tuple[FieldRule, ...]] = {
    DocumentType.RG: (
        FieldRule(
            "number",
            (
                r"\b(?:rg|registro\s+geral)[\s.:nº°]*(\d[\d\s.\-/]*[\dxX])",
                r"\bidentidade[\s.:nº°]*(\d[\d\s.\-/]*[\dxX])",
            ),
            kind="digits",
            confidence=90.0,
            required=True,
        ),
        NAME_RULE,
        _required(BIRTH_DATE_RULE),
        FieldRule("cpf", (rf"\bcpf{_SEP}{_CPF}",), kind="digits", confidence=90.0),
        MOTHER_RULE,
        FATHER_RULE,
        FieldRule("issue_date", (rf"(?:expedi[çc][ãa]o|emiss[ãa]o){_SEP}{_DATE}",), kind="date", confidence=80.0),
    ),
    DocumentType.CPF: (
        FieldRule(
            "number",
            (rf"\bcpf{_SEP}{_CPF}", rf"(?:inscri[çc][ãa]o|n[uú]mero){_SEP}{_CPF}", _CPF),
            kind="digits",
            confidence=90.0,
            required=True,
        ),
        NAME_RULE,
        BIRTH_DATE_RULE,
    ),
    DocumentType.PROOF_OF_ADDRESS: (
        FieldRule(
            "name",
            (rf"\b(?:cliente|titular|nome){_SEP}{_LINE}",),
            kind="name",
            confidence=75.0,
            required=True,
        ),
        FieldRule(
            "address",
            (
                rf"\bendere[çc]o{_SEP}{_LINE}",
                r"\b((?:rua|r\.|av\.?|avenida|alameda|travessa|estrada|pra[çc]a)\s[^\n\r]+)",
            ),
            kind="text",
            confidence=75.0,
            required=True,
        ),
        FieldRule("zip_code", (r"\bcep[\s.:]*(\d{5}[\s.-]*\d{3})",), kind="digits", confidence=90.0),
        FieldRule("city", (r"\b(?:cidade|munic[ií]pio)[\s.:]*([^\n\r,/-]+)",), kind="text", confidence=70.0),
        FieldRule(
            "reference_date",
            (rf"(?:refer[êe]ncia|vencimento|emiss[ãa]o){_SEP}(\d{{2}}/\d{{2}}/\d{{4}}|\d{{2}}/\d{{4}})",),
            kind="text",
            confidence=70.0,
        ),
    ),
    DocumentType.BIRTH_CERTIFICATE: (
        NAME_RULE,
        _required(BIRTH_DATE_RULE),
        MOTHER_RULE,
        FATHER_RULE,
        FieldRule("registry_number", (r"matr[ií]cula[\s.:]*([\d\s.]{10,})",), kind="digits", confidence=80.0),
    ),
    DocumentType.SCHOOL_RECORD: (
        FieldRule(
            "name",
            (rf"\b(?:alun[oa]|estudante|nome){_SEP}{_LINE}",),
            kind="name",
            confidence=75.0,
            required=True,
        ),
        FieldRule(
            "school",
            (
                rf"\b(?:escola|col[ée]gio|institui[çc][ãa]o|estabelecimento){_SEP}{_LINE}",
            ),
            kind="text",
            confidence=70.0,
            required=True,
        ),
        BIRTH_DATE_RULE,
        FieldRule("grade", (rf"\b(?:s[ée]rie|ano|turma){_SEP}{_LINE}",), kind="text", confidence=60.0),
    ),
    DocumentType.OTHER: (),
}


def required_fields(document_type: DocumentType) -> list[str]:
    if document_type == DocumentType.OTHER:
        return ["raw_text"]
    return [rule.name for rule in FIELD_RULES[document_type] if rule.required]


def _clean_raw(value: str, kind: str) -> str:
    value = value.strip(" \t:.-")
    if kind == "name":
        value = _TRAILING_LABEL.sub("", value).strip(" \t:.-")
    return value


def _split_filiation(text: str) -> tuple[str, str] | None:
    """'Filiação: JOSE SILVA / MARIA SILVA' -> (father, mother)."""
    match = re.search(rf"filia[çc][ãa]o{_SEP}{_LINE}", text, re.IGNORECASE)
    if not match:
        return None
    parts = [part.strip() for part in re.split(r"\s*/\s*|\s+e\s+", match.group(1)) if part.strip()]
    if len(parts) != 2:
        return None
    return parts[0], parts[1]


def extract_fields(text: str, document_type: DocumentType) -> dict[str, FieldCandidate]:
    """Run the rules for ``document_type`` and return non-empty candidates."""
    if document_type == DocumentType.OTHER:
        raw = text.strip()
        if not raw:
            return {}
        return {"raw_text": FieldCandidate("raw_text", raw, normalize_text(raw), 100.0)}

    fields: dict[str, FieldCandidate] = {}
    for rule in FIELD_RULES[document_type]:
        for pattern in rule.compiled():
            match = pattern.search(text)
            if not match:
                continue
            raw = _clean_raw(match.group(1), rule.kind)
            normalized = NORMALIZERS[rule.kind](raw)
            if normalized:
                fields[rule.name] = FieldCandidate(rule.name, raw, normalized, rule.confidence)
                break

    if document_type in (DocumentType.RG, DocumentType.BIRTH_CERTIFICATE) and (
        "father_name" not in fields or "mother_name" not in fields
    ):
        parents = _split_filiation(text)
        if parents:
            for field_name, raw in zip(("father_name", "mother_name"), parents):
                if field_name not in fields:
                    fields[field_name] = FieldCandidate(
                        field_name, raw, NORMALIZERS["name"](raw), 65.0
                    )

    return fields
