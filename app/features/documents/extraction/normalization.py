"""
Canonical forms for extracted values.

Both sides of every cross-document comparison go through the same
normalizer, so these functions define what "equal" means for a field.
"""

import re
import unicodedata
from datetime import date

# Portuguese name particles carry no identity ("Maria da Silva" == "Maria Silva")
NAME_PARTICLES = frozenset({"da", "de", "do", "das", "dos", "e"})

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_NON_DIGIT = re.compile(r"\D")


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(value: str | None) -> str:
    """Accent-stripped, lower-case, punctuation-free, single-spaced."""
    if not value:
        return ""
    text = strip_accents(value).lower()
    text = _NON_WORD.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_name(value: str | None) -> str:
    words = normalize_text(value).split()
    return " ".join(word for word in words if word not in NAME_PARTICLES)


def normalize_digits(value: str | None) -> str:
    if not value:
        return ""
    return _NON_DIGIT.sub("", value)


MONTHS = {
    "janeiro": 1,
    "fevereiro": 2,
    "marco": 3,
    "abril": 4,
    "maio": 5,
    "junho": 6,
    "julho": 7,
    "agosto": 8,
    "setembro": 9,
    "outubro": 10,
    "novembro": 11,
    "dezembro": 12,
}

_WORDED_DATE = re.compile(r"^(\d{1,2})\s*o?\s+de\s+([a-z]+)\s+de\s+(\d{4})$")


def expand_year(two_digits: int, today: date | None = None) -> int:
    """Two-digit years past the current one belong to the previous century."""
    today = today or date.today()
    century = today.year - today.year % 100
    if two_digits > today.year % 100:
        century -= 100
    return century + two_digits


def normalize_date(value: str | None, today: date | None = None) -> str:
    """
    Canonical DD/MM/YYYY.

    Eight digits are read as DDMMYYYY and six as DDMMYY, see ``expand_year``.
    Worded dates ("15 de março de 1985") are converted. Anything else is
    returned stripped but otherwise unchanged.
    """
    if not value:
        return ""
    worded = _WORDED_DATE.match(normalize_text(value.replace("º", "o")))
    if worded and worded.group(2) in MONTHS:
        day, month, year = worded.groups()
        return f"{int(day):02d}/{MONTHS[month]:02d}/{year}"

    digits = normalize_digits(value)
    if len(digits) == 8:
        return f"{digits[0:2]}/{digits[2:4]}/{digits[4:8]}"
    if len(digits) == 6:
        return f"{digits[0:2]}/{digits[2:4]}/{expand_year(int(digits[4:6]), today)}"
    return value.strip()


def validate_cpf(value: str | None) -> bool:
    """Check the two CPF verification digits."""
    cpf = normalize_digits(value)
    if len(cpf) != 11 or cpf == cpf[0] * 11:
        return False

    for check_position in (9, 10):
        total = sum(int(cpf[i]) * (check_position + 1 - i) for i in range(check_position))
        digit = (total * 10) % 11
        if digit == 10:
            digit = 0
        if digit != int(cpf[check_position]):
            return False
    return True


NORMALIZERS = {
    "digits": normalize_digits,
    "name": normalize_name,
    "text": normalize_text,
    "date": normalize_date,
}
