"""Edit-distance similarity between normalized field values."""

from rapidfuzz.distance import Levenshtein


def similarity(a: str, b: str) -> float:
    """
    ``1 - levenshtein(a, b) / max(len(a), len(b))``, in [0, 1].

    Symmetric, and 1.0 for identical strings (including two empty ones).
    """
    if not a and not b:
        return 1.0
    return float(Levenshtein.normalized_similarity(a, b))
