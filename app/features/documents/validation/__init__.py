from .comparability import COMPARABILITY_TABLE, comparable_fields
from .engine import FIELD_SETS_NAMESPACE, CrossValidationEngine, field_sets_cache_key
from .similarity import similarity

__all__ = [
    "COMPARABILITY_TABLE",
    "CrossValidationEngine",
    "FIELD_SETS_NAMESPACE",
    "comparable_fields",
    "field_sets_cache_key",
    "similarity",
]
