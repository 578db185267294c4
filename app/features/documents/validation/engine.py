"""
Cross-validation of one document's fields against the other documents on
file for the same enrollment.
"""

from typing import Protocol

from app.config import settings
from app.features.documents.domain import (
    CrossValidationResult,
    DocumentFieldSet,
    DocumentType,
    FieldMatch,
    Verdict,
)
from app.features.documents.validation.comparability import (
    comparable_fields,
    normalize_for_comparison,
)
from app.features.documents.validation.similarity import similarity
from app.infrastructure.observability.logging import get_logger
from app.services.cache import TwoTierCache

logger = get_logger(__name__)

FIELD_SETS_NAMESPACE = "enrollment-fields"
FIELD_SETS_TTL = 600


class FieldSetSource(Protocol):
    async def latest_field_sets(self, enrollment_id: int) -> list[DocumentFieldSet]: ...


def field_sets_cache_key(enrollment_id: int) -> str:
    return str(enrollment_id)


class CrossValidationEngine:
    def __init__(
        self,
        source: FieldSetSource,
        *,
        cache: TwoTierCache | None = None,
        similarity_threshold: float | None = None,
        field_thresholds: dict[str, float] | None = None,
        valid_match_rate: float | None = None,
        review_match_rate: float | None = None,
    ):
        config = settings.get_validation_config()
        self.source = source
        self.cache = cache
        self.similarity_threshold = (
            similarity_threshold if similarity_threshold is not None else config["similarity_threshold"]
        )
        self.field_thresholds = field_thresholds if field_thresholds is not None else config["field_thresholds"]
        self.valid_match_rate = valid_match_rate if valid_match_rate is not None else config["valid_match_rate"]
        self.review_match_rate = (
            review_match_rate if review_match_rate is not None else config["review_match_rate"]
        )

    def threshold_for(self, field_name: str, current: DocumentType, other: DocumentType) -> float:
        """Most specific override wins: ``a:b:field`` (either order), then ``field``, then default."""
        for key in (f"{current}:{other}:{field_name}", f"{other}:{current}:{field_name}", field_name):
            if key in self.field_thresholds:
                return float(self.field_thresholds[key])
        return self.similarity_threshold

    def verdict_for(self, matched: int, total: int) -> tuple[Verdict, float | None]:
        if total == 0:
            return Verdict.PENDING, None
        rate = matched / total
        if rate >= self.valid_match_rate:
            return Verdict.VALID, rate
        if rate >= self.review_match_rate:
            return Verdict.NEEDS_REVIEW, rate
        return Verdict.INVALID, rate

    async def _load_field_sets(self, enrollment_id: int) -> list[DocumentFieldSet]:
        if self.cache is None:
            return await self.source.latest_field_sets(enrollment_id)

        async def _compute():
            field_sets = await self.source.latest_field_sets(enrollment_id)
            return [
                {"document_id": fs.document_id, "document_type": str(fs.document_type), "fields": fs.fields}
                for fs in field_sets
            ]

        rows = await self.cache.get_or_compute(
            field_sets_cache_key(enrollment_id), FIELD_SETS_TTL, _compute, namespace=FIELD_SETS_NAMESPACE
        )
        return [
            DocumentFieldSet(
                document_id=int(row["document_id"]),
                document_type=DocumentType(row["document_type"]),
                fields=dict(row["fields"]),
            )
            for row in rows or []
        ]

    def compare(
        self,
        document_id: int,
        document_type: DocumentType,
        fields: dict[str, str],
        others: list[DocumentFieldSet],
    ) -> CrossValidationResult:
        """Pure comparison step; ``others`` must already exclude the document itself."""
        matches: list[FieldMatch] = []
        for other in others:
            for field_name, other_field, kind in comparable_fields(document_type, other.document_type):
                value = normalize_for_comparison(fields.get(field_name), kind)
                other_value = normalize_for_comparison(other.fields.get(other_field), kind)
                if not value or not other_value:
                    continue

                score = similarity(value, other_value)
                threshold = self.threshold_for(field_name, document_type, other.document_type)
                matches.append(
                    FieldMatch(
                        field_name=field_name,
                        other_field_name=other_field,
                        other_document_id=other.document_id,
                        other_document_type=other.document_type,
                        value=value,
                        other_value=other_value,
                        similarity=round(score, 4),
                        threshold=threshold,
                        matched=score >= threshold,
                    )
                )

        matched = sum(1 for match in matches if match.matched)
        verdict, rate = self.verdict_for(matched, len(matches))
        return CrossValidationResult(
            document_id=document_id,
            verdict=verdict,
            matched_fields=matched,
            total_comparable_fields=len(matches),
            match_rate=round(rate, 4) if rate is not None else None,
            matches=matches,
        )

    async def cross_validate(
        self,
        document_id: int,
        document_type: DocumentType,
        extracted_fields: dict[str, str],
        enrollment_id: int,
    ) -> CrossValidationResult:
        field_sets = await self._load_field_sets(enrollment_id)
        others = [
            fs for fs in field_sets if fs.document_id != document_id and fs.document_type != document_type
        ]
        result = self.compare(document_id, document_type, extracted_fields, others)

        logger.info(
            "Cross-validation finished",
            document_id=document_id,
            enrollment_id=enrollment_id,
            compared_documents=len(others),
            matched=result.matched_fields,
            total=result.total_comparable_fields,
            verdict=str(result.verdict),
        )
        return result
