"""
Text-extraction engine: bytes in, typed field candidates out.

Data-quality problems (unreadable scan, missing fields, bad CPF check
digits) are reported on the result and never raised. Only backend
failures raise, so the job queue can retry them.
"""

import os
import tempfile
import time

from app.config import settings
from app.features.documents.domain import DocumentType, ExtractionResult
from app.features.documents.extraction.backends import TextExtractionBackend
from app.features.documents.extraction.classifier import DocumentClassifier, infer_document_type
from app.features.documents.extraction.field_extractors import extract_fields, required_fields
from app.features.documents.extraction.normalization import validate_cpf
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class TextExtractionEngine:
    def __init__(
        self,
        backend: TextExtractionBackend,
        *,
        classifier: DocumentClassifier | None = None,
        warn_threshold: float | None = None,
        classifier_min_confidence: float | None = None,
        scratch_dir: str | None = None,
    ):
        self.backend = backend
        self.classifier = classifier
        self.warn_threshold = (
            warn_threshold if warn_threshold is not None else settings.OCR_CONFIDENCE_WARN_THRESHOLD
        )
        self.classifier_min_confidence = (
            classifier_min_confidence
            if classifier_min_confidence is not None
            else settings.OCR_CLASSIFIER_MIN_CONFIDENCE
        )
        self.scratch_dir = scratch_dir or settings.OCR_SCRATCH_DIR

    async def extract(
        self,
        data: bytes,
        *,
        expected_type: DocumentType | None = None,
        filename: str | None = None,
    ) -> ExtractionResult:
        """
        Run OCR on ``data`` and pull the fields of its document type.

        Args:
            data: Raw image or document bytes
            expected_type: Type declared by the caller; inferred from the text when None
            filename: Original name, only used for the scratch file's suffix

        Raises:
            ExtractionBackendError: the OCR provider failed or timed out
        """
        started = time.perf_counter()
        suffix = os.path.splitext(filename or "")[1] or ".bin"

        fd, path = tempfile.mkstemp(prefix="ocr-", suffix=suffix, dir=self.scratch_dir)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)

            detected_type, detected_confidence = await self._classify(path)
            text = await self.backend.extract_text(path)
        finally:
            try:
                os.unlink(path)
            except OSError as e:
                logger.warning("Failed to remove OCR scratch file", path=path, error=str(e))

        result = self.build_result(
            text,
            expected_type=expected_type,
            detected_type=detected_type,
            detected_confidence=detected_confidence,
            started=started,
        )
        logger.info(
            "Text extraction finished",
            backend=self.backend.name,
            document_type=str(result.document_type),
            confidence=result.confidence,
            missing_required=result.missing_required,
            needs_review=result.needs_review,
            processing_time_ms=result.processing_time_ms,
        )
        return result

    async def _classify(self, path: str) -> tuple[DocumentType | None, float | None]:
        if self.classifier is None:
            return None, None
        try:
            detected = await self.classifier.classify(path)
        except Exception as e:
            # advisory only
            logger.warning("Document classifier failed", error=str(e))
            return None, None
        if not detected:
            return None, None
        return detected

    def build_result(
        self,
        text: str,
        *,
        expected_type: DocumentType | None = None,
        detected_type: DocumentType | None = None,
        detected_confidence: float | None = None,
        started: float | None = None,
    ) -> ExtractionResult:
        """Turn raw OCR text into an ExtractionResult (no I/O)."""
        document_type = expected_type or infer_document_type(text)

        if (
            expected_type is None
            and document_type == DocumentType.OTHER
            and detected_type is not None
            and (detected_confidence or 0) > self.classifier_min_confidence
        ):
            document_type = detected_type

        fields = extract_fields(text, document_type)
        required = required_fields(document_type)
        missing = [name for name in required if name not in fields]
        confidence = round(100.0 * (len(required) - len(missing)) / len(required), 2) if required else 0.0

        warnings = []
        for field_name in ("number", "cpf"):
            candidate = fields.get(field_name)
            is_cpf_field = document_type == DocumentType.CPF or field_name == "cpf"
            if candidate and is_cpf_field and not validate_cpf(candidate.normalized):
                warnings.append(f"{field_name}: CPF check digits do not match")

        if detected_type is not None and detected_type != document_type:
            warnings.append(f"classifier suggested {detected_type} ({detected_confidence})")

        needs_review = confidence < self.warn_threshold or bool(missing) or any(
            "check digits" in warning for warning in warnings
        )
        elapsed = (time.perf_counter() - started) * 1000 if started is not None else 0.0

        return ExtractionResult(
            text=text,
            document_type=document_type,
            fields=fields,
            confidence=confidence,
            missing_required=missing,
            needs_review=needs_review,
            processing_time_ms=round(elapsed, 2),
            detected_type=detected_type,
            detected_confidence=detected_confidence,
            warnings=warnings,
        )
