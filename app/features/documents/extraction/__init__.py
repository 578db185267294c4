from .backends import ExtractionBackendError, MistralOcrBackend, TesseractBackend, build_backend
from .classifier import DocumentClassifier, infer_document_type
from .engine import TextExtractionEngine

__all__ = [
    "DocumentClassifier",
    "ExtractionBackendError",
    "MistralOcrBackend",
    "TesseractBackend",
    "TextExtractionEngine",
    "build_backend",
    "infer_document_type",
]
