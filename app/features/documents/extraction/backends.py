"""
Interchangeable OCR backends.

Every backend exposes ``extract_text(path) -> str`` and raises
ExtractionBackendError on failure, which the job queue treats as transient.
"""

import asyncio
import base64
import mimetypes
from pathlib import Path
from typing import Protocol

import httpx
import pytesseract
from PIL import Image, UnidentifiedImageError

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ExtractionBackendError(Exception):
    """OCR provider unavailable, timed out or returned garbage."""


class TextExtractionBackend(Protocol):
    name: str

    async def extract_text(self, path: str) -> str: ...


class TesseractBackend:
    """Local Tesseract through pytesseract; runs in a worker thread."""

    name = "tesseract"

    def __init__(self, language: str | None = None, timeout: float | None = None):
        self.language = language or settings.OCR_LANGUAGE
        self.timeout = timeout or settings.OCR_TIMEOUT_SECONDS

    def _run(self, path: str) -> str:
        try:
            with Image.open(path) as image:
                # RGB avoids tesseract choking on palette / alpha images
                return pytesseract.image_to_string(
                    image.convert("RGB"), lang=self.language, timeout=self.timeout
                ).strip()
        except UnidentifiedImageError as e:
            raise ExtractionBackendError(f"Unsupported image file: {e}") from e
        except RuntimeError as e:
            # pytesseract signals its own timeout with RuntimeError
            raise ExtractionBackendError(f"Tesseract failed: {e}") from e
        except pytesseract.TesseractError as e:
            raise ExtractionBackendError(f"Tesseract error: {e}") from e

    async def extract_text(self, path: str) -> str:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._run, path), timeout=self.timeout)
        except TimeoutError as e:
            raise ExtractionBackendError(f"Tesseract timed out after {self.timeout}s") from e


class MistralOcrBackend:
    """Hosted OCR: POSTs the file as a base64 data URL and joins page markdown."""

    name = "mistral"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or settings.MISTRAL_API_KEY
        self.url = url or settings.MISTRAL_OCR_URL
        self.model = model or settings.MISTRAL_OCR_MODEL
        self.timeout = timeout or settings.OCR_TIMEOUT_SECONDS
        self._client = client

    @staticmethod
    def _data_url(path: str) -> str:
        mime_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        encoded = base64.b64encode(Path(path).read_bytes()).decode("ascii")
        return f"data:{mime_type};base64,{encoded}"

    async def extract_text(self, path: str) -> str:
        if not self.api_key:
            raise ExtractionBackendError("MISTRAL_API_KEY is not configured")

        body = {
            "model": self.model,
            "document": {"type": "document_url", "document_url": self._data_url(path)},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=body, headers=headers)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as e:
            raise ExtractionBackendError(
                f"Mistral OCR returned {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExtractionBackendError(f"Mistral OCR request failed: {e}") from e

        pages = result.get("pages") or []
        return "\n\n".join(page.get("markdown", "") for page in pages).strip()


def build_backend(name: str | None = None) -> TextExtractionBackend:
    """Pick the backend named by OCR_BACKEND."""
    name = (name or settings.OCR_BACKEND).strip().lower()
    if name == "tesseract":
        return TesseractBackend()
    if name == "mistral":
        return MistralOcrBackend()
    raise ValueError(f"Unknown OCR backend '{name}'. Use 'tesseract' or 'mistral'.")
