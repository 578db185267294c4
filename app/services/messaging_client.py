"""
HTTP client for the messaging provider: media download and outbound text.
"""

import base64
import binascii

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class MessagingClientError(Exception):
    """Provider unreachable or rejected the request (transient)."""


class MediaDownloadError(MessagingClientError):
    """Media could not be fetched or exceeded the size limit."""


class MessagingClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float | None = None,
        download_timeout: float | None = None,
        max_media_bytes: int | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.MESSAGING_PROVIDER_URL or "").rstrip("/")
        self.api_key = api_key or settings.MESSAGING_PROVIDER_API_KEY
        self.timeout = timeout or settings.MESSAGING_TIMEOUT_SECONDS
        self.download_timeout = download_timeout or settings.MEDIA_DOWNLOAD_TIMEOUT_SECONDS
        self.max_media_bytes = max_media_bytes or settings.MEDIA_MAX_BYTES
        self._client = client
        self._owns_client = False

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

    async def shutdown(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._owns_client = False

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise MessagingClientError("MessagingClient used before start()")
        return self._client

    def _headers(self) -> dict[str, str]:
        return {"apikey": self.api_key} if self.api_key else {}

    async def download_media(self, url: str) -> bytes:
        """Fetch media bytes; ``data:`` URLs are decoded without a request."""
        if url.startswith("data:"):
            try:
                _, encoded = url.split(",", 1)
                data = base64.b64decode(encoded, validate=False)
            except (ValueError, binascii.Error) as e:
                raise MediaDownloadError(f"Malformed data URL: {e}") from e
        else:
            try:
                response = await self.client.get(
                    url, headers=self._headers(), timeout=self.download_timeout, follow_redirects=True
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise MediaDownloadError(f"Media download failed: {e}") from e
            data = response.content

        if len(data) > self.max_media_bytes:
            raise MediaDownloadError(f"Media is {len(data)} bytes, limit is {self.max_media_bytes}")
        if not data:
            raise MediaDownloadError("Media is empty")
        return data

    async def send_text(self, instance_key: str, phone: str, text: str) -> str | None:
        """Send a text message and return the provider's message id when it reports one."""
        if not self.base_url:
            raise MessagingClientError("MESSAGING_PROVIDER_URL is not configured")

        body = {"number": phone, "options": {"delay": 1200, "presence": "composing"}, "textMessage": {"text": text}}
        try:
            response = await self.client.post(
                f"{self.base_url}/message/sendText/{instance_key}", json=body, headers=self._headers()
            )
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPError as e:
            raise MessagingClientError(f"Send failed: {e}") from e
        except ValueError as e:
            raise MessagingClientError(f"Provider returned invalid JSON: {e}") from e

        key = result.get("key") if isinstance(result, dict) else None
        return key.get("id") if isinstance(key, dict) else None
