"""
Push notification fanout.

Fire-and-forget: a delivery failure is logged and reported as ``False``,
never raised, so it cannot undo state the pipeline already committed.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

NOTIFICATION_EVENT = "notification"


class NotificationKind(StrEnum):
    MESSAGE = "message"
    ENROLLMENT = "enrollment"
    LEAD = "lead"
    SYSTEM = "system"
    PAYMENT = "payment"


@dataclass(slots=True, frozen=True)
class Audience:
    user_id: int | None = None
    school_id: int | None = None

    def __post_init__(self):
        if (self.user_id is None) == (self.school_id is None):
            raise ValueError("Audience needs exactly one of user_id or school_id")

    @property
    def channel(self) -> str:
        if self.user_id is not None:
            return f"private-user-{self.user_id}"
        return f"private-school-{self.school_id}"


@dataclass(slots=True)
class NotificationPayload:
    title: str
    message: str
    kind: NotificationKind = NotificationKind.SYSTEM
    data: dict[str, Any] | None = None
    related_id: int | str | None = None
    related_type: str | None = None

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {"title": self.title, "message": self.message, "type": str(self.kind)}
        if self.data:
            body["data"] = self.data
        if self.related_id is not None:
            body["relatedId"] = self.related_id
        if self.related_type:
            body["relatedType"] = self.related_type
        return body


@dataclass(slots=True)
class NotificationService:
    """Posts ``{channel, event, data}`` to an HTTP push provider."""

    url: str | None = None
    token: str | None = None
    timeout: float = 5.0
    client: httpx.AsyncClient | None = None
    _owns_client: bool = field(default=False, init=False)

    @classmethod
    def from_settings(cls) -> "NotificationService":
        return cls(
            url=settings.PUSH_PROVIDER_URL,
            token=settings.PUSH_PROVIDER_TOKEN,
            timeout=settings.PUSH_TIMEOUT_SECONDS,
        )

    async def start(self) -> None:
        if self.client is None and self.url:
            self.client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

    async def shutdown(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self.client = None
            self._owns_client = False

    async def notify(self, audience: Audience, payload: NotificationPayload) -> bool:
        """Deliver one notification; True only when the provider accepted it."""
        if not self.url or self.client is None:
            logger.info(
                "Push provider not configured, notification logged only",
                channel=audience.channel,
                title=payload.title,
            )
            return False

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        body = {"channel": audience.channel, "event": NOTIFICATION_EVENT, "data": payload.to_wire()}
        try:
            response = await self.client.post(self.url, json=body, headers=headers)
            response.raise_for_status()
        except Exception as e:
            logger.warning(
                "Notification delivery failed",
                channel=audience.channel,
                title=payload.title,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        logger.debug("Notification delivered", channel=audience.channel, title=payload.title)
        return True
