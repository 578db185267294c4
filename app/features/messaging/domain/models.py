"""
Domain models for the messaging provider integration.

Contacts carry their enrollment link and assigned agent as explicit
columns; nothing about a contact lives in an untyped metadata bag.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class InstanceStatus(StrEnum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    QR_PENDING = "qr-pending"


class MessageDirection(StrEnum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    RECEIVED = "received"


# Delivery progress order; a status update may only move forward.
STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.RECEIVED: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


@dataclass(slots=True)
class Instance:
    """A connected messaging endpoint (one provider session)."""

    id: int
    instance_key: str
    name: str
    status: str  # InstanceStatus value, or an unknown provider value kept verbatim
    school_id: int
    qr_code: str | None = None
    qr_code_updated_at: datetime | None = None
    last_connected_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class Contact:
    id: int
    instance_id: int
    external_address: str
    phone: str
    display_name: str | None
    is_group: bool
    enrollment_id: int | None = None
    assigned_user_id: int | None = None
    last_activity_at: datetime | None = None


@dataclass(slots=True)
class Message:
    id: int
    instance_id: int
    contact_id: int
    direction: MessageDirection
    content: str
    status: MessageStatus
    external_id: str | None = None
    media_kind: str | None = None
    media_url: str | None = None
    media_mime_type: str | None = None
    idempotency_key: str | None = None
    created_at: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None


@dataclass(slots=True)
class ProcessingOutcome:
    """What the webhook router reports back for one delivery."""

    success: bool
    processed: bool
    event: str
    message: str
    error_code: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> dict[str, Any]:
        body = {
            **self.data,
            "success": self.success,
            "processed": self.processed,
            "event": self.event,
            "message": self.message,
        }
        if self.error_code:
            body["error"] = self.error_code
        return body
