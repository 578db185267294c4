"""
Typed webhook events.

Raw provider bodies are parsed once, at the HTTP boundary, into one of a
closed set of variants. Anything that does not fit becomes an
UnrecognizedEvent carrying the reason instead of passing through untyped.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.features.messaging.domain.models import MessageStatus


class EventKind(StrEnum):
    CONNECTION_UPDATE = "connection-update"
    QR_UPDATE = "qr-update"
    MESSAGE_RECEIVED = "message-received"
    MESSAGE_STATUS = "message-status"
    UNRECOGNIZED = "unrecognized"


_EVENT_NAME_KINDS: dict[str, EventKind] = {
    "connection.update": EventKind.CONNECTION_UPDATE,
    "qrcode.updated": EventKind.QR_UPDATE,
    "qr": EventKind.QR_UPDATE,
    "qr.update": EventKind.QR_UPDATE,
    "messages.upsert": EventKind.MESSAGE_RECEIVED,
    "message": EventKind.MESSAGE_RECEIVED,
    "message.received": EventKind.MESSAGE_RECEIVED,
    "messages.update": EventKind.MESSAGE_STATUS,
    "message.ack": EventKind.MESSAGE_STATUS,
    "message.status": EventKind.MESSAGE_STATUS,
    "message.status.update": EventKind.MESSAGE_STATUS,
}


def classify_event_name(raw_event_name: str | None) -> EventKind:
    """Map a provider event name (``messages.upsert``, ``MESSAGES_UPSERT``...) to its kind."""
    if not raw_event_name:
        return EventKind.UNRECOGNIZED
    key = raw_event_name.strip().lower().replace("_", ".")
    return _EVENT_NAME_KINDS.get(key, EventKind.UNRECOGNIZED)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_name: str
    instance_key: str | None = None


class ConnectionUpdateEvent(_Event):
    kind: Literal[EventKind.CONNECTION_UPDATE] = EventKind.CONNECTION_UPDATE
    raw_state: str


class QrUpdateEvent(_Event):
    kind: Literal[EventKind.QR_UPDATE] = EventKind.QR_UPDATE
    qr_code: str | None = None


class InboundMessageItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_id: str
    remote_jid: str
    from_me: bool = False
    push_name: str | None = None
    text: str = ""
    media_kind: str | None = None
    media_url: str | None = None
    media_mime_type: str | None = None
    media_filename: str | None = None
    timestamp: datetime | None = None

    @property
    def is_group(self) -> bool:
        return self.remote_jid.endswith("@g.us")

    @property
    def phone(self) -> str:
        return self.remote_jid.split("@", 1)[0]


class MessagesReceivedEvent(_Event):
    kind: Literal[EventKind.MESSAGE_RECEIVED] = EventKind.MESSAGE_RECEIVED
    items: list[InboundMessageItem] = Field(default_factory=list)
    invalid_items: list[str] = Field(default_factory=list)


class StatusUpdateItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_id: str
    status: MessageStatus | None
    raw_status: str


class MessageStatusEvent(_Event):
    kind: Literal[EventKind.MESSAGE_STATUS] = EventKind.MESSAGE_STATUS
    items: list[StatusUpdateItem] = Field(default_factory=list)


class UnrecognizedEvent(_Event):
    kind: Literal[EventKind.UNRECOGNIZED] = EventKind.UNRECOGNIZED
    reason: str


WebhookEvent = Annotated[
    ConnectionUpdateEvent | QrUpdateEvent | MessagesReceivedEvent | MessageStatusEvent | UnrecognizedEvent,
    Field(discriminator="kind"),
]


# ----------------------------------------------------------------------
# parsing helpers
# ----------------------------------------------------------------------

_ACK_CODES = {
    0: MessageStatus.PENDING,
    1: MessageStatus.SENT,
    2: MessageStatus.DELIVERED,
    3: MessageStatus.READ,
    4: MessageStatus.READ,  # played (audio)
}

_ACK_NAMES = {
    "pending": MessageStatus.PENDING,
    "server_ack": MessageStatus.SENT,
    "sent": MessageStatus.SENT,
    "delivery_ack": MessageStatus.DELIVERED,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "played": MessageStatus.READ,
    "error": MessageStatus.FAILED,
    "failed": MessageStatus.FAILED,
}

_MEDIA_MESSAGE_KEYS = {
    "imageMessage": "image",
    "documentMessage": "document",
    "documentWithCaptionMessage": "document",
    "audioMessage": "audio",
    "videoMessage": "video",
    "stickerMessage": "sticker",
}

_TEXT_TYPES = {"chat", "text", "conversation", "extendedtextmessage"}


def map_ack(raw: Any) -> MessageStatus | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return _ACK_CODES.get(raw)
    text = str(raw).strip().lower()
    if text.isdigit():
        return _ACK_CODES.get(int(text))
    return _ACK_NAMES.get(text)


def resolve_instance_key(body: dict[str, Any], path_key: str | None = None) -> str | None:
    """Path parameter first, then ``instance.key``/``instance`` string, then ``data.instance``."""
    if path_key:
        return path_key

    instance = body.get("instance")
    if isinstance(instance, dict):
        key = instance.get("key") or instance.get("instanceName") or instance.get("name")
        if key:
            return str(key)
    elif isinstance(instance, str) and instance.strip():
        return instance.strip()

    data = body.get("data")
    if isinstance(data, dict):
        nested = data.get("instance")
        if isinstance(nested, str) and nested.strip():
            return nested.strip()
        if isinstance(nested, dict) and nested.get("key"):
            return str(nested["key"])
    return None


def _parse_timestamp(raw: Any) -> datetime | None:
    if raw in (None, ""):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        try:
            return datetime.fromisoformat(str(raw))
        except ValueError:
            return None
    # seconds vs milliseconds since epoch
    if value > 1e12:
        value /= 1000
    return datetime.fromtimestamp(value, tz=UTC)


def _parse_message_item(raw: dict[str, Any]) -> InboundMessageItem:
    key = raw.get("key") if isinstance(raw.get("key"), dict) else {}
    external_id = key.get("id") or raw.get("id") or raw.get("keyId")
    remote_jid = key.get("remoteJid") or raw.get("remoteJid") or raw.get("from")
    if not external_id or not remote_jid:
        raise ValueError("message item without key.id or remoteJid")

    from_me = bool(key.get("fromMe", raw.get("fromMe", False)))
    message = raw.get("message") if isinstance(raw.get("message"), dict) else {}

    text = (
        message.get("conversation")
        or (message.get("extendedTextMessage") or {}).get("text")
        or raw.get("body")
        or ""
    )

    media_kind = media_url = mime_type = filename = None
    for message_key, kind in _MEDIA_MESSAGE_KEYS.items():
        media = message.get(message_key)
        if isinstance(media, dict):
            if message_key == "documentWithCaptionMessage":
                media = (media.get("message") or {}).get("documentMessage") or media
            media_kind = kind
            media_url = media.get("url")
            mime_type = media.get("mimetype")
            filename = media.get("fileName")
            text = text or media.get("caption") or ""
            break

    if media_kind is None:
        legacy_type = str(raw.get("type") or "").lower()
        if legacy_type and legacy_type not in _TEXT_TYPES:
            media_kind = legacy_type
            media_url = raw.get("mediaUrl")
            mime_type = raw.get("mimetype")
            filename = raw.get("fileName")

    inline = message.get("base64") or raw.get("base64")
    if media_kind and inline:
        media_url = f"data:{mime_type or 'application/octet-stream'};base64,{inline}"

    return InboundMessageItem(
        external_id=str(external_id),
        remote_jid=str(remote_jid),
        from_me=from_me,
        push_name=raw.get("pushName") or raw.get("notifyName"),
        text=str(text),
        media_kind=media_kind,
        media_url=media_url,
        media_mime_type=mime_type,
        media_filename=filename,
        timestamp=_parse_timestamp(raw.get("messageTimestamp") or raw.get("timestamp")),
    )


def _message_batch(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        return []
    if isinstance(data.get("messages"), list):
        return data["messages"]
    if isinstance(data.get("message"), dict) and "key" not in data:
        return [data["message"]]
    return [data]


def _status_items(data: Any) -> list[StatusUpdateItem]:
    raw_items = data if isinstance(data, list) else [data]
    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        key = raw.get("key") if isinstance(raw.get("key"), dict) else {}
        external_id = key.get("id") or raw.get("keyId") or raw.get("id")
        update = raw.get("update") if isinstance(raw.get("update"), dict) else {}
        raw_status = raw.get("ack", raw.get("status", update.get("status")))
        if not external_id or raw_status is None:
            continue
        items.append(
            StatusUpdateItem(external_id=str(external_id), status=map_ack(raw_status), raw_status=str(raw_status))
        )
    return items


def parse_event(raw_event_name: str, body: dict[str, Any], path_key: str | None = None) -> WebhookEvent:
    """Classify and parse a webhook body into its typed variant."""
    kind = classify_event_name(raw_event_name)
    instance_key = resolve_instance_key(body, path_key)
    data = body.get("data")
    base = {"event_name": raw_event_name, "instance_key": instance_key}

    if kind == EventKind.UNRECOGNIZED:
        return UnrecognizedEvent(**base, reason=f"event '{raw_event_name}' is not supported")

    try:
        if kind == EventKind.CONNECTION_UPDATE:
            data = data if isinstance(data, dict) else {}
            raw_state = data.get("state") or data.get("connection") or data.get("status")
            if not raw_state:
                return UnrecognizedEvent(**base, reason="connection update without state")
            return ConnectionUpdateEvent(**base, raw_state=str(raw_state))

        if kind == EventKind.QR_UPDATE:
            data = data if isinstance(data, dict) else {}
            qrcode = data.get("qrcode")
            qr = (
                (qrcode.get("base64") or qrcode.get("code") if isinstance(qrcode, dict) else qrcode)
                or data.get("qr")
                or data.get("code")
                or data.get("base64")
            )
            return QrUpdateEvent(**base, qr_code=str(qr) if qr else None)

        if kind == EventKind.MESSAGE_RECEIVED:
            items, invalid = [], []
            for index, raw in enumerate(_message_batch(data)):
                if not isinstance(raw, dict):
                    invalid.append(f"item {index}: not an object")
                    continue
                try:
                    items.append(_parse_message_item(raw))
                except (ValueError, ValidationError) as e:
                    invalid.append(f"item {index}: {e}")
            if not items and not invalid:
                return UnrecognizedEvent(**base, reason="message event without messages")
            return MessagesReceivedEvent(**base, items=items, invalid_items=invalid)

        return MessageStatusEvent(**base, items=_status_items(data))

    except ValidationError as e:
        return UnrecognizedEvent(**base, reason=f"malformed {kind} payload: {e.error_count()} errors")
