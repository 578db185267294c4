"""
Domain subpackage for the messaging integration.
"""

from .models import (
    STATUS_RANK,
    Contact,
    Instance,
    InstanceStatus,
    Message,
    MessageDirection,
    MessageStatus,
    ProcessingOutcome,
)
from .events import (
    ConnectionUpdateEvent,
    EventKind,
    InboundMessageItem,
    MessagesReceivedEvent,
    MessageStatusEvent,
    QrUpdateEvent,
    StatusUpdateItem,
    UnrecognizedEvent,
    WebhookEvent,
    classify_event_name,
    map_ack,
    parse_event,
    resolve_instance_key,
)

__all__ = [
    "STATUS_RANK",
    "ConnectionUpdateEvent",
    "Contact",
    "EventKind",
    "InboundMessageItem",
    "Instance",
    "InstanceStatus",
    "Message",
    "MessageDirection",
    "MessageStatus",
    "MessageStatusEvent",
    "MessagesReceivedEvent",
    "ProcessingOutcome",
    "QrUpdateEvent",
    "StatusUpdateItem",
    "UnrecognizedEvent",
    "WebhookEvent",
    "classify_event_name",
    "map_ack",
    "parse_event",
    "resolve_instance_key",
]
