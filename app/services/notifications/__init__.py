from .notification_service import Audience, NotificationKind, NotificationPayload, NotificationService

__all__ = ["Audience", "NotificationKind", "NotificationPayload", "NotificationService"]
