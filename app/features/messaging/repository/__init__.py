from .contact_repository import ContactRepository, ContactRepositoryError
from .instance_repository import InstanceRepository, InstanceRepositoryError
from .message_repository import MessageRepository

__all__ = [
    "ContactRepository",
    "ContactRepositoryError",
    "InstanceRepository",
    "InstanceRepositoryError",
    "MessageRepository",
]
