"""Message and notification types passed through the pipeline."""

from roomrelay.bus.events import MEDIA_TYPES, Message, MessageType, Notification

__all__ = ["MEDIA_TYPES", "Message", "MessageType", "Notification"]
