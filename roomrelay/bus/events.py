"""Event types for the delivery pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class MessageType(str, Enum):
    TEXT = "TEXT"
    GIFT_TEXT = "GIFT_TEXT"
    IMAGE = "IMAGE"
    EXPRESS_IMAGE = "EXPRESSIMAGE"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    REPLY = "REPLY"
    GIFT_REPLY = "GIFTREPLY"
    LIVE_PUSH = "LIVEPUSH"
    FLIPCARD = "FLIPCARD"
    FLIPCARD_AUDIO = "FLIPCARD_AUDIO"
    FLIPCARD_VIDEO = "FLIPCARD_VIDEO"
    PASSWORD_REDPACKET = "PASSWORD_REDPACKAGE"
    VOTE = "VOTE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "MessageType":
        """Map a platform type string onto a known type, UNKNOWN otherwise."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper().replace("-", "_")
        for member in cls:
            if text in (member.value, member.name):
                return member
        return cls.UNKNOWN

    @property
    def is_media(self) -> bool:
        return self in MEDIA_TYPES


MEDIA_TYPES = frozenset({
    MessageType.IMAGE,
    MessageType.EXPRESS_IMAGE,
    MessageType.AUDIO,
    MessageType.VIDEO,
    MessageType.FLIPCARD_AUDIO,
    MessageType.FLIPCARD_VIDEO,
    MessageType.LIVE_PUSH,
})


def _first(src: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        v = src.get(k)
        if v is not None and v != "":
            return v
    return default


@dataclass(frozen=True)
class Message:
    """A room message as produced by the platform poller.

    ``timestamp`` is in epoch milliseconds. ``sequence_no`` is assigned by
    the integrity checker and is ``None`` until then.
    """
    id: str
    room_id: str
    type: MessageType
    timestamp: int
    sender: str = ""
    body: str = ""
    resource_url: str | None = None
    sequence_no: int | None = None
    room_name: str = ""
    star_name: str = ""
    extra: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def is_media(self) -> bool:
        return self.type.is_media

    @property
    def key(self) -> tuple[str, str]:
        return (self.room_id, self.id)

    @property
    def sent_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Build a message from a platform payload (camelCase or snake_case)."""
        extra = data.get("extra")
        return cls(
            id=str(_first(data, "id", "msgId", "messageId", default="")),
            room_id=str(_first(data, "room_id", "roomId", "channelId", default="")),
            type=MessageType.parse(_first(data, "type", "msgType", default="UNKNOWN")),
            timestamp=int(_first(data, "timestamp", "msgTime", "time", default=0)),
            sender=str(_first(data, "sender", "nickName", "nick_name", default="")),
            body=str(_first(data, "body", "content", default="")),
            resource_url=_first(data, "resource_url", "resourceUrl", "url"),
            room_name=str(_first(data, "room_name", "roomName", default="")),
            star_name=str(_first(data, "star_name", "starName", default="")),
            extra=dict(extra) if isinstance(extra, dict) else {},
        )

    def with_sequence(self, sequence_no: int) -> "Message":
        return replace(self, sequence_no=sequence_no)


@dataclass
class Notification:
    """A composed outbound notification for one channel."""
    text: str
    message: Message | None = None
    attachments: list[Path] = field(default_factory=list)
    is_media: bool = False
    degraded: bool = False
    fallback: "Notification | None" = None

    def to_payload(self, handles: list[str] | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"text": self.text}
        if handles:
            payload["attachments"] = handles
        if self.message is not None:
            payload["roomId"] = self.message.room_id
            payload["messageId"] = self.message.id
            payload["timestamp"] = self.message.timestamp
        return payload
