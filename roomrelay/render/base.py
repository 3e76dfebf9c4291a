"""Renderer interface and shared text composition."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from roomrelay.bus.events import Message, Notification

if TYPE_CHECKING:
    from roomrelay.fetch.fetcher import ResourceFetcher

UNKNOWN_SENDER = "unknown user"
UNKNOWN_ROOM = "unknown room"


class MessageRenderer(Protocol):
    """Turns one message into a notification, fetching resources if needed."""

    async def render(self, message: Message, fetcher: "ResourceFetcher | None") -> Notification: ...


def sender_display(message: Message) -> str:
    """``nick(star)``, or just the nickname when it already names the star."""
    nick = message.sender or UNKNOWN_SENDER
    star = message.star_name
    if not star or star in nick:
        return nick
    return f"{nick}({star})"


def compose(message: Message, line: str) -> str:
    """Standard notification text: sender line, room and time."""
    room = message.room_name or UNKNOWN_ROOM
    when = message.sent_at.strftime("%m-%d %H:%M")
    return f"【{sender_display(message)}】:{line}\nRoom: {room}\nTime: {when}"


def placeholder(message: Message, label: str) -> Notification:
    """Text-only stand-in for a media message whose resource is unavailable."""
    return Notification(
        text=compose(message, f"{label} (media unavailable)"),
        message=message,
        degraded=True,
    )
