"""Dispatch from message type to renderer."""

from __future__ import annotations

from typing import TYPE_CHECKING

from roomrelay.bus.events import Message, MessageType, Notification
from roomrelay.render.base import MessageRenderer
from roomrelay.render.handlers import (
    FlipCardRenderer,
    LabelledTextRenderer,
    LivePushRenderer,
    MediaRenderer,
    ReplyRenderer,
    TextRenderer,
    UnsupportedRenderer,
)

if TYPE_CHECKING:
    from roomrelay.fetch.fetcher import ResourceFetcher


class RendererRegistry:
    """
    Registry of message renderers keyed by message type.

    Types without a registered renderer use the fallback renderer.
    """

    def __init__(self, fallback: MessageRenderer | None = None):
        self._renderers: dict[MessageType, MessageRenderer] = {}
        self.fallback = fallback or UnsupportedRenderer()

    def register(self, message_type: MessageType, renderer: MessageRenderer) -> None:
        self._renderers[message_type] = renderer

    def unregister(self, message_type: MessageType) -> None:
        self._renderers.pop(message_type, None)

    def get(self, message_type: MessageType) -> MessageRenderer:
        return self._renderers.get(message_type, self.fallback)

    def has(self, message_type: MessageType) -> bool:
        return message_type in self._renderers

    async def render(self, message: Message, fetcher: "ResourceFetcher | None" = None) -> Notification:
        return await self.get(message.type).render(message, fetcher)

    def __len__(self) -> int:
        return len(self._renderers)


def default_registry() -> RendererRegistry:
    """Registry covering every known message type."""
    registry = RendererRegistry()
    text = TextRenderer()
    image = MediaRenderer("image")
    reply = ReplyRenderer()

    registry.register(MessageType.TEXT, text)
    registry.register(MessageType.GIFT_TEXT, text)
    registry.register(MessageType.IMAGE, image)
    registry.register(MessageType.EXPRESS_IMAGE, image)
    registry.register(MessageType.AUDIO, MediaRenderer("sent a voice message"))
    registry.register(MessageType.VIDEO, MediaRenderer("sent a video"))
    registry.register(MessageType.REPLY, reply)
    registry.register(MessageType.GIFT_REPLY, reply)
    registry.register(MessageType.LIVE_PUSH, LivePushRenderer())
    registry.register(MessageType.FLIPCARD, FlipCardRenderer())
    registry.register(MessageType.FLIPCARD_AUDIO, FlipCardRenderer("flip-card voice reply", with_media=True))
    registry.register(MessageType.FLIPCARD_VIDEO, FlipCardRenderer("flip-card video reply", with_media=True))
    registry.register(MessageType.PASSWORD_REDPACKET,
                      LabelledTextRenderer("sent a password red packet", "[empty red packet]"))
    registry.register(MessageType.VOTE, LabelledTextRenderer("started a vote", "[empty vote]"))
    return registry
