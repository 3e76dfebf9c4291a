"""Renderers for each message type."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from roomrelay.bus.events import Message, Notification
from roomrelay.render.base import compose, placeholder

if TYPE_CHECKING:
    from roomrelay.fetch.fetcher import ResourceFetcher


async def _attach(message: Message, fetcher: "ResourceFetcher | None", url: str | None,
                  text: str, label: str, ext_hint: str | None = None) -> Notification:
    """Fetch *url* and attach it, or fall back to a placeholder."""
    fallback = placeholder(message, label)
    if not url or fetcher is None:
        return fallback
    result = await fetcher.fetch(url, ext_hint)
    if not result.ok:
        logger.warning("Media for message {} (room {}) unavailable: {}",
                       message.id, message.room_id, result.error.reason)
        return fallback
    return Notification(text=text, message=message, attachments=[result.value],
                        is_media=True, fallback=fallback)


class TextRenderer:
    async def render(self, message: Message, fetcher: "ResourceFetcher | None") -> Notification:
        body = message.body.strip() or "[empty message]"
        return Notification(text=compose(message, body), message=message)


class MediaRenderer:
    """Image, audio and video messages: a header line plus the resource."""

    def __init__(self, label: str, ext_hint: str | None = None):
        self.label = label
        self.ext_hint = ext_hint

    async def render(self, message: Message, fetcher: "ResourceFetcher | None") -> Notification:
        return await _attach(message, fetcher, message.resource_url,
                             compose(message, self.label), self.label, self.ext_hint)


class ReplyRenderer:
    """A reply quoting the message it answers."""

    async def render(self, message: Message, fetcher: "ResourceFetcher | None") -> Notification:
        quoted_name = str(message.extra.get("reply_name") or message.extra.get("replyName") or "")
        quoted_text = str(message.extra.get("reply_text") or message.extra.get("replyText") or "")
        body = message.body.strip()
        if not (body or quoted_text):
            return Notification(text=compose(message, "reply (empty)"), message=message)
        quote = f"{quoted_name}:{quoted_text}" if quoted_name else quoted_text
        return Notification(
            text=compose(message, f"\n{quote}\n{body or '[empty reply]'}"),
            message=message,
        )


class LivePushRenderer:
    """Live stream start: title and cover image."""

    async def render(self, message: Message, fetcher: "ResourceFetcher | None") -> Notification:
        title = str(message.extra.get("title") or message.body or "").strip()
        text = compose(message, f"started a live stream\n{title}".rstrip())
        cover = message.extra.get("cover") or message.resource_url
        if not cover:
            return Notification(text=text, message=message)
        return await _attach(message, fetcher, str(cover), text,
                             f"started a live stream\n{title}".rstrip(), ".jpg")


class FlipCardRenderer:
    """Answer to a fan question, as text or with an audio/video answer."""

    def __init__(self, label: str = "flip-card reply", with_media: bool = False):
        self.label = label
        self.with_media = with_media

    async def render(self, message: Message, fetcher: "ResourceFetcher | None") -> Notification:
        asker = str(message.extra.get("asker") or "").strip()
        question = str(message.extra.get("question") or "").strip()
        line = f"{self.label}\n{asker}: {question}\n------"
        if not self.with_media:
            answer = str(message.extra.get("answer") or message.body or "").strip()
            return Notification(text=compose(message, f"{line}\n{answer}"), message=message)
        return await _attach(message, fetcher, message.resource_url,
                             compose(message, line), self.label)


class LabelledTextRenderer:
    """A fixed label followed by the message body."""

    def __init__(self, label: str, empty_body: str):
        self.label = label
        self.empty_body = empty_body

    async def render(self, message: Message, fetcher: "ResourceFetcher | None") -> Notification:
        body = message.body.strip() or self.empty_body
        return Notification(text=compose(message, f"{self.label}\n{body}"), message=message)


class UnsupportedRenderer:
    async def render(self, message: Message, fetcher: "ResourceFetcher | None") -> Notification:
        return Notification(text=compose(message, "unsupported message"), message=message)
