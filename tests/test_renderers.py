"""Tests for per-type message rendering."""

from datetime import datetime
from pathlib import Path

import pytest

from roomrelay.bus.events import MessageType
from roomrelay.errors import FetchError, FetchErrorKind, Result
from roomrelay.render import RendererRegistry, compose, default_registry, sender_display
from roomrelay.render.handlers import TextRenderer

T = MessageType
NOON = int(datetime(2024, 5, 1, 12, 30).timestamp() * 1000)


class StubFetcher:
    """Returns a fixed path for known URLs, a permanent failure otherwise."""

    def __init__(self, files: dict[str, Path] | None = None):
        self.files = files or {}
        self.requests: list[tuple[str, str | None]] = []

    async def fetch(self, url, ext_hint=None, max_retries=None):
        self.requests.append((url, ext_hint))
        if url in self.files:
            return Result.success(self.files[url])
        return Result.failure(FetchError(FetchErrorKind.PERMANENT, url, "HTTP 404", 404))


@pytest.fixture
def registry():
    return default_registry()


class TestCompose:
    def test_layout(self, make_message):
        msg = make_message("m1", NOON, body="hi")
        assert compose(msg, "hi") == "【Alice】:hi\nRoom: Room One\nTime: 05-01 12:30"

    def test_sender_with_star(self, make_message):
        assert sender_display(make_message("m1", NOON, star_name="Star")) == "Alice(Star)"
        assert sender_display(make_message("m1", NOON, sender="Star-fan", star_name="Star")) == "Star-fan"

    def test_missing_names(self, make_message):
        msg = make_message("m1", NOON, sender="", room_name="")
        text = compose(msg, "x")
        assert text.startswith("【unknown user】:x")
        assert "Room: unknown room" in text


class TestTextRendering:
    @pytest.mark.asyncio
    async def test_text(self, registry, make_message):
        note = await registry.render(make_message("m1", NOON, body="  hello  "))
        assert note.text.startswith("【Alice】:hello\n")
        assert note.attachments == []
        assert note.is_media is False

    @pytest.mark.asyncio
    async def test_empty_text(self, make_message):
        note = await TextRenderer().render(make_message("m1", NOON, body=" "), None)
        assert "[empty message]" in note.text

    @pytest.mark.asyncio
    async def test_reply_quotes_original(self, registry, make_message):
        msg = make_message("m1", NOON, type=T.REPLY, body="me too",
                           extra={"replyName": "Bob", "replyText": "nice day"})
        note = await registry.render(msg)
        assert "\nBob:nice day\nme too" in note.text

    @pytest.mark.asyncio
    async def test_vote_and_redpacket(self, registry, make_message):
        vote = await registry.render(make_message("m1", NOON, type=T.VOTE, body="best song?"))
        packet = await registry.render(make_message("m2", NOON, type=T.PASSWORD_REDPACKET, body=""))
        assert "started a vote\nbest song?" in vote.text
        assert "[empty red packet]" in packet.text

    @pytest.mark.asyncio
    async def test_flipcard_text(self, registry, make_message):
        msg = make_message("m1", NOON, type=T.FLIPCARD, body="",
                           extra={"asker": "fan", "question": "why?", "answer": "because"})
        note = await registry.render(msg)
        assert "flip-card reply\nfan: why?\n------\nbecause" in note.text

    @pytest.mark.asyncio
    async def test_unknown_type(self, registry, make_message):
        note = await registry.render(make_message("m1", NOON, type=T.UNKNOWN))
        assert "unsupported message" in note.text


class TestMediaRendering:
    @pytest.mark.asyncio
    async def test_image_attached(self, registry, make_message, tmp_path):
        path = tmp_path / "res_x.jpg"
        fetcher = StubFetcher({"https://cdn.example.com/a.jpg": path})
        msg = make_message("m1", NOON, type=T.IMAGE, resource_url="https://cdn.example.com/a.jpg")

        note = await registry.render(msg, fetcher)

        assert note.is_media
        assert note.attachments == [path]
        assert note.fallback is not None
        assert note.fallback.degraded
        assert "image (media unavailable)" in note.fallback.text

    @pytest.mark.asyncio
    async def test_fetch_failure_degrades_to_placeholder(self, registry, make_message):
        msg = make_message("m1", NOON, type=T.VIDEO, resource_url="https://cdn.example.com/gone.mp4")

        note = await registry.render(msg, StubFetcher())

        assert note.degraded
        assert note.attachments == []
        assert "sent a video (media unavailable)" in note.text

    @pytest.mark.asyncio
    async def test_missing_url_skips_fetch(self, registry, make_message):
        fetcher = StubFetcher()
        note = await registry.render(make_message("m1", NOON, type=T.AUDIO), fetcher)
        assert note.degraded
        assert fetcher.requests == []

    @pytest.mark.asyncio
    async def test_live_push_cover_uses_jpg_hint(self, registry, make_message, tmp_path):
        fetcher = StubFetcher({"https://cdn.example.com/cover": tmp_path / "c.jpg"})
        msg = make_message("m1", NOON, type=T.LIVE_PUSH, body="",
                           extra={"title": "Friday live", "cover": "https://cdn.example.com/cover"})

        note = await registry.render(msg, fetcher)

        assert fetcher.requests == [("https://cdn.example.com/cover", ".jpg")]
        assert "started a live stream\nFriday live" in note.text
        assert note.is_media


class TestRegistry:
    def test_default_covers_known_types(self, registry):
        for message_type in T:
            if message_type is not T.UNKNOWN:
                assert registry.has(message_type), message_type
        assert not registry.has(T.UNKNOWN)

    @pytest.mark.asyncio
    async def test_register_override(self, make_message):
        registry = RendererRegistry()
        registry.register(T.TEXT, TextRenderer())
        assert len(registry) == 1

        registry.unregister(T.TEXT)
        note = await registry.render(make_message("m1", NOON))
        assert "unsupported message" in note.text
