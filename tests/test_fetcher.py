"""Tests for resource fetching with retry and caching."""

import httpx
import pytest

from roomrelay.cache.resource_cache import ResourceCache
from roomrelay.errors import FetchErrorKind
from roomrelay.fetch.fetcher import ResourceFetcher, backoff_delay_ms, infer_extension


class Script:
    """MockTransport handler replaying a list of responses/exceptions."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        if isinstance(step, int):
            return httpx.Response(step, content=b"error")
        return step


def ok(content: bytes = b"payload", content_type: str = "application/octet-stream") -> httpx.Response:
    return httpx.Response(200, content=content, headers={"content-type": content_type})


@pytest.fixture
def cache(tmp_path) -> ResourceCache:
    c = ResourceCache(tmp_path / "cache")
    c.init()
    return c


def make_fetcher(cache, script, sleeps, **kwargs) -> ResourceFetcher:
    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(script))
    return ResourceFetcher(cache, client=client, sleep=record_sleep,
                           user_agent="test-agent", referer="https://example.com/", **kwargs)


class TestFetch:
    """Download, cache and retry behaviour."""

    @pytest.mark.asyncio
    async def test_success_is_cached(self, cache):
        script = Script(ok(b"jpeg-bytes"))
        fetcher = make_fetcher(cache, script, [])

        first = await fetcher.fetch("https://cdn.example.com/pic/a.jpg")
        second = await fetcher.fetch("https://cdn.example.com/pic/a.jpg")

        assert first.ok and second.ok
        assert first.value.read_bytes() == b"jpeg-bytes"
        assert first.value.suffix == ".jpg"
        assert second.value == first.value
        assert len(script.requests) == 1

    @pytest.mark.asyncio
    async def test_sends_identifying_headers(self, cache):
        script = Script(ok())
        fetcher = make_fetcher(cache, script, [])

        await fetcher.fetch("https://cdn.example.com/a.jpg")

        headers = script.requests[0].headers
        assert headers["user-agent"] == "test-agent"
        assert headers["referer"] == "https://example.com/"
        assert headers["accept"] == "*/*"

    @pytest.mark.asyncio
    async def test_two_transient_failures_then_success(self, cache):
        """Exactly two backoff delays, each larger than the previous."""
        sleeps: list[float] = []
        script = Script(503, httpx.ConnectError("connection reset by peer"), ok())
        fetcher = make_fetcher(cache, script, sleeps, backoff_base_ms=500, backoff_cap_ms=5000)

        result = await fetcher.fetch("https://cdn.example.com/a.jpg", max_retries=3)

        assert result.ok
        assert len(script.requests) == 3
        assert len(sleeps) == 2
        assert sleeps[1] > sleeps[0]
        assert sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_not_found_fails_immediately(self, cache):
        sleeps: list[float] = []
        script = Script(404)
        fetcher = make_fetcher(cache, script, sleeps)

        result = await fetcher.fetch("https://cdn.example.com/gone.jpg")

        assert not result.ok
        assert result.error.kind is FetchErrorKind.PERMANENT
        assert result.error.status_code == 404
        assert len(script.requests) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, cache):
        sleeps: list[float] = []
        script = Script(500)
        fetcher = make_fetcher(cache, script, sleeps)

        result = await fetcher.fetch("https://cdn.example.com/a.jpg", max_retries=2)

        assert not result.ok
        assert result.error.transient
        assert result.error.attempts == 3
        assert len(script.requests) == 3
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, cache):
        script = Script(httpx.ReadTimeout("slow"), ok())
        fetcher = make_fetcher(cache, script, [])

        result = await fetcher.fetch("https://cdn.example.com/a.jpg")

        assert result.ok
        assert len(script.requests) == 2

    @pytest.mark.asyncio
    async def test_malformed_url_is_permanent(self, cache):
        script = Script(ok())
        fetcher = make_fetcher(cache, script, [])

        result = await fetcher.fetch("not a url")

        assert result.error.kind is FetchErrorKind.PERMANENT
        assert script.requests == []

    @pytest.mark.asyncio
    async def test_empty_body_is_permanent(self, cache):
        script = Script(ok(b""))
        fetcher = make_fetcher(cache, script, [])

        result = await fetcher.fetch("https://cdn.example.com/a.jpg")

        assert result.error.kind is FetchErrorKind.PERMANENT
        assert len(script.requests) == 1

    @pytest.mark.asyncio
    async def test_content_type_refines_unknown_extension(self, cache):
        script = Script(ok(b"png", content_type="image/png"))
        fetcher = make_fetcher(cache, script, [])

        result = await fetcher.fetch("https://cdn.example.com/resource?id=1")

        assert result.value.suffix == ".png"

    @pytest.mark.asyncio
    async def test_ext_hint_wins(self, cache):
        script = Script(ok())
        fetcher = make_fetcher(cache, script, [])

        result = await fetcher.fetch("https://cdn.example.com/resource", ext_hint="mp3")

        assert result.value.suffix == ".mp3"

    @pytest.mark.asyncio
    async def test_disabled_cache_still_returns_file(self, cache):
        cache.set_enabled(False)
        script = Script(ok(b"data"))
        fetcher = make_fetcher(cache, script, [])

        result = await fetcher.fetch("https://cdn.example.com/a.jpg")

        assert result.ok
        assert result.value.read_bytes() == b"data"
        assert result.value.parent == cache.tmp_dir


class TestHelpers:
    """Extension inference and backoff."""

    @pytest.mark.parametrize("url, expected", [
        ("https://x/a/b/photo.PNG?x=1", ".png"),
        ("https://x/video/12345", ".mp4"),
        ("https://x/mp4/12345", ".mp4"),
        ("https://x/voice/9", ".amr"),
        ("https://x/audio/9", ".amr"),
        ("https://x/img/9", ".jpg"),
        ("https://x/live/cover_9", ".jpg"),
        ("https://x/emotion/9", ".jpg"),
        ("https://x/blob/9", ".bin"),
        ("", ".bin"),
    ])
    def test_infer_extension(self, url, expected):
        assert infer_extension(url) == expected

    def test_content_type_fallback(self):
        assert infer_extension("https://x/blob/9", "audio/mpeg; charset=binary") == ".mp3"

    def test_backoff_doubles_and_caps(self):
        assert [backoff_delay_ms(i, 500, 5000) for i in range(6)] == [500, 1000, 2000, 4000, 5000, 5000]


class TestScratchFileSafety:
    """Cache maintenance while downloads are running."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("maintenance", ["cleanup", "clear"])
    async def test_maintenance_mid_download_keeps_file(self, cache, maintenance):
        async def body():
            yield b"abc"
            if maintenance == "cleanup":
                cache.cleanup(0)
            else:
                cache.clear()
            yield b"def"

        fetcher = make_fetcher(cache, lambda request: httpx.Response(200, content=body()), [])

        result = await fetcher.fetch("https://cdn.example.com/pic/a.jpg")

        assert result.ok
        assert result.value.exists()
        assert result.value.read_bytes() == b"abcdef"

    @pytest.mark.asyncio
    async def test_lost_download_is_fetched_again(self, cache, monkeypatch):
        real_put = cache.put_file
        calls = []

        def losing_put(url, source, ext="", move=False):
            calls.append(source)
            if len(calls) == 1:
                source.unlink()
                return None
            return real_put(url, source, ext, move)

        monkeypatch.setattr(cache, "put_file", losing_put)
        sleeps: list[float] = []
        script = Script(ok(b"first"), ok(b"second"))
        fetcher = make_fetcher(cache, script, sleeps)

        result = await fetcher.fetch("https://cdn.example.com/a.jpg")

        assert result.ok
        assert result.value.read_bytes() == b"second"
        assert len(script.requests) == 2
        assert sleeps == [0.5]
