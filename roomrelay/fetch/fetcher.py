"""Resource fetcher: downloads media URLs into the resource cache."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Awaitable, Callable
from urllib.parse import urlsplit

import httpx
from loguru import logger

from roomrelay.cache.resource_cache import ResourceCache
from roomrelay.errors import FetchError, FetchErrorKind, Result

DEFAULT_EXT = ".bin"

_EXT_RE = re.compile(r"^\.[A-Za-z0-9]{1,5}$")

# Keyword rules, checked in order against the lowercased URL path.
_KEYWORD_EXTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("/video/", "/mp4/"), ".mp4"),
    (("/audio/", "/voice/"), ".amr"),
    (("/image/", "/img/", "/cover/", "cover", "thumb", "emotion", "express", "emoji"), ".jpg"),
)

_CONTENT_TYPE_EXTS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "audio/amr": ".amr",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
}

_TRANSIENT_STATUS = {408, 425, 429}


def infer_extension(url: str, content_type: str | None = None) -> str:
    """Guess a file extension for *url*.

    Uses the last path segment's extension when present, then URL keyword
    rules, then the response content type, and finally ``.bin``.
    """
    path = urlsplit(url or "").path
    segment = path.rsplit("/", 1)[-1]
    if "." in segment:
        ext = "." + segment.rsplit(".", 1)[-1].lower()
        if _EXT_RE.match(ext):
            return ext

    lowered = path.lower()
    for keywords, ext in _KEYWORD_EXTS:
        if any(k in lowered for k in keywords):
            return ext

    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in _CONTENT_TYPE_EXTS:
            return _CONTENT_TYPE_EXTS[mime]
    return DEFAULT_EXT


def backoff_delay_ms(attempt: int, base_ms: int, cap_ms: int) -> int:
    """``base * 2**attempt``, capped."""
    return min(base_ms * (2 ** max(0, attempt)), cap_ms)


def classify_status(status_code: int) -> FetchErrorKind:
    if status_code >= 500 or status_code in _TRANSIENT_STATUS:
        return FetchErrorKind.TRANSIENT
    return FetchErrorKind.PERMANENT


class ResourceFetcher:
    """Downloads resources with bounded retry, offering results to the cache."""

    def __init__(
        self,
        cache: ResourceCache,
        timeout_s: float = 30.0,
        max_retries: int = 3,
        backoff_base_ms: int = 500,
        backoff_cap_ms: int = 5000,
        user_agent: str = "",
        referer: str = "",
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cache = cache
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self.user_agent = user_agent
        self.referer = referer
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self.downloads = 0
        self.failures = 0

    # ---- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s, follow_redirects=True)
            self._owns_client = True

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None

    # ---- public ------------------------------------------------------------

    async def fetch(self, url: str, ext_hint: str | None = None,
                    max_retries: int | None = None) -> Result[Path]:
        """Resolve *url* to a local file.

        Returns a successful result with the file path, or a failed result
        carrying a :class:`FetchError`. Only transient failures are retried.
        """
        parts = urlsplit(url or "")
        if parts.scheme not in ("http", "https") or not parts.netloc:
            return Result.failure(FetchError(FetchErrorKind.PERMANENT, url, "malformed url"))

        cached = await self.cache.aget(url)
        if cached is not None:
            return Result.success(cached)

        if self._client is None:
            await self.start()

        retries = self.max_retries if max_retries is None else max(0, max_retries)
        ext = _normalize_hint(ext_hint) or infer_extension(url)
        delays: list[int] = []
        attempt = 0
        while True:
            outcome = await self._download_once(url, ext)
            if isinstance(outcome, Path):
                self.downloads += 1
                if delays:
                    logger.info("Fetched {} after {} retries", url, len(delays))
                return Result.success(outcome)

            if outcome.kind is FetchErrorKind.PERMANENT or attempt >= retries:
                self.failures += 1
                logger.warning("Fetch failed ({}, {} attempts): {} [{}]",
                               url, attempt + 1, outcome.reason, outcome.kind.value)
                return Result.failure(FetchError(
                    outcome.kind, url, outcome.reason, outcome.status_code, attempt + 1,
                ))

            delay = backoff_delay_ms(attempt, self.backoff_base_ms, self.backoff_cap_ms)
            delays.append(delay)
            logger.debug("Fetch retry {} for {} in {}ms: {}", attempt + 1, url, delay, outcome.reason)
            await self._sleep(delay / 1000)
            attempt += 1

    # ---- internals ---------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "*/*"}
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        if self.referer:
            headers["Referer"] = self.referer
        return headers

    async def _download_once(self, url: str, ext: str) -> Path | FetchError:
        try:
            return await asyncio.wait_for(self._stream_to_cache(url, ext), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            return FetchError(FetchErrorKind.TRANSIENT, url, "timeout")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            return FetchError(classify_status(status), url, f"HTTP {status}", status)
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
            return FetchError(FetchErrorKind.TRANSIENT, url, f"{type(e).__name__}: {e}")
        except (httpx.InvalidURL, httpx.UnsupportedProtocol, httpx.TooManyRedirects) as e:
            return FetchError(FetchErrorKind.PERMANENT, url, f"{type(e).__name__}: {e}")
        except httpx.HTTPError as e:
            return FetchError(FetchErrorKind.TRANSIENT, url, f"{type(e).__name__}: {e}")
        except OSError as e:
            return FetchError(FetchErrorKind.TRANSIENT, url, f"io error: {e}")
        except _EmptyBody:
            return FetchError(FetchErrorKind.PERMANENT, url, "empty response body")

    async def _stream_to_cache(self, url: str, ext: str) -> Path:
        tmp: Path | None = None
        try:
            async with self._client.stream("GET", url, headers=self._headers()) as response:
                response.raise_for_status()
                if ext == DEFAULT_EXT:
                    ext = infer_extension(url, response.headers.get("content-type"))
                tmp = self.cache.temp_path(ext)
                size = 0
                try:
                    with open(tmp, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
                            size += len(chunk)
                except BaseException:
                    tmp.unlink(missing_ok=True)
                    raise

            if size == 0:
                tmp.unlink(missing_ok=True)
                raise _EmptyBody()

            cached = await asyncio.to_thread(self.cache.put_file, url, tmp, ext, True)
        finally:
            if tmp is not None:
                self.cache.release_temp(tmp)

        if cached is not None:
            return cached
        if not tmp.exists():
            # Surfaces as a transient io error, so the download is retried.
            raise FileNotFoundError(f"download {tmp.name} vanished before it could be used")
        return tmp


class _EmptyBody(Exception):
    pass


def _normalize_hint(ext_hint: str | None) -> str:
    hint = (ext_hint or "").strip().lower()
    if not hint:
        return ""
    return hint if hint.startswith(".") else f".{hint}"
