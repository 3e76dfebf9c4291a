"""HTTP bot API transport."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from roomrelay.channels.base import BaseTransport
from roomrelay.config.schema import TransportConfig
from roomrelay.delivery.retrier import classify_error_text
from roomrelay.errors import TransportError, TransportErrorKind

_OK_CODES = (0, 200)


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def error_from_response(response: httpx.Response) -> TransportError:
    """Build a classified error for a non-success HTTP response."""
    status = response.status_code
    text = f"HTTP {status}: {response.text[:200]}"
    if status == 429:
        return TransportError(text, TransportErrorKind.RATE_LIMIT, _retry_after(response), status)
    if status == 408 or status >= 500:
        return TransportError(text, TransportErrorKind.RETRYABLE, _retry_after(response), status)
    return TransportError(text, TransportErrorKind.FATAL, status_code=status)


class HttpTransport(BaseTransport):
    """Posts notifications to a bot HTTP API authenticated with a bearer token.

    The API answers with either a bare JSON object or an envelope
    ``{"code": int, "message": str, "data": {...}}``; a non-zero envelope
    code is an application error whose text decides retryability.
    """

    name = "http"

    def __init__(self, config: TransportConfig, client: httpx.AsyncClient | None = None):
        super().__init__(config)
        self.config: TransportConfig = config
        self._http = client
        self._owns_client = client is None

    # ---- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if not self.config.base_url:
            logger.warning("Transport base_url not configured")
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.timeout_s)
            self._owns_client = True
        self._running = True

    async def stop(self) -> None:
        self._running = False
        if self._http and self._owns_client:
            await self._http.aclose()
        self._http = None

    # ---- transport ---------------------------------------------------------

    async def send(self, channel_id: str, payload: dict[str, Any]) -> None:
        body = {"channelId": channel_id, **payload}
        await self._request("POST", self.config.send_path, json=body)

    async def upload_attachment(self, channel_id: str, path: Path) -> str:
        path = Path(path)
        with open(path, "rb") as f:
            data = await self._request(
                "POST", self.config.upload_path,
                data={"channelId": channel_id},
                files={"file": (path.name, f.read())},
            )
        handle = data.get("handle") or data.get("id") or data.get("url")
        if not handle:
            raise TransportError(f"Upload of {path.name} returned no handle", TransportErrorKind.FATAL)
        return str(handle)

    # ---- HTTP helpers ------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if not self._http:
            raise TransportError("HTTP transport not started", TransportErrorKind.FATAL)
        url = f"{self.config.base_url.strip().rstrip('/')}{path}"
        try:
            response = await self._http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"timeout: {e}", TransportErrorKind.RETRYABLE) from e
        except httpx.TransportError as e:
            raise TransportError(f"{type(e).__name__}: {e}", TransportErrorKind.RETRYABLE) from e

        if not response.is_success:
            raise error_from_response(response)

        try:
            parsed = response.json()
        except ValueError:
            return {}
        if isinstance(parsed, dict) and isinstance(parsed.get("code"), int):
            if parsed["code"] not in _OK_CODES:
                msg = str(parsed.get("message") or parsed.get("msg") or "request failed")
                raise TransportError(f"API error: {msg} (code={parsed['code']})", classify_error_text(msg))
            data = parsed.get("data")
            return data if isinstance(data, dict) else {}
        return parsed if isinstance(parsed, dict) else {}
