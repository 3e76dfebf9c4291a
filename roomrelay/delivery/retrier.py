"""Send with retry, backoff and error classification.

Each delivery attempt chain moves through::

    PENDING -> SENDING -> SUCCESS
                       -> TRANSIENT_FAILURE -> (backoff) -> SENDING
                       -> FATAL_FAILURE -> DROPPED

Rate-limit and retryable transport errors are retried with exponential
backoff up to ``max_retries``; anything else, or an exhausted chain, ends
in ``DROPPED``. Nothing is re-queued.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable

import httpx
from loguru import logger

from roomrelay.bus.events import Notification
from roomrelay.delivery.rate_limiter import RateLimiter
from roomrelay.errors import DeliveryError, TransportError, TransportErrorKind

if TYPE_CHECKING:
    from roomrelay.channels.base import Transport
    from roomrelay.monitoring import DeliveryMonitor


class DeliveryState(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    FATAL_FAILURE = "fatal_failure"
    DROPPED = "dropped"


TERMINAL_STATES = frozenset({DeliveryState.SUCCESS, DeliveryState.DROPPED})

_RATE_LIMIT_MARKERS = (
    "rate limit", "ratelimit", "too many requests", "throttl", "frequency", "频率", "限流",
)
_RETRYABLE_MARKERS = (
    "timeout", "timed out", "connection reset", "connection refused", "connection aborted",
    "broken pipe", "temporarily", "unavailable", "bad gateway", "eof", "network",
)


def classify_error_text(text: str) -> TransportErrorKind:
    """Last-resort classification of an untyped error by its message."""
    lowered = (text or "").lower()
    if any(m in lowered for m in _RATE_LIMIT_MARKERS):
        return TransportErrorKind.RATE_LIMIT
    if any(m in lowered for m in _RETRYABLE_MARKERS):
        return TransportErrorKind.RETRYABLE
    return TransportErrorKind.FATAL


def classify_transport_error(error: BaseException) -> TransportErrorKind:
    """Map an exception raised by a send to a structured error kind."""
    if isinstance(error, TransportError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return TransportErrorKind.RETRYABLE
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return TransportErrorKind.RATE_LIMIT
        if status == 408 or status >= 500:
            return TransportErrorKind.RETRYABLE
        return TransportErrorKind.FATAL
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError,
                          httpx.RemoteProtocolError, ConnectionError)):
        return TransportErrorKind.RETRYABLE
    return classify_error_text(str(error))


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Stops sending to a channel that keeps failing, probing again after a timeout."""
    failure_threshold: int = 5
    open_timeout_s: float = 60.0
    success_threshold: int = 3
    clock: Callable[[], float] = time.monotonic
    state: BreakerState = BreakerState.CLOSED
    failures: int = 0
    successes: int = 0
    opened_at: float = 0.0

    def allow(self) -> bool:
        if self.state is BreakerState.OPEN:
            if self.clock() - self.opened_at >= self.open_timeout_s:
                self.state = BreakerState.HALF_OPEN
                self.successes = 0
                return True
            return False
        return True

    def record_success(self) -> None:
        if self.state is BreakerState.HALF_OPEN:
            self.successes += 1
            if self.successes >= self.success_threshold:
                self.state = BreakerState.CLOSED
                self.failures = 0
        else:
            self.failures = 0

    def record_failure(self) -> None:
        if self.state is BreakerState.HALF_OPEN:
            self._open()
            return
        self.failures += 1
        if self.failures >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self.state = BreakerState.OPEN
        self.opened_at = self.clock()
        self.successes = 0


@dataclass
class SendOutcome:
    """Result of one ``send_with_retry`` chain."""
    channel_id: str
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    error: DeliveryError | None = None
    history: list[DeliveryState] = field(default_factory=lambda: [DeliveryState.PENDING])
    backoff_ms: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is DeliveryState.SUCCESS

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def move(self, state: DeliveryState) -> None:
        self.state = state
        self.history.append(state)


class DeliveryRetrier:
    """Wraps transport sends with rate limiting, retry and a circuit breaker."""

    def __init__(
        self,
        transport: "Transport",
        limiter: RateLimiter,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        multiplier: float = 2.0,
        max_delay_ms: int = 30_000,
        send_timeout_s: float = 30.0,
        breaker_enabled: bool = True,
        breaker_factory: Callable[[], CircuitBreaker] = CircuitBreaker,
        monitor: "DeliveryMonitor | None" = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.limiter = limiter
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.multiplier = multiplier
        self.max_delay_ms = max_delay_ms
        self.send_timeout_s = send_timeout_s
        self.breaker_enabled = breaker_enabled
        self._breaker_factory = breaker_factory
        self._breakers: dict[str, CircuitBreaker] = {}
        self.monitor = monitor
        self._sleep = sleep

    def breaker(self, channel_id: str) -> CircuitBreaker:
        return self._breakers.setdefault(channel_id, self._breaker_factory())

    def backoff_ms(self, attempt: int, retry_after: float | None = None) -> int:
        delay = min(int(self.base_delay_ms * (self.multiplier ** attempt)), self.max_delay_ms)
        if retry_after:
            delay = max(delay, int(retry_after * 1000))
        return delay

    async def send_with_retry(self, notification: Notification, channel_id: str,
                              max_retries: int | None = None) -> SendOutcome:
        """Send *notification* to *channel_id*, retrying transient failures."""
        retries = self.max_retries if max_retries is None else max(0, max_retries)
        outcome = SendOutcome(channel_id=channel_id)
        breaker = self.breaker(channel_id) if self.breaker_enabled else None

        if breaker is not None and not breaker.allow():
            outcome.move(DeliveryState.FATAL_FAILURE)
            outcome.move(DeliveryState.DROPPED)
            outcome.error = DeliveryError(TransportErrorKind.FATAL, channel_id, "circuit open")
            self._record(outcome, 0.0, notification)
            logger.error("Dropping {}: circuit open for channel {}", _describe(notification), channel_id)
            return outcome

        attempt = 0
        while True:
            wait = await self.limiter.acquire(channel_id)
            if wait.waited_ms and self.monitor is not None:
                self.monitor.record_rate_limit_wait(channel_id, wait.waited_ms)

            outcome.move(DeliveryState.SENDING)
            outcome.attempts = attempt + 1
            started = time.monotonic()
            try:
                await asyncio.wait_for(self._send_once(notification, channel_id),
                                       timeout=self.send_timeout_s)
            except Exception as e:
                kind = classify_transport_error(e)
                reason = str(e) or type(e).__name__
                if breaker is not None:
                    breaker.record_failure()

                if kind is TransportErrorKind.FATAL or attempt >= retries:
                    outcome.move(DeliveryState.FATAL_FAILURE if kind is TransportErrorKind.FATAL
                                 else DeliveryState.TRANSIENT_FAILURE)
                    outcome.move(DeliveryState.DROPPED)
                    outcome.error = DeliveryError(kind, channel_id, reason, attempt + 1)
                    self._record(outcome, _elapsed_ms(started), notification)
                    logger.error("Dropping {} for channel {} after {} attempt(s) [{}]: {}",
                                 _describe(notification), channel_id, attempt + 1, kind.value, reason)
                    return outcome

                outcome.move(DeliveryState.TRANSIENT_FAILURE)
                delay = self.backoff_ms(attempt, getattr(e, "retry_after", None))
                outcome.backoff_ms.append(delay)
                if self.monitor is not None:
                    self.monitor.record_retry(channel_id, kind, reason)
                logger.warning("Send to {} failed [{}], retry {}/{} in {}ms: {}",
                               channel_id, kind.value, attempt + 1, retries, delay, reason)
                await self._sleep(delay / 1000)
                attempt += 1
                continue

            if breaker is not None:
                breaker.record_success()
            outcome.move(DeliveryState.SUCCESS)
            self._record(outcome, _elapsed_ms(started), notification)
            return outcome

    async def _send_once(self, notification: Notification, channel_id: str) -> None:
        handles: list[str] = []
        for path in notification.attachments:
            handles.append(await self.transport.upload_attachment(channel_id, path))
        await self.transport.send(channel_id, notification.to_payload(handles))

    def _record(self, outcome: SendOutcome, duration_ms: float, notification: Notification) -> None:
        if self.monitor is None:
            return
        reason = outcome.error.reason if outcome.error else None
        self.monitor.record_send(outcome.channel_id, duration_ms, outcome.ok, reason,
                                 context=_describe(notification))


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000


def _describe(notification: Notification) -> str:
    msg = notification.message
    if msg is None:
        return "notification"
    return f"message {msg.id} (room {msg.room_id})"
