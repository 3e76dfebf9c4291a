"""Per-channel send rate limiter.

Each channel may be granted at most ``max_per_window`` sends in any
rolling window. A token returns to the bucket exactly one window after it
was spent, so a burst that drains the bucket is refilled in full when its
window closes.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from loguru import logger

from roomrelay.errors import RateLimitWait


@dataclass
class RateLimiterState:
    """Limiter bookkeeping for one channel."""
    channel_id: str
    grants: deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)
    granted: int = 0
    throttled: int = 0
    forced: int = 0


class RateLimiter:
    """Sliding-window limiter sharded per channel."""

    def __init__(
        self,
        max_per_window: int = 3,
        window_ms: int = 1000,
        max_wait_ms: int = 30_000,
        forced_sleep_ms: int = 200,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_per_window = max(1, max_per_window)
        self.window_s = max(1, window_ms) / 1000
        self.max_wait_ms = max_wait_ms
        self.forced_sleep_ms = forced_sleep_ms
        self._clock = clock
        self._sleep = sleep
        self._states: dict[str, RateLimiterState] = {}
        self._states_lock = threading.Lock()

    def _state(self, channel_id: str) -> RateLimiterState:
        state = self._states.get(channel_id)
        if state is None:
            with self._states_lock:
                state = self._states.setdefault(channel_id, RateLimiterState(channel_id))
        return state

    def _expire(self, state: RateLimiterState, now: float) -> None:
        while state.grants and now - state.grants[0] >= self.window_s:
            state.grants.popleft()

    # ---- public ------------------------------------------------------------

    def try_acquire(self, channel_id: str) -> bool:
        """Take a token if one is available, without waiting."""
        return self._take(channel_id, count_throttle=True)

    def _take(self, channel_id: str, count_throttle: bool) -> bool:
        state = self._state(channel_id)
        with state.lock:
            now = self._clock()
            self._expire(state, now)
            if len(state.grants) < self.max_per_window:
                state.grants.append(now)
                state.granted += 1
                return True
            if count_throttle:
                state.throttled += 1
            return False

    def wait_time_ms(self, channel_id: str) -> int:
        """Milliseconds until the next token frees up (0 if one is free now)."""
        state = self._state(channel_id)
        with state.lock:
            now = self._clock()
            self._expire(state, now)
            if len(state.grants) < self.max_per_window:
                return 0
            remaining = self.window_s - (now - state.grants[0])
            return max(1, int(remaining * 1000 + 0.999))

    def available_tokens(self, channel_id: str) -> int:
        state = self._state(channel_id)
        with state.lock:
            self._expire(state, self._clock())
            return self.max_per_window - len(state.grants)

    async def acquire(self, channel_id: str) -> RateLimitWait:
        """Wait for a token.

        Waiting is bounded by ``max_wait_ms``; past that the caller proceeds
        anyway after a short ``forced_sleep_ms`` pause.
        """
        waited = 0
        first = True
        while True:
            # One throttle per call, however many times it has to retry.
            if self._take(channel_id, count_throttle=first):
                if waited:
                    logger.debug("Rate limiter: channel {} waited {}ms", channel_id, waited)
                return RateLimitWait(channel_id, waited)
            first = False

            wait = self.wait_time_ms(channel_id)
            if waited + wait > self.max_wait_ms:
                await self._sleep(self.forced_sleep_ms / 1000)
                state = self._state(channel_id)
                with state.lock:
                    state.grants.append(self._clock())
                    state.forced += 1
                logger.warning("Rate limiter: channel {} exceeded max wait ({}ms), proceeding",
                               channel_id, self.max_wait_ms)
                return RateLimitWait(channel_id, waited + self.forced_sleep_ms, forced=True)

            await self._sleep(wait / 1000)
            waited += wait

    def reset_channel(self, channel_id: str) -> None:
        with self._states_lock:
            self._states.pop(channel_id, None)

    def clear(self) -> None:
        with self._states_lock:
            self._states.clear()

    def stats(self) -> dict[str, dict[str, int]]:
        return {
            cid: {"granted": s.granted, "throttled": s.throttled, "forced": s.forced}
            for cid, s in list(self._states.items())
        }
