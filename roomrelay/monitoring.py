"""
Monitoring for roomrelay delivery.

This module provides:
1. Per-channel send statistics (successes, failures, retries, throttling)
2. Pipeline counters used by the ops surface
3. Room activity tracking with hysteresis
4. Pluggable tuning policies that adjust cache TTL and pacing by activity

Usage:
    from roomrelay.monitoring import ActivityMonitor, DeliveryMonitor

    monitor = DeliveryMonitor()
    monitor.record_send("group-1", 120.0, True)
    stats = monitor.get_statistics()
"""

import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

from loguru import logger

from roomrelay.delivery.scheduler import PacingProfile
from roomrelay.errors import TransportErrorKind


@dataclass
class ChannelStatistics:
    """Aggregate send statistics for one channel."""
    name: str
    total_sends: int = 0
    successful_sends: int = 0
    failed_sends: int = 0
    retries: int = 0
    rate_limit_waits: int = 0
    rate_limit_wait_ms: int = 0
    total_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    max_duration_ms: Optional[float] = None
    last_sent: Optional[datetime] = None
    last_error: Optional[str] = None
    recent_errors: List[str] = field(default_factory=list)

    def record_send(self, duration_ms: float, success: bool, error_message: Optional[str] = None):
        """Record a finished send chain."""
        self.total_sends += 1
        self.total_duration_ms += duration_ms
        self.avg_duration_ms = self.total_duration_ms / self.total_sends

        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        if self.max_duration_ms is None or duration_ms > self.max_duration_ms:
            self.max_duration_ms = duration_ms

        self.last_sent = datetime.now()

        if success:
            self.successful_sends += 1
        else:
            self.failed_sends += 1
            self.last_error = error_message
            if error_message:
                self.recent_errors.append(f"{self.last_sent.isoformat()}: {error_message}")
                # Keep only last 10 errors
                if len(self.recent_errors) > 10:
                    self.recent_errors = self.recent_errors[-10:]

    @property
    def success_rate(self) -> float:
        """Success rate as percentage."""
        if self.total_sends == 0:
            return 0.0
        return (self.successful_sends / self.total_sends) * 100


class DeliveryMonitor:
    """Counters fed by the retrier and the pipeline."""

    def __init__(self, max_recent_errors: int = 1000):
        self.channels: Dict[str, ChannelStatistics] = {}
        self.recent_errors: Deque[Dict[str, Any]] = deque(maxlen=max_recent_errors)
        self.session_start = datetime.now()
        self.processed = 0
        self.failed = 0
        self.fallbacks = 0
        self.duplicates = 0
        self._lock = threading.Lock()

    def _channel(self, channel_id: str) -> ChannelStatistics:
        if channel_id not in self.channels:
            self.channels[channel_id] = ChannelStatistics(name=channel_id)
        return self.channels[channel_id]

    def record_send(self, channel_id: str, duration_ms: float, success: bool,
                    error_message: Optional[str] = None, context: str = ""):
        with self._lock:
            self._channel(channel_id).record_send(duration_ms, success, error_message)
            if not success:
                self.recent_errors.append({
                    "time": datetime.now().isoformat(),
                    "channel": channel_id,
                    "context": context,
                    "error": error_message,
                })

    def record_retry(self, channel_id: str, kind: TransportErrorKind, reason: str):
        with self._lock:
            self._channel(channel_id).retries += 1

    def record_rate_limit_wait(self, channel_id: str, waited_ms: int):
        with self._lock:
            stats = self._channel(channel_id)
            stats.rate_limit_waits += 1
            stats.rate_limit_wait_ms += waited_ms

    def record_processed(self, success: bool):
        with self._lock:
            self.processed += 1
            if not success:
                self.failed += 1

    def record_fallback(self):
        with self._lock:
            self.fallbacks += 1

    def record_duplicates(self, count: int):
        with self._lock:
            self.duplicates += count

    def get_statistics(self) -> Dict[str, Any]:
        """Get comprehensive statistics."""
        return {
            "session": {
                "start_time": self.session_start.isoformat(),
                "duration_seconds": (datetime.now() - self.session_start).total_seconds(),
                "processed": self.processed,
                "failed": self.failed,
                "fallbacks": self.fallbacks,
                "duplicates": self.duplicates,
            },
            "channels": {
                name: {
                    "total_sends": stats.total_sends,
                    "successful_sends": stats.successful_sends,
                    "failed_sends": stats.failed_sends,
                    "success_rate": stats.success_rate,
                    "retries": stats.retries,
                    "rate_limit_waits": stats.rate_limit_waits,
                    "avg_duration_ms": stats.avg_duration_ms,
                    "last_sent": stats.last_sent.isoformat() if stats.last_sent else None,
                    "last_error": stats.last_error,
                    "recent_errors": stats.recent_errors[-5:] if stats.recent_errors else [],
                }
                for name, stats in self.channels.items()
            },
            "recent_errors": list(self.recent_errors)[-20:],
        }

    def save_to_file(self, filepath: str):
        """Save statistics to JSON file."""
        data = self.get_statistics()
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str, ensure_ascii=False)

    def clear(self):
        """Clear all statistics."""
        with self._lock:
            self.channels.clear()
            self.recent_errors.clear()
            self.session_start = datetime.now()
            self.processed = self.failed = self.fallbacks = self.duplicates = 0


# ---------------------------------------------------------------------------
# Activity tracking
# ---------------------------------------------------------------------------


class ActivityMonitor:
    """Tracks per-room message rates over a sliding window.

    A room turns active once it sees ``active_threshold`` messages within
    the window and only turns inactive again below ``inactive_threshold``.
    """

    def __init__(
        self,
        window_s: int = 5 * 60,
        active_threshold: int = 10,
        inactive_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_s = window_s
        self.active_threshold = active_threshold
        self.inactive_threshold = inactive_threshold
        self._clock = clock
        self._events: Dict[str, Deque[float]] = {}
        self._active_rooms: set = set()
        self._lock = threading.Lock()
        self.total_messages = 0

    def record(self, room_id: str, count: int = 1):
        """Record *count* messages seen for *room_id* now."""
        now = self._clock()
        with self._lock:
            events = self._events.setdefault(room_id, deque())
            events.extend([now] * count)
            self.total_messages += count
            self._evaluate_room_locked(room_id, now)

    def evaluate(self):
        """Re-check every room, letting quiet rooms go inactive.

        Rooms with nothing left in the window are forgotten.
        """
        now = self._clock()
        with self._lock:
            for room_id in list(self._events):
                self._evaluate_room_locked(room_id, now)
                if not self._events[room_id]:
                    del self._events[room_id]
                    self._active_rooms.discard(room_id)

    def _evaluate_room_locked(self, room_id: str, now: float):
        events = self._events[room_id]
        while events and now - events[0] > self.window_s:
            events.popleft()
        count = len(events)
        if room_id in self._active_rooms:
            if count < self.inactive_threshold:
                self._active_rooms.discard(room_id)
                logger.info("Room {} became inactive ({} msgs in window)", room_id, count)
        elif count >= self.active_threshold:
            self._active_rooms.add(room_id)
            logger.info("Room {} became active ({} msgs in window)", room_id, count)

    def is_room_active(self, room_id: str) -> bool:
        return room_id in self._active_rooms

    @property
    def is_active(self) -> bool:
        """True while any room is active."""
        return bool(self._active_rooms)

    def room_count(self, room_id: str) -> int:
        return len(self._events.get(room_id, ()))

    def stats(self) -> Dict[str, Any]:
        return {
            "active": self.is_active,
            "active_rooms": sorted(self._active_rooms),
            "tracked_rooms": len(self._events),
            "total_messages": self.total_messages,
        }


# ---------------------------------------------------------------------------
# Tuning policies
# ---------------------------------------------------------------------------


class TuningPolicy(Protocol):
    """Adjusts cache TTL and pacing according to traffic."""

    def cache_ttl_seconds(self, base_ttl: int, active: bool) -> int: ...

    def pacing(self, base: PacingProfile, active: bool) -> PacingProfile: ...


class StaticTuningPolicy:
    """Always returns the configured defaults."""

    def cache_ttl_seconds(self, base_ttl: int, active: bool) -> int:
        return base_ttl

    def pacing(self, base: PacingProfile, active: bool) -> PacingProfile:
        return base


class AdaptiveTuningPolicy:
    """Speeds pacing up when busy, slows it slightly when quiet.

    Quiet periods also keep cached resources for half as long.
    """

    def __init__(self, active_multiplier: float = 0.6, inactive_multiplier: float = 1.1,
                 min_delay_ms: int = 200, max_delay_ms: int = 5000):
        self.active_multiplier = active_multiplier
        self.inactive_multiplier = inactive_multiplier
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms

    def cache_ttl_seconds(self, base_ttl: int, active: bool) -> int:
        return base_ttl if active else max(60, base_ttl // 2)

    def _scale(self, delay_ms: int, factor: float) -> int:
        if delay_ms <= 0:
            return 0
        return int(round(min(max(delay_ms * factor, self.min_delay_ms), self.max_delay_ms)))

    def pacing(self, base: PacingProfile, active: bool) -> PacingProfile:
        factor = self.active_multiplier if active else self.inactive_multiplier
        return replace(
            base,
            text_to_text_delay_ms=self._scale(base.text_to_text_delay_ms, factor),
            media_delay_ms=self._scale(base.media_delay_ms, factor),
            inter_batch_delay_ms=self._scale(base.inter_batch_delay_ms, factor),
            inter_batch_media_delay_ms=self._scale(base.inter_batch_media_delay_ms, factor),
        )
