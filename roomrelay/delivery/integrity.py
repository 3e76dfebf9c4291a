"""Per-room duplicate detection, sequencing and time-continuity checks."""

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field

from loguru import logger

from roomrelay.bus.events import Message
from roomrelay.errors import AnomalyKind, IntegrityAnomaly


@dataclass
class RoomIntegrityState:
    """Integrity bookkeeping for one room."""
    next_sequence: int = 1
    seen_set: set[str] = field(default_factory=set)
    seen_queue: deque[str] = field(default_factory=deque)
    fingerprints: OrderedDict[str, int] = field(default_factory=OrderedDict)
    timestamps: deque[int] = field(default_factory=deque)
    gaps: deque[int] = field(default_factory=lambda: deque(maxlen=3))
    last_timestamp: int | None = None


@dataclass
class IntegrityReport:
    """Outcome of validating one polled batch for a room."""
    room_id: str
    accepted: list[Message] = field(default_factory=list)
    duplicates: int = 0
    anomalies: list[IntegrityAnomaly] = field(default_factory=list)
    reordered: bool = False

    @property
    def has_issues(self) -> bool:
        return self.duplicates > 0 or bool(self.anomalies) or self.reordered


def _fingerprint(message: Message) -> str | None:
    if not (message.body or message.resource_url):
        return None
    return "|".join((
        message.sender, message.type.value, message.body, message.resource_url or "",
    ))


class IntegrityChecker:
    """Tracks what each room has already delivered.

    Memory is bounded: each room remembers at most ``max_seen_ids`` ids,
    oldest forgotten first.
    """

    def __init__(
        self,
        max_seen_ids: int = 1000,
        duplicate_window_s: int = 5 * 60,
        time_gap_threshold_s: int = 6 * 60 * 60,
        history_size: int = 50,
    ):
        self.max_seen_ids = max(1, max_seen_ids)
        self.duplicate_window_ms = duplicate_window_s * 1000
        self.time_gap_threshold_ms = time_gap_threshold_s * 1000
        self.history_size = history_size
        self._rooms: dict[str, RoomIntegrityState] = {}
        self._lock = threading.Lock()
        self.duplicates = 0
        self.anomalies = 0

    def _room(self, room_id: str) -> RoomIntegrityState:
        with self._lock:
            return self._rooms.setdefault(room_id, RoomIntegrityState())

    # ---- sequencing --------------------------------------------------------

    def assign_sequence(self, room_id: str, message: Message) -> Message:
        """Return *message* stamped with the room's next sequence number."""
        state = self._room(room_id)
        seq = state.next_sequence
        state.next_sequence += 1
        return message.with_sequence(seq)

    # ---- duplicates --------------------------------------------------------

    def is_duplicate(self, room_id: str, message: Message, record: bool = True) -> bool:
        """Check *message* against ids and content recently seen in the room.

        With ``record`` the message is remembered when it is new.
        """
        state = self._room(room_id)
        if message.id and message.id in state.seen_set:
            return True

        fp = _fingerprint(message)
        if fp is not None:
            seen_at = state.fingerprints.get(fp)
            if seen_at is not None and abs(message.timestamp - seen_at) <= self.duplicate_window_ms:
                return True

        if record:
            self._remember(state, message, fp)
        return False

    def _remember(self, state: RoomIntegrityState, message: Message, fp: str | None) -> None:
        if message.id:
            state.seen_set.add(message.id)
            state.seen_queue.append(message.id)
            while len(state.seen_queue) > self.max_seen_ids:
                state.seen_set.discard(state.seen_queue.popleft())

        if fp is not None:
            state.fingerprints[fp] = message.timestamp
            state.fingerprints.move_to_end(fp)
            horizon = message.timestamp - self.duplicate_window_ms
            while state.fingerprints:
                oldest_fp, oldest_ts = next(iter(state.fingerprints.items()))
                if oldest_ts >= horizon and len(state.fingerprints) <= self.max_seen_ids:
                    break
                del state.fingerprints[oldest_fp]

    # ---- time continuity ---------------------------------------------------

    def check_time_continuity(self, room_id: str, message: Message) -> IntegrityAnomaly | None:
        """Record *message*'s timestamp and report any ordering anomaly.

        Never blocks delivery: the anomaly is logged and returned for
        counting only.
        """
        state = self._room(room_id)
        ts = message.timestamp
        anomaly: IntegrityAnomaly | None = None

        if state.last_timestamp is not None:
            gap = ts - state.last_timestamp
            if gap < 0:
                anomaly = IntegrityAnomaly(
                    AnomalyKind.OUT_OF_ORDER, room_id, message.id,
                    f"timestamp {ts} precedes last delivered {state.last_timestamp}",
                )
            elif gap > self.time_gap_threshold_ms and not self._is_normal_recovery(state):
                anomaly = IntegrityAnomaly(
                    AnomalyKind.TIME_GAP, room_id, message.id,
                    f"gap of {gap // 1000}s since previous message",
                )
            if gap >= 0:
                state.gaps.append(gap)

        state.timestamps.append(ts)
        while len(state.timestamps) > self.history_size:
            state.timestamps.popleft()
        if state.last_timestamp is None or ts > state.last_timestamp:
            state.last_timestamp = ts

        if anomaly is not None:
            self.anomalies += 1
            logger.warning("Integrity anomaly in room {} ({}): {}",
                           room_id, anomaly.kind.value, anomaly.detail)
        return anomaly

    def _is_normal_recovery(self, state: RoomIntegrityState) -> bool:
        """Large gaps are expected for rooms that are routinely quiet."""
        recent = list(state.gaps)[-3:]
        if len(recent) < 3:
            return False
        half = self.time_gap_threshold_ms / 2
        return sum(1 for g in recent if g > half) >= 2

    # ---- batch -------------------------------------------------------------

    def validate_batch(self, room_id: str, messages: list[Message]) -> IntegrityReport:
        """Sort, de-duplicate and sequence one room's polled messages."""
        report = IntegrityReport(room_id=room_id)
        ordered = sorted(messages, key=lambda m: m.timestamp)
        report.reordered = any(a is not b for a, b in zip(ordered, messages))

        for message in ordered:
            if self.is_duplicate(room_id, message):
                self.duplicates += 1
                report.duplicates += 1
                report.anomalies.append(IntegrityAnomaly(
                    AnomalyKind.DUPLICATE, room_id, message.id, "already delivered",
                ))
                logger.debug("Dropping duplicate message {} in room {}", message.id, room_id)
                continue
            anomaly = self.check_time_continuity(room_id, message)
            if anomaly is not None:
                report.anomalies.append(anomaly)
            report.accepted.append(self.assign_sequence(room_id, message))

        if report.reordered:
            logger.debug("Room {} batch arrived out of order, sorted by timestamp", room_id)
        return report

    def reset_room(self, room_id: str) -> None:
        with self._lock:
            self._rooms.pop(room_id, None)

    def clear(self) -> None:
        with self._lock:
            self._rooms.clear()

    def stats(self) -> dict[str, int]:
        return {"rooms": len(self._rooms), "duplicates": self.duplicates, "anomalies": self.anomalies}
