"""Adaptive batching and pacing of time-ordered delivery to one channel.

Small bursts go out one by one with a delay chosen from the message type
pair. Larger bursts are cut into batches (text-only, media-only or mixed)
that are sent with a short intra-batch delay and a longer pause between
batches when media is involved on either side.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from roomrelay.bus.events import Message


class BatchKind(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    MIXED = "mixed"


@dataclass(frozen=True)
class PacingProfile:
    """Batch limits and delays (milliseconds) for one delivery run."""
    sequential_threshold: int = 8
    max_text_batch: int = 8
    max_media_batch: int = 3
    max_mixed_batch: int = 5
    text_to_text_delay_ms: int = 300
    media_delay_ms: int = 800
    intra_batch_delay_ms: int = 100
    inter_batch_delay_ms: int = 500
    inter_batch_media_delay_ms: int = 1500

    def pair_delay_ms(self, prev: Message, nxt: Message) -> int:
        if not prev.is_media and not nxt.is_media:
            return self.text_to_text_delay_ms
        return self.media_delay_ms

    def inter_batch_ms(self, prev: "DeliveryBatch", nxt: "DeliveryBatch") -> int:
        if prev.has_media or nxt.has_media:
            return self.inter_batch_media_delay_ms
        return self.inter_batch_delay_ms


@dataclass
class DeliveryBatch:
    """A time-ordered group of messages sent under one pacing policy."""
    items: list[Message] = field(default_factory=list)

    @property
    def media_count(self) -> int:
        return sum(1 for m in self.items if m.is_media)

    @property
    def has_media(self) -> bool:
        return self.media_count > 0

    @property
    def kind(self) -> BatchKind:
        media = self.media_count
        if media == 0:
            return BatchKind.TEXT
        if media == len(self.items):
            return BatchKind.MEDIA
        return BatchKind.MIXED


@dataclass
class DeliveryReport:
    """What happened to one ``deliver`` call."""
    channel_id: str
    delivered: list[Message] = field(default_factory=list)
    failed: list[Message] = field(default_factory=list)
    batches: int = 0
    duplicates: int = 0

    @property
    def total(self) -> int:
        return len(self.delivered) + len(self.failed)


def _limit_for(kind: BatchKind, profile: PacingProfile) -> int:
    if kind is BatchKind.TEXT:
        return profile.max_text_batch
    if kind is BatchKind.MEDIA:
        return profile.max_media_batch
    return profile.max_mixed_batch


def partition(messages: list[Message], profile: PacingProfile) -> list[DeliveryBatch]:
    """Greedily group time-ordered *messages* into batches.

    A batch closes as soon as adding the next message would exceed the
    limit for the batch's resulting kind or the media cap.
    """
    batches: list[DeliveryBatch] = []
    current = DeliveryBatch()
    for message in messages:
        if current.items:
            candidate = DeliveryBatch(current.items + [message])
            too_big = len(candidate.items) > _limit_for(candidate.kind, profile)
            too_much_media = candidate.media_count > profile.max_media_batch
            if too_big or too_much_media:
                batches.append(current)
                current = DeliveryBatch()
        current.items.append(message)
    if current.items:
        batches.append(current)
    return batches


PrepareFn = Callable[[Message], Awaitable[Any]]
SendFn = Callable[[Message, Any, str], Awaitable[bool]]


class BatchScheduler:
    """Drives ordered, paced delivery of messages to a channel.

    ``prepare`` turns a message into something sendable (rendering,
    resource fetch) and may run ahead for the messages of a batch;
    ``send`` is always awaited one message at a time in timestamp order.
    """

    def __init__(
        self,
        prepare: PrepareFn,
        send: SendFn,
        profile: PacingProfile | Callable[[], PacingProfile] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._prepare = prepare
        self._send = send
        self._profile = profile or PacingProfile()
        self._sleep = sleep

    @property
    def profile(self) -> PacingProfile:
        return self._profile() if callable(self._profile) else self._profile

    async def deliver(self, messages: list[Message], channel_id: str) -> DeliveryReport:
        """Deliver *messages* to *channel_id* in non-decreasing timestamp order."""
        report = DeliveryReport(channel_id=channel_id)
        if not messages:
            return report

        profile = self.profile
        ordered = sorted(messages, key=lambda m: m.timestamp)
        if len(ordered) < profile.sequential_threshold:
            await self._deliver_sequential(ordered, channel_id, profile, report)
        else:
            await self._deliver_batched(ordered, channel_id, profile, report)

        logger.debug("Channel {}: delivered {}/{} in {} batch(es)",
                     channel_id, len(report.delivered), report.total, report.batches)
        return report

    # ---- modes -------------------------------------------------------------

    async def _deliver_sequential(self, ordered: list[Message], channel_id: str,
                                  profile: PacingProfile, report: DeliveryReport) -> None:
        report.batches = 1
        for i, message in enumerate(ordered):
            try:
                prepared = await self._prepare(message)
            except Exception as e:
                logger.error("Failed to prepare message {} (room {}): {}", message.id, message.room_id, e)
                report.failed.append(message)
            else:
                await self._send_one(message, prepared, channel_id, report)
            if i + 1 < len(ordered):
                await self._sleep(profile.pair_delay_ms(message, ordered[i + 1]) / 1000)

    async def _deliver_batched(self, ordered: list[Message], channel_id: str,
                               profile: PacingProfile, report: DeliveryReport) -> None:
        batches = partition(ordered, profile)
        report.batches = len(batches)
        logger.debug("Channel {}: {} messages in {} batches", channel_id, len(ordered), len(batches))

        for b, batch in enumerate(batches):
            tasks = [asyncio.ensure_future(self._prepare(m)) for m in batch.items]
            try:
                for i, (message, task) in enumerate(zip(batch.items, tasks)):
                    try:
                        prepared = await task
                    except Exception as e:
                        logger.error("Failed to prepare message {} (room {}): {}",
                                     message.id, message.room_id, e)
                        report.failed.append(message)
                    else:
                        await self._send_one(message, prepared, channel_id, report)
                    if i + 1 < len(batch.items):
                        await self._sleep(profile.intra_batch_delay_ms / 1000)
            finally:
                pending = [t for t in tasks if not t.done()]
                for t in pending:
                    t.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)

            if b + 1 < len(batches):
                await self._sleep(profile.inter_batch_ms(batch, batches[b + 1]) / 1000)

    async def _send_one(self, message: Message, prepared: Any, channel_id: str,
                        report: DeliveryReport) -> None:
        try:
            ok = await self._send(message, prepared, channel_id)
        except Exception as e:
            logger.error("Failed to deliver message {} (room {}) to {}: {}",
                         message.id, message.room_id, channel_id, e)
            ok = False
        (report.delivered if ok else report.failed).append(message)
