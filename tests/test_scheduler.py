"""Tests for batching and paced delivery."""

import asyncio

import pytest

from roomrelay.bus.events import MessageType
from roomrelay.delivery.scheduler import (
    BatchKind,
    BatchScheduler,
    PacingProfile,
    partition,
)

T = MessageType.TEXT
M = MessageType.IMAGE


def seq(make_message, kinds: list[MessageType]):
    return [
        make_message(f"m{i}", 100 + i, type=k, resource_url="https://x/img/1" if k is M else None)
        for i, k in enumerate(kinds)
    ]


class Recorder:
    def __init__(self, clock, fail_send: set[str] = frozenset(), fail_prepare: set[str] = frozenset()):
        self.clock = clock
        self.fail_send = fail_send
        self.fail_prepare = fail_prepare
        self.sent: list[tuple[str, int]] = []

    async def prepare(self, message):
        if message.id in self.fail_prepare:
            raise RuntimeError("render failed")
        return f"rendered {message.id}"

    async def send(self, message, prepared, channel_id):
        if message.id in self.fail_send:
            raise RuntimeError("send failed")
        assert prepared == f"rendered {message.id}"
        self.sent.append((message.id, message.timestamp))
        return True


def make_scheduler(recorder, clock, profile=None):
    return BatchScheduler(recorder.prepare, recorder.send, profile=profile, sleep=clock.sleep)


class TestPartition:
    """Greedy grouping rules."""

    def test_text_batches_of_eight(self, make_message):
        batches = partition(seq(make_message, [T] * 10), PacingProfile())

        assert [len(b.items) for b in batches] == [8, 2]
        assert all(b.kind is BatchKind.TEXT for b in batches)

    def test_media_batches_of_three(self, make_message):
        batches = partition(seq(make_message, [M] * 7), PacingProfile())

        assert [len(b.items) for b in batches] == [3, 3, 1]
        assert batches[0].kind is BatchKind.MEDIA

    def test_mixed_batches_of_five(self, make_message):
        batches = partition(seq(make_message, [T, M, T, T, T, T, T]), PacingProfile())

        assert [len(b.items) for b in batches] == [5, 2]
        assert batches[0].kind is BatchKind.MIXED

    def test_media_cap_applies_to_mixed(self, make_message):
        batches = partition(seq(make_message, [M, T, M, M, M]), PacingProfile())

        assert [len(b.items) for b in batches] == [4, 1]
        assert batches[0].media_count == 3

    def test_text_run_closes_when_media_would_exceed_mixed_limit(self, make_message):
        batches = partition(seq(make_message, [T] * 6 + [M]), PacingProfile())

        assert [len(b.items) for b in batches] == [6, 1]

    def test_order_is_preserved(self, make_message):
        messages = seq(make_message, [T, M, M, T] * 4)
        flattened = [m for b in partition(messages, PacingProfile()) for m in b.items]

        assert flattened == messages


class TestSequentialDelivery:
    """Fewer messages than the threshold go out one by one."""

    @pytest.mark.asyncio
    async def test_delivers_in_timestamp_order(self, make_message, clock):
        recorder = Recorder(clock)
        messages = [
            make_message("a", 10),
            make_message("c", 12, type=M, resource_url="https://x/img/1"),
            make_message("b", 11),
        ]

        report = await make_scheduler(recorder, clock).deliver(messages, "g1")

        assert [ts for _, ts in recorder.sent] == [10, 11, 12]
        assert len(report.delivered) == 3
        assert report.batches == 1

    @pytest.mark.asyncio
    async def test_delay_depends_on_type_pair(self, make_message, clock):
        recorder = Recorder(clock)
        messages = seq(make_message, [T, T, M, M])

        await make_scheduler(recorder, clock).deliver(messages, "g1")

        assert clock.sleeps == [0.3, 0.8, 0.8]

    @pytest.mark.asyncio
    async def test_failure_does_not_abort(self, make_message, clock):
        recorder = Recorder(clock, fail_send={"m1"}, fail_prepare={"m2"})
        messages = seq(make_message, [T, T, T, T])

        report = await make_scheduler(recorder, clock).deliver(messages, "g1")

        assert [m.id for m in report.delivered] == ["m0", "m3"]
        assert [m.id for m in report.failed] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_empty_input(self, clock):
        report = await make_scheduler(Recorder(clock), clock).deliver([], "g1")

        assert report.total == 0
        assert clock.sleeps == []


class TestBatchedDelivery:
    """Large bursts are batched with intra/inter-batch pacing."""

    @pytest.mark.asyncio
    async def test_text_only_pacing(self, make_message, clock):
        recorder = Recorder(clock)

        report = await make_scheduler(recorder, clock).deliver(seq(make_message, [T] * 9), "g1")

        assert report.batches == 2
        assert clock.sleeps == [0.1] * 7 + [0.5]
        assert len(recorder.sent) == 9

    @pytest.mark.asyncio
    async def test_media_neighbour_lengthens_inter_batch_delay(self, make_message, clock):
        recorder = Recorder(clock)

        await make_scheduler(recorder, clock).deliver(seq(make_message, [T] * 8 + [M]), "g1")

        assert clock.sleeps[-1] == 1.5

    @pytest.mark.asyncio
    async def test_send_order_holds_when_preparation_finishes_out_of_order(self, make_message, clock):
        sent: list[str] = []
        messages = seq(make_message, [T] * 10)

        async def prepare(message):
            await asyncio.sleep(0.001 * (110 - message.timestamp))
            return message.id

        async def send(message, prepared, channel_id):
            sent.append(prepared)
            return True

        scheduler = BatchScheduler(prepare, send, sleep=clock.sleep)
        await scheduler.deliver(list(reversed(messages)), "g1")

        assert sent == [m.id for m in messages]

    @pytest.mark.asyncio
    async def test_profile_callable_is_read_per_delivery(self, make_message, clock):
        recorder = Recorder(clock)
        profile = PacingProfile(text_to_text_delay_ms=50)

        await make_scheduler(recorder, clock, profile=lambda: profile).deliver(seq(make_message, [T, T]), "g1")

        assert clock.sleeps == [0.05]
