"""Delivery pipeline: wires the services together and owns their lifecycle.

Flow for one poll result::

    messages -> integrity check (dedup, sort, sequence) -> per-channel queue
             -> batch scheduler -> render/fetch (worker pools)
             -> rate-limited send with retry -> transport

Each channel has a single worker draining its queue, so sends to one
channel are strictly ordered while channels proceed independently.

Timestamp order is only guaranteed within one poll. A message that turns
up in a later poll with an older timestamp is still delivered, after
everything already queued, and is logged as an out-of-order anomaly.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from loguru import logger

from roomrelay.bus.events import Message, Notification
from roomrelay.cache.resource_cache import ResourceCache
from roomrelay.channels.base import Transport
from roomrelay.config.schema import Config
from roomrelay.delivery.integrity import IntegrityChecker
from roomrelay.delivery.pools import WorkerPool
from roomrelay.delivery.rate_limiter import RateLimiter
from roomrelay.delivery.retrier import CircuitBreaker, DeliveryRetrier
from roomrelay.delivery.scheduler import BatchScheduler, DeliveryReport, PacingProfile
from roomrelay.fetch.fetcher import ResourceFetcher
from roomrelay.monitoring import (
    ActivityMonitor,
    AdaptiveTuningPolicy,
    DeliveryMonitor,
    StaticTuningPolicy,
    TuningPolicy,
)
from roomrelay.render.registry import RendererRegistry, default_registry


@dataclass
class _Job:
    messages: list[Message]
    future: asyncio.Future
    duplicates: int = 0


@dataclass
class ChannelWorker:
    """Ordered delivery queue for one channel."""
    channel_id: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None
    pending: int = 0


def pacing_from_config(config: Config) -> PacingProfile:
    s = config.scheduler
    return PacingProfile(
        sequential_threshold=s.sequential_threshold,
        max_text_batch=s.max_text_batch,
        max_media_batch=s.max_media_batch,
        max_mixed_batch=s.max_mixed_batch,
        text_to_text_delay_ms=s.text_to_text_delay_ms,
        media_delay_ms=s.media_delay_ms,
        intra_batch_delay_ms=s.intra_batch_delay_ms,
        inter_batch_delay_ms=s.inter_batch_delay_ms,
        inter_batch_media_delay_ms=s.inter_batch_media_delay_ms,
    )


class DeliveryPipeline:
    """Message resource and delivery pipeline.

    Services can be injected for testing; anything not given is built
    from *config*. Call :meth:`init` before submitting and
    :meth:`shutdown` when done.
    """

    def __init__(
        self,
        config: Config,
        transport: Transport,
        *,
        cache: ResourceCache | None = None,
        fetcher: ResourceFetcher | None = None,
        limiter: RateLimiter | None = None,
        integrity: IntegrityChecker | None = None,
        renderers: RendererRegistry | None = None,
        monitor: DeliveryMonitor | None = None,
        activity: ActivityMonitor | None = None,
        policy: TuningPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.transport = transport

        self.cache = cache or ResourceCache.from_config(config)
        self.fetcher = fetcher or ResourceFetcher(
            self.cache,
            timeout_s=config.fetch.timeout_s,
            max_retries=config.fetch.max_retries,
            backoff_base_ms=config.fetch.backoff_base_ms,
            backoff_cap_ms=config.fetch.backoff_cap_ms,
            user_agent=config.fetch.user_agent,
            referer=config.fetch.referer,
        )
        self.limiter = limiter or RateLimiter(
            max_per_window=config.rate_limit.max_per_window,
            window_ms=config.rate_limit.window_ms,
            max_wait_ms=config.rate_limit.max_wait_ms,
            forced_sleep_ms=config.rate_limit.forced_sleep_ms,
            sleep=sleep,
        )
        self.integrity = integrity or IntegrityChecker(
            max_seen_ids=config.integrity.max_seen_ids,
            duplicate_window_s=config.integrity.duplicate_window_s,
            time_gap_threshold_s=config.integrity.time_gap_threshold_s,
            history_size=config.integrity.history_size,
        )
        self.renderers = renderers or default_registry()
        self.monitor = monitor or DeliveryMonitor(max_recent_errors=config.retry.recent_errors_limit)
        self.activity = activity or ActivityMonitor(
            window_s=config.activity.window_s,
            active_threshold=config.activity.active_threshold,
            inactive_threshold=config.activity.inactive_threshold,
        )
        if policy is None:
            policy = AdaptiveTuningPolicy() if config.activity.adaptive else StaticTuningPolicy()
        self.policy = policy

        cb = config.circuit_breaker
        self.retrier = DeliveryRetrier(
            transport,
            self.limiter,
            max_retries=config.retry.max_retries,
            base_delay_ms=config.retry.base_delay_ms,
            multiplier=config.retry.multiplier,
            max_delay_ms=config.retry.max_delay_ms,
            send_timeout_s=config.retry.send_timeout_s,
            breaker_enabled=cb.enabled,
            breaker_factory=lambda: CircuitBreaker(
                failure_threshold=cb.failure_threshold,
                open_timeout_s=cb.open_timeout_s,
                success_threshold=cb.success_threshold,
            ),
            monitor=self.monitor,
            sleep=sleep,
        )

        self.media_pool = WorkerPool("media", config.pools.media_workers)
        self.text_pool = WorkerPool("text", config.pools.text_workers)
        self._base_pacing = pacing_from_config(config)
        self.scheduler = BatchScheduler(self._prepare, self._send, profile=self._pacing, sleep=sleep)

        self._channels: dict[str, ChannelWorker] = {}
        self._background_tasks: set[asyncio.Task] = set()
        self._running = False

    # ---- lifecycle ---------------------------------------------------------

    async def init(self) -> None:
        """Prepare the cache, open network clients and start timers."""
        if self._running:
            return
        self.cache.init()
        await self.fetcher.start()
        start = getattr(self.transport, "start", None)
        if start is not None:
            await start()
        self._running = True
        self._spawn(self._cleanup_loop())
        self._spawn(self._activity_loop())
        logger.info("Delivery pipeline started (cache at {})", self.cache.root)

    async def shutdown(self, grace_s: float | None = None) -> None:
        """Stop accepting work, drain queued deliveries, then cancel the rest."""
        if not self._running:
            return
        self._running = False
        grace = self.config.pools.shutdown_grace_s if grace_s is None else grace_s

        joins = [w.queue.join() for w in self._channels.values()]
        if joins:
            try:
                await asyncio.wait_for(asyncio.gather(*joins), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Shutdown grace period ({}s) elapsed, cancelling {} queued message(s)",
                               grace, self.queue_depth)

        tasks = [w.task for w in self._channels.values() if w.task] + list(self._background_tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for worker in self._channels.values():
            self._abandon_queue(worker)
        self._channels.clear()
        self._background_tasks.clear()

        await self.fetcher.close()
        stop = getattr(self.transport, "stop", None)
        if stop is not None:
            await stop()
        logger.info("Delivery pipeline stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ---- submission --------------------------------------------------------

    def dispatch(self, messages: list[Message], channel_ids: list[str]) -> list[asyncio.Future]:
        """Check one poll's messages once and queue them for every channel."""
        if not self._running:
            raise RuntimeError("Delivery pipeline is not running")

        by_room: dict[str, list[Message]] = defaultdict(list)
        for m in messages:
            by_room[m.room_id].append(m)

        accepted: list[Message] = []
        duplicates = 0
        for room_id, room_messages in by_room.items():
            report = self.integrity.validate_batch(room_id, room_messages)
            accepted.extend(report.accepted)
            duplicates += report.duplicates
            if report.accepted:
                self.activity.record(room_id, len(report.accepted))
        if duplicates:
            self.monitor.record_duplicates(duplicates)
            logger.info("Dropped {} duplicate message(s)", duplicates)

        futures = []
        loop = asyncio.get_running_loop()
        for channel_id in channel_ids:
            worker = self._worker(channel_id)
            job = _Job(messages=list(accepted), future=loop.create_future(), duplicates=duplicates)
            worker.pending += len(job.messages)
            worker.queue.put_nowait(job)
            futures.append(job.future)
        return futures

    def submit(self, messages: list[Message], channel_id: str) -> asyncio.Future:
        """Queue *messages* for *channel_id*; the future resolves to a report."""
        return self.dispatch(messages, [channel_id])[0]

    async def deliver(self, messages: list[Message], channel_id: str) -> DeliveryReport:
        """Submit and wait for the delivery report."""
        return await self.submit(messages, channel_id)

    def _worker(self, channel_id: str) -> ChannelWorker:
        worker = self._channels.get(channel_id)
        if worker is None:
            worker = ChannelWorker(channel_id)
            worker.task = asyncio.create_task(self._channel_loop(worker))
            self._channels[channel_id] = worker
        return worker

    async def _channel_loop(self, worker: ChannelWorker) -> None:
        while True:
            job: _Job = await worker.queue.get()
            try:
                report = await self.scheduler.deliver(job.messages, worker.channel_id)
                report.duplicates = job.duplicates
                if not job.future.done():
                    job.future.set_result(report)
            except asyncio.CancelledError:
                if not job.future.done():
                    job.future.cancel()
                raise
            except Exception as e:
                logger.error("Delivery to channel {} failed: {}", worker.channel_id, e)
                if not job.future.done():
                    job.future.set_exception(e)
            finally:
                worker.pending -= len(job.messages)
                worker.queue.task_done()

    def _abandon_queue(self, worker: ChannelWorker) -> None:
        while not worker.queue.empty():
            job: _Job = worker.queue.get_nowait()
            worker.pending -= len(job.messages)
            if not job.future.done():
                job.future.cancel()
            worker.queue.task_done()

    # ---- per-message steps -------------------------------------------------

    def _pacing(self) -> PacingProfile:
        return self.policy.pacing(self._base_pacing, self.activity.is_active)

    async def _prepare(self, message: Message) -> Notification:
        pool = self.media_pool if message.is_media else self.text_pool
        return await pool.run(self.renderers.render, message, self.fetcher)

    async def _send(self, message: Message, notification: Notification, channel_id: str) -> bool:
        if notification.degraded:
            self.monitor.record_fallback()

        outcome = await self.retrier.send_with_retry(notification, channel_id)
        ok = outcome.ok
        if not ok and notification.fallback is not None:
            logger.warning("Media send failed for message {} (room {}), sending text instead",
                           message.id, message.room_id)
            self.monitor.record_fallback()
            ok = (await self.retrier.send_with_retry(notification.fallback, channel_id)).ok

        self.monitor.record_processed(ok)
        return ok

    # ---- background --------------------------------------------------------

    async def _cleanup_loop(self) -> None:
        interval = max(1, self.config.cache.cleanup_interval_s)
        while self._running:
            await asyncio.sleep(interval)
            try:
                self.cache.ttl_seconds = self.policy.cache_ttl_seconds(
                    self.config.cache.ttl_seconds, self.activity.is_active)
                self.cache.cleanup()
            except Exception as e:
                logger.warning("Cache cleanup failed: {}", e)

    async def _activity_loop(self) -> None:
        interval = max(1, self.config.activity.check_interval_s)
        while self._running:
            await asyncio.sleep(interval)
            self.activity.evaluate()

    # ---- ops surface -------------------------------------------------------

    def cleanup_expired_cache(self, max_age_minutes: float) -> int:
        """Remove cache entries not used within *max_age_minutes*."""
        return self.cache.cleanup(max_age_minutes)

    def clear_all_cache(self) -> int:
        return self.cache.clear()

    def set_cache_enabled(self, enabled: bool) -> None:
        self.cache.set_enabled(enabled)

    @property
    def queue_depth(self) -> int:
        return sum(w.pending for w in self._channels.values())

    def get_stats(self) -> dict[str, Any]:
        """Headline numbers for ops tooling."""
        return {
            "cache_hit_rate": self.cache.hit_rate,
            "processed": self.monitor.processed,
            "failed": self.monitor.failed,
            "queue_depth": self.queue_depth,
        }

    def stats(self) -> dict[str, Any]:
        """Full statistics across every service."""
        return {
            **self.get_stats(),
            "cache": self.cache.stats(),
            "integrity": self.integrity.stats(),
            "rate_limiter": self.limiter.stats(),
            "activity": self.activity.stats(),
            "pools": {"media": self.media_pool.stats(), "text": self.text_pool.stats()},
            "delivery": self.monitor.get_statistics(),
        }
