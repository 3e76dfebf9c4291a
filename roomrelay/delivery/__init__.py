"""Ordering, pacing, rate limiting and retry for outbound delivery."""

from roomrelay.delivery.integrity import IntegrityChecker, IntegrityReport
from roomrelay.delivery.pools import WorkerPool
from roomrelay.delivery.rate_limiter import RateLimiter
from roomrelay.delivery.retrier import (
    CircuitBreaker,
    DeliveryRetrier,
    DeliveryState,
    SendOutcome,
    classify_error_text,
    classify_transport_error,
)
from roomrelay.delivery.scheduler import (
    BatchKind,
    BatchScheduler,
    DeliveryBatch,
    DeliveryReport,
    PacingProfile,
    partition,
)

__all__ = [
    "BatchKind",
    "BatchScheduler",
    "CircuitBreaker",
    "DeliveryBatch",
    "DeliveryReport",
    "DeliveryRetrier",
    "DeliveryState",
    "IntegrityChecker",
    "IntegrityReport",
    "PacingProfile",
    "RateLimiter",
    "SendOutcome",
    "WorkerPool",
    "classify_error_text",
    "classify_transport_error",
    "partition",
]
