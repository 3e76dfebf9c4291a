"""Error kinds and result values shared across the delivery pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class FetchErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class TransportErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class AnomalyKind(str, Enum):
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    TIME_GAP = "time_gap"


@dataclass(frozen=True)
class FetchError:
    """Why a resource could not be fetched."""
    kind: FetchErrorKind
    url: str
    reason: str
    status_code: int | None = None
    attempts: int = 1

    @property
    def transient(self) -> bool:
        return self.kind is FetchErrorKind.TRANSIENT


@dataclass(frozen=True)
class RateLimitWait:
    """Outcome of a blocking limiter acquire."""
    channel_id: str
    waited_ms: int = 0
    forced: bool = False


@dataclass(frozen=True)
class IntegrityAnomaly:
    """A non-fatal integrity observation; logged and counted, never raised."""
    kind: AnomalyKind
    room_id: str
    message_id: str
    detail: str = ""


@dataclass(frozen=True)
class DeliveryError:
    """Terminal classification of a failed send."""
    kind: TransportErrorKind
    channel_id: str
    reason: str
    attempts: int = 0


class TransportError(Exception):
    """Raised by transport adapters with a structured kind.

    ``retry_after`` is the server-requested wait in seconds when known.
    """

    def __init__(self, message: str, kind: TransportErrorKind = TransportErrorKind.FATAL,
                 retry_after: float | None = None, status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after
        self.status_code = status_code


@dataclass
class Result(Generic[T]):
    """Either a value or an error, never both."""
    value: T | None = None
    error: object | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: object) -> "Result[T]":
        return cls(error=error)
