import asyncio
from pathlib import Path
from typing import Any

import pytest

from roomrelay.bus.events import Message, MessageType


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class RecordingTransport:
    """Transport double that records payloads and can fail on demand.

    ``failures`` is consumed one entry per ``send`` call: ``None`` means
    success, an exception is raised.
    """

    def __init__(self, failures: list[Exception | None] | None = None,
                 upload_error: Exception | None = None):
        self.failures = list(failures or [])
        self.upload_error = upload_error
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.uploads: list[tuple[str, Path]] = []
        self.calls = 0

    async def send(self, channel_id: str, payload: dict[str, Any]) -> None:
        self.calls += 1
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        self.sent.append((channel_id, payload))

    async def upload_attachment(self, channel_id: str, path: Path) -> str:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append((channel_id, Path(path)))
        return f"handle:{Path(path).name}"


def _make_message(
    msg_id: str,
    timestamp: int,
    type: MessageType = MessageType.TEXT,
    room_id: str = "room-1",
    body: str | None = None,
    resource_url: str | None = None,
    **kwargs: Any,
) -> Message:
    return Message(
        id=msg_id,
        room_id=room_id,
        type=type,
        timestamp=timestamp,
        sender=kwargs.pop("sender", "Alice"),
        body=f"body {msg_id}" if body is None else body,
        resource_url=resource_url,
        room_name=kwargs.pop("room_name", "Room One"),
        **kwargs,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_message():
    return _make_message


@pytest.fixture
def transport_factory():
    return RecordingTransport
