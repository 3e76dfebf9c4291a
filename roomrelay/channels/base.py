"""Base transport interface for delivery channels."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    """What the pipeline needs from a chat transport.

    Both calls may be slow and may fail; they should raise
    :class:`roomrelay.errors.TransportError` with a kind when the failure
    can be classified.
    """

    async def send(self, channel_id: str, payload: dict[str, Any]) -> None: ...

    async def upload_attachment(self, channel_id: str, path: Path) -> str: ...


class BaseTransport(ABC):
    """
    Abstract base class for transport implementations.

    Each transport (HTTP bot API, console, ...) implements sending a
    composed notification and uploading a file attachment.
    """

    name: str = "base"

    def __init__(self, config: Any = None):
        self.config = config
        self._running = False

    async def start(self) -> None:
        """Open connections. Default is a no-op."""
        self._running = True

    async def stop(self) -> None:
        """Release connections. Default is a no-op."""
        self._running = False

    @abstractmethod
    async def send(self, channel_id: str, payload: dict[str, Any]) -> None:
        """
        Send a composed notification.

        Args:
            channel_id: Delivery target (chat group id).
            payload: Notification payload with ``text`` and optional ``attachments``.
        """
        pass

    @abstractmethod
    async def upload_attachment(self, channel_id: str, path: Path) -> str:
        """Upload a file and return the handle to reference it in ``send``."""
        pass

    @property
    def is_running(self) -> bool:
        return self._running
