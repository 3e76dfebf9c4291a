"""Console transport: prints notifications instead of sending them."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel

from roomrelay.channels.base import BaseTransport


class ConsoleTransport(BaseTransport):
    """Dry-run transport used by the CLI."""

    name = "console"

    def __init__(self, console: Console | None = None):
        super().__init__()
        self.console = console or Console()
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def send(self, channel_id: str, payload: dict[str, Any]) -> None:
        self.sent.append((channel_id, payload))
        footer = ", ".join(payload.get("attachments", [])) or None
        self.console.print(Panel(payload.get("text", ""), title=f"→ {channel_id}", subtitle=footer))

    async def upload_attachment(self, channel_id: str, path: Path) -> str:
        return Path(path).name
