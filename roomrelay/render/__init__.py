"""Per-type message rendering."""

from roomrelay.render.base import MessageRenderer, compose, placeholder, sender_display
from roomrelay.render.registry import RendererRegistry, default_registry

__all__ = [
    "MessageRenderer",
    "RendererRegistry",
    "compose",
    "default_registry",
    "placeholder",
    "sender_display",
]
