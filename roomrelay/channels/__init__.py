"""Delivery transports."""

from roomrelay.channels.base import BaseTransport, Transport

__all__ = ["BaseTransport", "Transport"]
