"""
roomrelay - Room message resource and delivery pipeline
"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("roomrelay")
except PackageNotFoundError:
    __version__ = "0.1.0"

__logo__ = "📡"
