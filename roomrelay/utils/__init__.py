"""Utility functions for roomrelay."""

from roomrelay.utils.helpers import ensure_dir, file_crc32, url_digest

__all__ = ["ensure_dir", "file_crc32", "url_digest"]
