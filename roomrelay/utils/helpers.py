"""Utility functions for roomrelay."""

import hashlib
import zlib
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def url_digest(url: str) -> str:
    """Stable hex digest used as a content address for a resource URL."""
    return hashlib.md5(url.encode("utf-8")).hexdigest()


def file_crc32(path: Path, chunk_size: int = 64 * 1024) -> int:
    """CRC32 of a file's contents, read in chunks."""
    crc = 0
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            crc = zlib.crc32(chunk, crc)
    return crc & 0xFFFFFFFF

