"""Content-addressed on-disk cache for downloaded resources.

Files are addressed by a digest of their URL, spread over ``shard_NN``
directories. Entries expire ``ttl_seconds`` after creation; when either
the byte or entry ceiling is exceeded the least recently accessed
entries are evicted until usage drops to half the ceiling.

A miss is reported as ``None``. Write failures never propagate: the
caller simply sees a miss and fetches again. Scratch files handed out by
:meth:`ResourceCache.temp_path` are left alone by cleanup and clear until
they are released.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterable, Callable

from loguru import logger

from roomrelay.utils.helpers import ensure_dir, file_crc32, url_digest

if TYPE_CHECKING:
    from roomrelay.config.schema import Config

_FILE_PREFIX = "res_"
_TMP_DIR = "tmp"


@dataclass
class CacheEntry:
    """One cached resource file."""
    key: str
    file_path: Path
    size_bytes: int
    created_time: float
    last_access_time: float
    checksum: int | None = None


class ResourceCache:
    """Thread-safe resource cache; the index lock is held only for bookkeeping."""

    def __init__(
        self,
        root: Path,
        ttl_seconds: int = 2 * 60 * 60,
        max_bytes: int = 1024 * 1024 * 1024,
        max_entries: int = 2000,
        shard_count: int = 16,
        verify_checksums: bool = True,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root)
        self.ttl_seconds = ttl_seconds
        self.max_bytes = max_bytes
        self.max_entries = max_entries
        self.shard_count = max(1, shard_count)
        self.verify_checksums = verify_checksums
        self._enabled = enabled
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._total_bytes = 0
        self._lock = threading.Lock()
        self._in_flight: set[Path] = set()
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_config(cls, config: "Config") -> "ResourceCache":
        c = config.cache
        return cls(
            config.cache_path,
            ttl_seconds=c.ttl_seconds,
            max_bytes=c.max_bytes,
            max_entries=c.max_entries,
            shard_count=c.shard_count,
            verify_checksums=c.verify_checksums,
            enabled=c.enabled,
        )

    # ---- lifecycle ---------------------------------------------------------

    def init(self) -> None:
        """Create the directory layout and index files left by a previous run."""
        ensure_dir(self.tmp_dir)
        for i in range(self.shard_count):
            ensure_dir(self._shard_dir(i))
        self._reindex()

    @property
    def tmp_dir(self) -> Path:
        return self.root / _TMP_DIR

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        """Toggle caching at runtime; disabling clears everything."""
        self._enabled = enabled
        if not enabled:
            removed = self.clear()
            logger.info("Resource cache disabled, {} entries removed", removed)
        else:
            logger.info("Resource cache enabled")

    # ---- addressing --------------------------------------------------------

    def key_for(self, url: str) -> str:
        return url_digest(url)

    def _shard_dir(self, index: int) -> Path:
        return self.root / f"shard_{index:02d}"

    def path_for(self, url: str, ext: str = "") -> Path:
        key = self.key_for(url)
        shard = int(key[:8], 16) % self.shard_count
        return self._shard_dir(shard) / f"{_FILE_PREFIX}{key}{_normalize_ext(ext)}"

    def temp_path(self, ext: str = "") -> Path:
        """A unique scratch path inside the cache's temp directory.

        The path is protected from cleanup and clear until
        :meth:`release_temp` is called for it.
        """
        ensure_dir(self.tmp_dir)
        path = self.tmp_dir / f"dl_{uuid.uuid4().hex}{_normalize_ext(ext)}"
        with self._lock:
            self._in_flight.add(path)
        return path

    def release_temp(self, path: Path) -> None:
        with self._lock:
            self._in_flight.discard(Path(path))

    # ---- read --------------------------------------------------------------

    def get(self, url: str) -> Path | None:
        """Return the cached file for *url*, or ``None`` on a miss.

        Verifying the checksum reads the whole file; async callers should
        use :meth:`aget`.
        """
        if not self._enabled:
            return self._miss()

        key = self.key_for(url)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return self._miss()

        if now - entry.created_time > self.ttl_seconds:
            logger.debug("Cache entry expired: {}", url)
            self._remove(key)
            return self._miss()

        if not entry.file_path.exists():
            self._remove(key)
            return self._miss()

        if self.verify_checksums and entry.checksum is not None:
            try:
                actual = file_crc32(entry.file_path)
            except OSError:
                actual = None
            if actual != entry.checksum:
                logger.warning("Cache checksum mismatch, discarding {}", entry.file_path.name)
                self._remove(key)
                return self._miss()

        with self._lock:
            entry.last_access_time = now
            self.hits += 1
        logger.debug("Cache hit: {}", url)
        return entry.file_path

    async def aget(self, url: str) -> Path | None:
        """:meth:`get` in a worker thread, keeping file reads off the event loop."""
        return await asyncio.to_thread(self.get, url)

    def _miss(self) -> None:
        with self._lock:
            self.misses += 1
        return None

    # ---- write -------------------------------------------------------------

    def put_file(self, url: str, source: Path, ext: str = "", move: bool = False) -> Path | None:
        """Store *source* under *url*'s address.

        With ``move`` the source file is moved rather than copied. Returns
        the cached path, or ``None`` if the cache is disabled, the file is
        too large to keep, or the write failed. Whenever ``None`` is
        returned the source file is still in place.
        """
        if not self._enabled:
            return None

        source = Path(source)
        try:
            size = source.stat().st_size
        except OSError as e:
            logger.warning("Cache write failed for {}: {}", url, e)
            return None
        # Anything above half the ceiling would be evicted straight away.
        if size > self.max_bytes // 2:
            logger.debug("Not caching {} ({} bytes)", url, size)
            return None

        dest = self.path_for(url, ext or source.suffix)
        part = dest.with_name(f"{dest.name}.{uuid.uuid4().hex[:8]}.part")
        try:
            ensure_dir(dest.parent)
            if move:
                shutil.move(str(source), part)
            else:
                shutil.copyfile(source, part)
            checksum = file_crc32(part) if self.verify_checksums else None
            os.replace(part, dest)
        except OSError as e:
            logger.warning("Cache write failed for {}: {}", url, e)
            self._restore_source(part, source, move)
            return None

        return self._register(self.key_for(url), dest, size, checksum)

    def _restore_source(self, part: Path, source: Path, moved: bool) -> None:
        if moved and part.exists() and not source.exists():
            try:
                shutil.move(str(part), source)
                return
            except OSError as e:
                logger.warning("Could not restore {} after failed cache write: {}", source.name, e)
        part.unlink(missing_ok=True)

    async def put_stream(self, url: str, chunks: AsyncIterable[bytes], ext: str = "") -> Path | None:
        """Store an async byte stream under *url*'s address."""
        if not self._enabled:
            return None

        tmp = self.temp_path(ext)
        try:
            try:
                with open(tmp, "wb") as f:
                    async for chunk in chunks:
                        f.write(chunk)
            except OSError as e:
                logger.warning("Cache stream write failed for {}: {}", url, e)
                tmp.unlink(missing_ok=True)
                return None
            cached = await asyncio.to_thread(self.put_file, url, tmp, ext, True)
            if cached is None:
                tmp.unlink(missing_ok=True)
            return cached
        finally:
            self.release_temp(tmp)

    def _register(self, key: str, path: Path, size: int, checksum: int | None) -> Path | None:
        now = self._clock()
        with self._lock:
            old = self._entries.get(key)
            if old is not None:
                self._total_bytes -= old.size_bytes
                if old.file_path != path:
                    old.file_path.unlink(missing_ok=True)
            self._entries[key] = CacheEntry(
                key=key, file_path=path, size_bytes=size,
                created_time=now, last_access_time=now, checksum=checksum,
            )
            self._total_bytes += size
            self._evict_over_ceiling_locked()
            kept = key in self._entries
        return path if kept else None

    # ---- eviction ----------------------------------------------------------

    def _evict_over_ceiling_locked(self) -> None:
        if self._total_bytes <= self.max_bytes and len(self._entries) <= self.max_entries:
            return
        byte_target = self.max_bytes // 2
        entry_target = max(1, self.max_entries // 2)
        victims = sorted(self._entries.values(), key=lambda e: e.last_access_time)
        evicted = 0
        for entry in victims:
            if self._total_bytes <= byte_target and len(self._entries) <= entry_target:
                break
            self._drop_locked(entry.key)
            evicted += 1
        logger.info("Cache over ceiling, evicted {} entries ({} bytes left)", evicted, self._total_bytes)

    def _drop_locked(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        self._total_bytes -= entry.size_bytes
        try:
            entry.file_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to delete cache file {}: {}", entry.file_path, e)

    def _remove(self, key: str) -> None:
        with self._lock:
            self._drop_locked(key)

    def cleanup(self, max_age_minutes: float | None = None) -> int:
        """Remove stale entries and scratch files.

        With *max_age_minutes*, entries not accessed within that many
        minutes are removed (``0`` removes everything). Without it, entries
        past their TTL are removed. Returns the number of entries removed.
        """
        now = self._clock()
        with self._lock:
            if max_age_minutes is None:
                stale = [k for k, e in self._entries.items() if now - e.created_time > self.ttl_seconds]
            else:
                limit = max_age_minutes * 60
                stale = [k for k, e in self._entries.items() if now - e.last_access_time >= limit]
            for key in stale:
                self._drop_locked(key)

        age_limit = self.ttl_seconds if max_age_minutes is None else max_age_minutes * 60
        self._sweep_tmp(age_limit)
        if stale:
            logger.info("Cache cleanup removed {} entries", len(stale))
        return len(stale)

    def _sweep_tmp(self, age_limit: float = 0.0) -> None:
        """Delete released scratch files at least *age_limit* seconds old."""
        if not self.tmp_dir.exists():
            return
        # File mtimes are wall-clock.
        now = time.time()
        with self._lock:
            in_flight = set(self._in_flight)
        for path in self.tmp_dir.iterdir():
            if path in in_flight:
                continue
            try:
                if now - path.stat().st_mtime >= age_limit:
                    path.unlink(missing_ok=True)
            except OSError as e:
                logger.debug("Skip temp file {}: {}", path.name, e)

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        with self._lock:
            keys = list(self._entries)
            for key in keys:
                self._drop_locked(key)
            self._total_bytes = 0
        self._sweep_tmp()
        return len(keys)

    # ---- index -------------------------------------------------------------

    def _reindex(self) -> None:
        found = 0
        with self._lock:
            for i in range(self.shard_count):
                shard = self._shard_dir(i)
                if not shard.exists():
                    continue
                for path in shard.iterdir():
                    if path.name.endswith(".part"):
                        path.unlink(missing_ok=True)
                        continue
                    if not path.name.startswith(_FILE_PREFIX):
                        continue
                    key = path.name[len(_FILE_PREFIX):].split(".", 1)[0]
                    stat = path.stat()
                    self._entries[key] = CacheEntry(
                        key=key, file_path=path, size_bytes=stat.st_size,
                        created_time=stat.st_mtime, last_access_time=stat.st_mtime,
                    )
                    self._total_bytes += stat.st_size
                    found += 1
        if found:
            logger.info("Resource cache indexed {} existing files", found)

    # ---- stats -------------------------------------------------------------

    @property
    def hit_rate(self) -> float:
        """Hit rate as a fraction in [0, 1]."""
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def stats(self) -> dict[str, object]:
        return {
            "enabled": self._enabled,
            "entries": len(self._entries),
            "bytes": self._total_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
        }


def _normalize_ext(ext: str) -> str:
    ext = (ext or "").strip()
    if not ext:
        return ""
    return ext if ext.startswith(".") else f".{ext}"
