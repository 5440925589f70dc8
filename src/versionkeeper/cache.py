"""
TTL cache for registry version lookups.

Two interchangeable implementations share the VersionCache contract:

- MemoryCache: a lock-guarded dict; expired entries are evicted lazily on
  read or in bulk by clean_expired().
- FileCache: the same semantics, persisted to <cache_dir>/version_cache.json.
  Mutations mark the cache dirty and signal a background saver thread that
  debounces bursts of writes and also saves on a fixed interval. Every save
  rewrites the full content to a temp file and renames it over the target.

The cache is a disposable optimization: losing it only costs a registry
round-trip, so a missing or corrupt cache file starts an empty cache.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from versionkeeper.errors import FailedPreconditionError, PersistenceError
from versionkeeper.logging import get_logger

if TYPE_CHECKING:
    from versionkeeper.config import CacheConfig

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
CACHE_FILE_NAME = "version_cache.json"


def cache_key(registry: str, package: str) -> str:
    """Build the cache key for a registry lookup, e.g. "npm:react"."""
    return f"{registry}:{package}"


@dataclass
class CacheEntry:
    """A cached version with its absolute expiry time (epoch seconds)."""

    version: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """Check if the entry has expired."""
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to the on-disk representation."""
        return {
            "version": self.version,
            "expires_at": datetime.fromtimestamp(self.expires_at, UTC).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        """Create from the on-disk representation."""
        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return cls(version=str(data["version"]), expires_at=expires_at.timestamp())


class VersionCache(ABC):
    """Contract shared by the cache implementations."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the cached version, or None when absent or expired."""

    @abstractmethod
    def set(self, key: str, version: str) -> None:
        """Cache a version under key for the configured TTL."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key if present."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every entry."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Return the keys of all unexpired entries."""

    @abstractmethod
    def clean_expired(self) -> int:
        """Purge expired entries and return how many were removed."""

    def close(self) -> None:
        """Release background resources. No-op by default."""

    def __enter__(self) -> VersionCache:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @classmethod
    def from_config(cls, config: CacheConfig) -> VersionCache:
        """
        Create the cache backend selected by configuration.

        Args:
            config: CacheConfig with backend and TTL settings.

        Returns:
            A MemoryCache or FileCache instance.
        """
        if config.backend == "file":
            return FileCache(
                config.directory,
                ttl_seconds=config.ttl_seconds,
                save_interval_seconds=config.save_interval_seconds,
                debounce_seconds=config.debounce_seconds,
            )
        return MemoryCache(ttl_seconds=config.ttl_seconds)


class MemoryCache(VersionCache):
    """
    In-memory TTL cache.

    Args:
        ttl_seconds: Entry time-to-live. Non-positive values fall back to
            24 hours.
        clock: Source of the current time in epoch seconds.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds if ttl_seconds > 0 else DEFAULT_TTL_SECONDS
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        """Return the entry TTL in seconds."""
        return self._ttl

    def _changed(self) -> None:
        """Hook invoked (with the lock held) after every mutation."""

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._changed()
                return None
            return entry.version

    def set(self, key: str, version: str) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(
                version=version, expires_at=self._clock() + self._ttl
            )
            self._changed()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._entries.pop(key, None) is not None:
                self._changed()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._changed()

    def keys(self) -> list[str]:
        with self._lock:
            now = self._clock()
            return [k for k, e in self._entries.items() if not e.is_expired(now)]

    def clean_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            if expired:
                self._changed()

        if expired:
            logger.debug(f"Removed {len(expired)} expired cache entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FileCache(MemoryCache):
    """
    TTL cache persisted to <cache_dir>/version_cache.json.

    Writes are coalesced by a single background saver thread, so the file is
    eventually consistent with memory. Call flush() to save synchronously and
    close() to stop the saver after a final save.

    Args:
        cache_dir: Directory for the cache file; created if missing.
        ttl_seconds: Entry time-to-live. Non-positive values fall back to
            24 hours.
        save_interval_seconds: Interval of the periodic save.
        debounce_seconds: Quiet period after a write before saving.
        clock: Source of the current time in epoch seconds.

    Raises:
        FailedPreconditionError: If cache_dir cannot be created.
    """

    def __init__(
        self,
        cache_dir: Path | str,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        save_interval_seconds: float = 30.0,
        debounce_seconds: float = 0.1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(ttl_seconds, clock=clock)
        self._dir = Path(cache_dir)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FailedPreconditionError(
                f"Cannot create cache directory: {self._dir}",
                details={"path": str(self._dir), "error": str(e)},
            ) from e

        self._path = self._dir / CACHE_FILE_NAME
        self._save_interval = save_interval_seconds
        self._debounce = debounce_seconds
        self._dirty = False
        self._save_signal = threading.Event()
        self._stop_event = threading.Event()
        self._file_lock = threading.Lock()
        self._closed = False

        self._load()

        self._saver = threading.Thread(
            target=self._run_saver,
            name="versionkeeper-cache-saver",
            daemon=True,
        )
        self._saver.start()

    @property
    def path(self) -> Path:
        """Return the cache file path."""
        return self._path

    def _changed(self) -> None:
        self._dirty = True
        self._save_signal.set()

    def _load(self) -> None:
        """Load entries from disk, starting empty on any problem."""
        if not self._path.exists():
            return

        try:
            with open(self._path) as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError("cache file must contain a JSON object")
            entries = {key: CacheEntry.from_dict(value) for key, value in raw.items()}
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(
                f"Ignoring unreadable cache file: {e}",
                extra={"path": str(self._path)},
            )
            return

        now = self._clock()
        with self._lock:
            self._entries = {k: e for k, e in entries.items() if not e.is_expired(now)}

        logger.debug(
            f"Loaded {len(self._entries)} cache entries",
            extra={"path": str(self._path)},
        )

    def _save(self) -> None:
        """
        Write a snapshot of the cache to disk atomically.

        Raises:
            PersistenceError: If the file cannot be written.
        """
        with self._file_lock:
            with self._lock:
                if not self._dirty:
                    return
                snapshot = {k: e.to_dict() for k, e in self._entries.items()}
                self._dirty = False

            temp_name: str | None = None
            try:
                fd, temp_name = tempfile.mkstemp(
                    dir=self._dir, prefix=".version_cache-", suffix=".tmp"
                )
                with os.fdopen(fd, "w") as f:
                    json.dump(snapshot, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_name, self._path)
            except OSError as e:
                with self._lock:
                    self._dirty = True
                if temp_name is not None:
                    Path(temp_name).unlink(missing_ok=True)
                raise PersistenceError(
                    f"Failed to save cache file: {e}",
                    details={"path": str(self._path)},
                ) from e

        logger.debug(
            "Saved cache file",
            extra={"path": str(self._path), "entries": len(snapshot)},
        )

    def _run_saver(self) -> None:
        """Background loop: save after a debounced signal or every interval."""
        while not self._stop_event.is_set():
            signalled = self._save_signal.wait(self._save_interval)
            if self._stop_event.is_set():
                break
            if signalled:
                # Let a burst of writes settle before touching the disk
                self._stop_event.wait(self._debounce)
                self._save_signal.clear()
            try:
                self._save()
            except PersistenceError as e:
                logger.error(f"Background cache save failed: {e.message}")

    def flush(self) -> None:
        """
        Save pending changes synchronously.

        Raises:
            PersistenceError: If the file cannot be written.
        """
        self._save()

    def close(self) -> None:
        """Stop the background saver and save pending changes."""
        if self._closed:
            return
        self._closed = True
        self._stop_event.set()
        self._save_signal.set()
        self._saver.join(timeout=5.0)
        self._save()
