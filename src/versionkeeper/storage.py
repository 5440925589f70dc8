"""
Durable storage of the version store.

VersionStorage owns the single on-disk VersionStore file (YAML or JSON).
Every save writes a sibling temp file, fsyncs it and renames it over the
target, so readers never observe a half-written store. Mutations are applied
to a copy of the store and only become visible once the save succeeded.

Backups are timestamped copies in a backups/ directory next to the store:
    <dir>/backups/versions_backup_<YYYYMMDD_HHMMSS>.<format>
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import ValidationError

from versionkeeper.errors import (
    InvalidArgumentError,
    NotFoundError,
    PersistenceError,
)
from versionkeeper.logging import get_logger
from versionkeeper.models import UpdatePolicy, VersionInfo, VersionQuery, VersionStore

if TYPE_CHECKING:
    from versionkeeper.config import StorageConfig

logger = get_logger(__name__)

SUPPORTED_FORMATS = ("yaml", "json")
BACKUP_DIR_NAME = "backups"
BACKUP_PREFIX = "versions_backup_"


class ReadWriteLock:
    """
    Reader/writer lock: many concurrent readers or one writer.

    Waiting writers block new readers so a steady stream of reads cannot
    starve a writer. Not reentrant.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        """Hold the lock for reading."""
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        """Hold the lock for writing."""
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def atomic_write_text(path: Path, content: str) -> None:
    """
    Atomically replace path with content.

    The data is written to a temp file in the same directory, flushed and
    fsynced, then renamed over the target.

    Raises:
        PersistenceError: If any step fails. The target is left untouched.
    """
    temp_name: str | None = None
    try:
        fd, temp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except OSError as e:
        if temp_name is not None:
            Path(temp_name).unlink(missing_ok=True)
        raise PersistenceError(
            f"Failed to write {path}: {e}",
            details={"path": str(path)},
        ) from e


class VersionStorage:
    """
    File-backed, thread-safe store of tracked versions.

    Attributes:
        path: Location of the version store file.
        format: "yaml" or "json".
        backup_dir: Directory receiving backups.

    Example:
        >>> storage = VersionStorage("versions.yaml")
        >>> storage.set_version_info(VersionInfo(name="react", current_version="18.2.0"))
        >>> storage.query(VersionQuery(outdated=True))
    """

    def __init__(self, path: Path | str, format: str = "yaml") -> None:
        """
        Open or create a version store.

        Args:
            path: Location of the version store file.
            format: Serialization format, "yaml" or "json".

        Raises:
            InvalidArgumentError: If the format is unsupported.
            PersistenceError: If the store cannot be created or read.
        """
        format = format.lower()
        if format not in SUPPORTED_FORMATS:
            raise InvalidArgumentError(
                f"Unsupported storage format: {format}",
                details={"format": format, "valid": list(SUPPORTED_FORMATS)},
            )

        self._path = Path(path)
        self._format = format
        self._backup_dir = self._path.parent / BACKUP_DIR_NAME
        self._lock = ReadWriteLock()
        self._store = VersionStore()

        try:
            self._backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(
                f"Failed to create backup directory: {self._backup_dir}",
                details={"path": str(self._backup_dir), "error": str(e)},
            ) from e

        if self._path.exists():
            self.load()
        else:
            with self._lock.write():
                self._save_unlocked(VersionStore())
            logger.info(
                "Initialized empty version store",
                extra={"path": str(self._path), "format": self._format},
            )

    @classmethod
    def from_config(cls, config: StorageConfig) -> VersionStorage:
        """Create a VersionStorage from configuration."""
        return cls(config.path, config.format)

    @property
    def path(self) -> Path:
        """Return the store file path."""
        return self._path

    @property
    def format(self) -> str:
        """Return the serialization format."""
        return self._format

    @property
    def backup_dir(self) -> Path:
        """Return the backup directory."""
        return self._backup_dir

    # =========================================================================
    # Serialization
    # =========================================================================

    def _serialize(self, store: VersionStore) -> str:
        data = store.model_dump(mode="json")
        if self._format == "json":
            return json.dumps(data, indent=2) + "\n"
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)

    def _deserialize(self, text: str, source: Path) -> VersionStore:
        try:
            if self._format == "json":
                data: Any = json.loads(text)
            else:
                data = yaml.safe_load(text)
            return VersionStore.model_validate(data or {})
        except (ValueError, yaml.YAMLError, ValidationError) as e:
            raise PersistenceError(
                f"Failed to parse version store {source}: {e}",
                details={"path": str(source), "format": self._format},
            ) from e

    def _read_file(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(
                f"Failed to read version store {path}: {e}",
                details={"path": str(path)},
            ) from e

    def _save_unlocked(self, store: VersionStore, *, touch: bool = True) -> None:
        """Persist store and make it the current state. Caller holds the write lock."""
        if touch:
            store.last_updated = datetime.now(UTC)
        atomic_write_text(self._path, self._serialize(store))
        self._store = store
        logger.debug("Saved version store", extra={"path": str(self._path)})

    def _mutate(self, fn: Callable[[VersionStore], Any], *, touch: bool = True) -> Any:
        """Apply fn to a copy of the store and persist it."""
        with self._lock.write():
            store = self._store.model_copy(deep=True)
            result = fn(store)
            self._save_unlocked(store, touch=touch)
            return result

    # =========================================================================
    # Whole-store operations
    # =========================================================================

    def load(self) -> VersionStore:
        """
        Reload the store from disk.

        Returns:
            A copy of the loaded store.

        Raises:
            PersistenceError: If the file cannot be read or parsed.
        """
        with self._lock.write():
            self._store = self._deserialize(self._read_file(self._path), self._path)
            return self._store.model_copy(deep=True)

    def save(self, store: VersionStore) -> None:
        """
        Replace the whole store and persist it.

        Raises:
            PersistenceError: If writing fails.
        """
        with self._lock.write():
            self._save_unlocked(store.model_copy(deep=True))

    def get_store(self) -> VersionStore:
        """Return a copy of the whole store."""
        with self._lock.read():
            return self._store.model_copy(deep=True)

    # =========================================================================
    # Record operations
    # =========================================================================

    def get_version_info(self, name: str) -> VersionInfo:
        """
        Return a copy of the record for name.

        Raises:
            NotFoundError: If name is not tracked.
        """
        with self._lock.read():
            info = self._store.find(name)
            if info is None:
                raise NotFoundError(
                    f"Package not found: {name}", details={"name": name}
                )
            return info.model_copy(deep=True)

    def set_version_info(self, info: VersionInfo) -> None:
        """
        Insert or replace a record, routed to the map matching its kind.

        Raises:
            InvalidArgumentError: If the record kind is unknown.
            PersistenceError: If writing fails.
        """

        def apply(store: VersionStore) -> None:
            section = store.section(info.kind)
            store.remove(info.name)
            section[info.name] = info.model_copy(deep=True)

        self._mutate(apply)

    def update_version_info(
        self, name: str, fn: Callable[[VersionInfo], VersionInfo]
    ) -> VersionInfo:
        """
        Atomically read, transform and persist one record.

        Args:
            name: Record to update.
            fn: Receives a copy of the record and returns the new record.

        Returns:
            A copy of the stored result.

        Raises:
            NotFoundError: If name is not tracked.
            PersistenceError: If writing fails.
        """

        def apply(store: VersionStore) -> VersionInfo:
            current = store.find(name)
            if current is None:
                raise NotFoundError(
                    f"Package not found: {name}", details={"name": name}
                )
            updated = fn(current.model_copy(deep=True))
            section = store.section(updated.kind)
            store.remove(name)
            section[updated.name] = updated
            return updated.model_copy(deep=True)

        return self._mutate(apply)

    def delete_version_info(self, name: str) -> None:
        """
        Remove a record.

        Raises:
            NotFoundError: If name is not tracked.
        """

        def apply(store: VersionStore) -> None:
            if store.remove(name) is None:
                raise NotFoundError(
                    f"Package not found: {name}", details={"name": name}
                )

        self._mutate(apply)
        logger.info("Deleted version record", extra={"package": name})

    def list_versions(self) -> dict[str, VersionInfo]:
        """Return copies of every record keyed by name."""
        with self._lock.read():
            return {
                name: info.model_copy(deep=True)
                for name, info in self._store.all_versions().items()
            }

    def query(self, query: VersionQuery | None = None, **filters: Any) -> dict[str, VersionInfo]:
        """
        Return copies of the records matching a filter.

        Args:
            query: A VersionQuery. Keyword filters build one when omitted.
            **filters: VersionQuery fields (name, language, kind, outdated,
                insecure).
        """
        if query is None:
            query = VersionQuery(**filters)

        with self._lock.read():
            return {
                name: info.model_copy(deep=True)
                for name, info in self._store.all_versions().items()
                if query.matches(info)
            }

    # =========================================================================
    # Metadata
    # =========================================================================

    def get_last_updated(self) -> datetime:
        """Return the store's last_updated timestamp."""
        with self._lock.read():
            return self._store.last_updated

    def set_last_updated(self, timestamp: datetime) -> None:
        """Set and persist the store's last_updated timestamp."""

        def apply(store: VersionStore) -> None:
            store.last_updated = timestamp

        self._mutate(apply, touch=False)

    def get_update_policy(self) -> UpdatePolicy:
        """Return a copy of the stored update policy."""
        with self._lock.read():
            return self._store.update_policy.model_copy()

    def set_update_policy(self, policy: UpdatePolicy) -> None:
        """Replace and persist the update policy."""

        def apply(store: VersionStore) -> None:
            store.update_policy = policy.model_copy()

        self._mutate(apply)

    # =========================================================================
    # Backup and restore
    # =========================================================================

    def backup(self) -> Path:
        """
        Copy the current store file into the backup directory.

        Returns:
            Path of the created backup.

        Raises:
            PersistenceError: If the copy fails.
        """
        with self._lock.read():
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup_path = self._backup_dir / f"{BACKUP_PREFIX}{timestamp}.{self._format}"
            counter = 1
            while backup_path.exists():
                backup_path = (
                    self._backup_dir
                    / f"{BACKUP_PREFIX}{timestamp}_{counter}.{self._format}"
                )
                counter += 1

            try:
                self._backup_dir.mkdir(parents=True, exist_ok=True)
                shutil.copy2(self._path, backup_path)
            except OSError as e:
                raise PersistenceError(
                    f"Failed to create backup: {e}",
                    details={"source": str(self._path), "target": str(backup_path)},
                ) from e

        logger.info("Created version store backup", extra={"path": str(backup_path)})
        return backup_path

    def list_backups(self) -> list[Path]:
        """Return existing backups, oldest first."""
        if not self._backup_dir.exists():
            return []
        return sorted(self._backup_dir.glob(f"{BACKUP_PREFIX}*.{self._format}"))

    def restore(self, backup_path: Path | str) -> None:
        """
        Replace the live store with a backup and reload it.

        The backup is parsed before anything is overwritten, so an invalid
        backup leaves the live store intact.

        Raises:
            NotFoundError: If the backup does not exist.
            PersistenceError: If the backup is unreadable or writing fails.
        """
        backup_path = Path(backup_path)
        if not backup_path.exists():
            raise NotFoundError(
                f"Backup file does not exist: {backup_path}",
                details={"path": str(backup_path)},
            )

        content = self._read_file(backup_path)
        restored = self._deserialize(content, backup_path)

        with self._lock.write():
            atomic_write_text(self._path, content)
            self._store = restored

        logger.info("Restored version store", extra={"backup": str(backup_path)})
