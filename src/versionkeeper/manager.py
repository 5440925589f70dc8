"""
Version manager.

VersionManager combines the VersionStorage, a VersionCache and the active
registries. It detects version drift between the store and the upstream
registries, produces update reports and applies single-package updates
atomically against the store.

Registry lookups go through the cache first (key "<registry>:<package>"),
so repeated scans within the cache TTL do not hit the network for versions.
Unavailable registries and failing packages are skipped, never fatal.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from versionkeeper.cache import MemoryCache, VersionCache, cache_key
from versionkeeper.errors import (
    InvalidArgumentError,
    InvalidVersionError,
    VersionKeeperError,
)
from versionkeeper.logging import get_logger
from versionkeeper.models import SecurityIssue, VersionInfo
from versionkeeper.registry import create_registries
from versionkeeper.registry.base import VersionRegistry
from versionkeeper.semver import SemVer, compare_versions
from versionkeeper.storage import VersionStorage

if TYPE_CHECKING:
    from versionkeeper.config import AppConfig

logger = get_logger(__name__)


# =============================================================================
# Result Models
# =============================================================================


class UpdateResult(BaseModel):
    """Outcome of VersionManager.update_version_info()."""

    name: str
    previous_version: str
    new_version: str
    is_breaking: bool = False
    success: bool = True
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Recommendation(BaseModel):
    """A suggested update for one tracked package."""

    name: str
    current_version: str
    recommended_version: str
    reason: str
    priority: str = Field(default="low", description="high, medium or low")
    is_breaking: bool = False
    is_security: bool = False


class VersionReport(BaseModel):
    """Summary produced by VersionManager.check_latest_versions()."""

    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    total_packages: int = 0
    outdated_packages: int = 0
    insecure_packages: int = 0
    recommendations: list[Recommendation] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)


@dataclass
class _Observation:
    """One successful registry lookup for a stored record."""

    registry: VersionRegistry
    stored: VersionInfo
    latest: VersionInfo
    comparison: int


# =============================================================================
# Helpers
# =============================================================================


def merge_security_issues(*groups: Iterable[SecurityIssue]) -> list[SecurityIssue]:
    """Concatenate issue lists, keeping the first occurrence of each id."""
    seen: set[str] = set()
    merged: list[SecurityIssue] = []
    for group in groups:
        for issue in group:
            if issue.id not in seen:
                seen.add(issue.id)
                merged.append(issue)
    return merged


def remaining_security_issues(
    issues: Iterable[SecurityIssue], version: str
) -> list[SecurityIssue]:
    """
    Drop the issues that version fixes.

    An issue is fixed when its fixed_in version parses and version is at
    least that high. Issues without a usable fixed_in are kept.
    """
    try:
        installed = SemVer.parse(version)
    except InvalidVersionError:
        return list(issues)

    remaining: list[SecurityIssue] = []
    for issue in issues:
        try:
            if issue.fixed_in and installed >= SemVer.parse(issue.fixed_in):
                continue
        except InvalidVersionError:
            pass
        remaining.append(issue)
    return remaining


def applied_version_info(candidate: VersionInfo, now: datetime | None = None) -> VersionInfo:
    """
    Build the record stored after applying an update candidate.

    The candidate's latest version becomes current and its current version
    becomes previous. Security issues fixed by the new version are dropped.
    """
    now = now or datetime.now(UTC)
    return candidate.model_copy(
        update={
            "previous_version": candidate.current_version,
            "current_version": candidate.latest_version,
            "security_issues": remaining_security_issues(
                candidate.security_issues, candidate.latest_version
            ),
            "updated_at": now,
        },
        deep=True,
    )


# =============================================================================
# Manager
# =============================================================================


class VersionManager:
    """
    Facade over storage, cache and registries.

    Args:
        storage: Durable version store.
        cache: Lookup cache; an in-memory cache is used if omitted.
        registries: Registry name to registry instance.
    """

    def __init__(
        self,
        storage: VersionStorage,
        cache: VersionCache | None = None,
        registries: Mapping[str, VersionRegistry] | None = None,
    ) -> None:
        self._storage = storage
        self._cache = cache if cache is not None else MemoryCache()
        self._registries: dict[str, VersionRegistry] = dict(registries or {})
        self._last_skipped: dict[str, str] = {}

    @classmethod
    def from_config(cls, config: AppConfig) -> VersionManager:
        """
        Create a VersionManager with storage, cache and registries built
        from configuration.
        """
        return cls(
            storage=VersionStorage.from_config(config.storage),
            cache=VersionCache.from_config(config.cache),
            registries=create_registries(config.registries),
        )

    @property
    def storage(self) -> VersionStorage:
        """Return the version storage."""
        return self._storage

    @property
    def cache(self) -> VersionCache:
        """Return the lookup cache."""
        return self._cache

    @property
    def registries(self) -> dict[str, VersionRegistry]:
        """Return the active registries by name."""
        return dict(self._registries)

    @property
    def last_skipped(self) -> dict[str, str]:
        """Packages skipped by the last scan, with the reason."""
        return dict(self._last_skipped)

    def add_registry(self, name: str, registry: VersionRegistry) -> None:
        """Register or replace a registry."""
        self._registries[name] = registry

    @staticmethod
    def compare_versions(v1: str, v2: str) -> int:
        """
        Compare two version strings.

        Returns:
            -1 if v1 < v2, 0 if equal, 1 if v1 > v2.

        Raises:
            InvalidVersionError: If either version is invalid.
        """
        return compare_versions(v1, v2)

    async def get_latest_version(self, registry_name: str, package: str) -> VersionInfo:
        """
        Look up the latest version of a package, consulting the cache first.

        Raises:
            InvalidArgumentError: If registry_name is not registered.
            RegistryError: If the registry lookup fails.
        """
        registry = self._registries.get(registry_name)
        if registry is None:
            raise InvalidArgumentError(
                f"Unknown registry: {registry_name}",
                details={"registry": registry_name, "valid": sorted(self._registries)},
            )
        key = cache_key(registry_name, package)

        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for {key}", extra={"version": cached})
            issues = await registry.check_security(package, cached)
            return registry.build_version_info(package, cached, issues)

        info = await registry.get_latest_version(package)
        self._cache.set(key, info.latest_version)
        return info

    async def _scan(self) -> list[_Observation]:
        """Query every registry for every tracked package it supports."""
        stored_versions = self._storage.list_versions()
        skipped: dict[str, str] = {}
        observations: list[_Observation] = []

        for registry_name, registry in self._registries.items():
            if not await registry.is_available():
                logger.warning(
                    f"Registry {registry_name} unavailable, skipping",
                    extra={"registry": registry_name},
                )
                for package in registry.get_supported_packages():
                    if package in stored_versions:
                        skipped[package] = f"registry {registry_name} unavailable"
                continue

            for package in registry.get_supported_packages():
                stored = stored_versions.get(package)
                if stored is None:
                    continue
                if not stored.current_version:
                    skipped[package] = "no current version recorded"
                    continue

                try:
                    latest = await self.get_latest_version(registry_name, package)
                    comparison = compare_versions(
                        latest.latest_version, stored.current_version
                    )
                except VersionKeeperError as e:
                    skipped[package] = e.message
                    logger.warning(
                        f"Skipping {package}: {e.message}",
                        extra={
                            "registry": registry_name,
                            "package": package,
                            "error_code": e.error_code,
                        },
                    )
                    continue

                observations.append(
                    _Observation(
                        registry=registry,
                        stored=stored,
                        latest=latest,
                        comparison=comparison,
                    )
                )

        self._last_skipped = skipped
        return observations

    async def _candidate(self, observation: _Observation) -> VersionInfo:
        """Build the update candidate for a newer upstream version."""
        stored = observation.stored
        current_issues = await observation.registry.check_security(
            stored.name, stored.current_version
        )
        return stored.model_copy(
            update={
                "latest_version": observation.latest.latest_version,
                "security_issues": merge_security_issues(
                    stored.security_issues, current_issues
                ),
                "update_source": observation.latest.update_source,
                "registry_url": stored.registry_url or observation.latest.registry_url,
                "language": stored.language or observation.latest.language,
                "checked_at": observation.latest.checked_at,
            },
            deep=True,
        )

    async def detect_version_updates(self) -> dict[str, VersionInfo]:
        """
        Find tracked packages with a strictly newer upstream version.

        Each candidate carries the stored record's kind and current version,
        the upstream latest version, and the security issues known for the
        currently installed version (those the update would remediate).

        Returns:
            Candidates keyed by package name.
        """
        updates: dict[str, VersionInfo] = {}
        for observation in await self._scan():
            if observation.comparison <= 0:
                continue
            candidate = await self._candidate(observation)
            updates[candidate.name] = candidate
            logger.info(
                f"Update available: {candidate.name} "
                f"{candidate.current_version} -> {candidate.latest_version}",
                extra={
                    "package": candidate.name,
                    "registry": candidate.update_source,
                    "secure": candidate.is_secure,
                },
            )
        return updates

    async def check_latest_versions(self) -> VersionReport:
        """
        Refresh the latest known version of every tracked package.

        Stored records get their latest_version and checked_at updated.
        The report recommends an update for every package behind upstream.
        """
        report = VersionReport()

        for observation in await self._scan():
            report.total_packages += 1
            latest_version = observation.latest.latest_version
            checked_at = observation.latest.checked_at

            def refresh(info: VersionInfo) -> VersionInfo:
                return info.model_copy(
                    update={"latest_version": latest_version, "checked_at": checked_at}
                )

            self._storage.update_version_info(observation.stored.name, refresh)

            if observation.comparison <= 0:
                continue

            candidate = await self._candidate(observation)
            report.outdated_packages += 1
            if not candidate.is_secure:
                report.insecure_packages += 1
            report.recommendations.append(self._recommend(candidate))

        report.skipped = self.last_skipped
        logger.info(
            "Version check complete",
            extra={
                "total": report.total_packages,
                "outdated": report.outdated_packages,
                "insecure": report.insecure_packages,
            },
        )
        return report

    @staticmethod
    def _recommend(candidate: VersionInfo) -> Recommendation:
        breaking = (
            SemVer.parse(candidate.latest_version).major
            > SemVer.parse(candidate.current_version).major
        )
        if not candidate.is_secure:
            reason = f"{len(candidate.security_issues)} known vulnerabilities in current version"
            priority = "high"
        elif breaking:
            reason = "new major version available"
            priority = "medium"
        else:
            reason = "newer version available"
            priority = "low"

        return Recommendation(
            name=candidate.name,
            current_version=candidate.current_version,
            recommended_version=candidate.latest_version,
            reason=reason,
            priority=priority,
            is_breaking=breaking,
            is_security=not candidate.is_secure,
        )

    def update_version_info(
        self, name: str, new_version: str, is_breaking: bool = False
    ) -> UpdateResult:
        """
        Move a tracked package to a new current version.

        The previous current version is kept in previous_version. The
        read-modify-write runs under the storage write lock, so concurrent
        calls for different packages never lose each other's changes.

        Raises:
            InvalidVersionError: If new_version is not a valid version.
            NotFoundError: If the package is not tracked.
            PersistenceError: If the store cannot be written.
        """
        SemVer.parse(new_version)
        now = datetime.now(UTC)
        previous: list[str] = []

        def apply(info: VersionInfo) -> VersionInfo:
            previous.append(info.current_version)
            metadata = dict(info.metadata)
            metadata["last_update_breaking"] = "true" if is_breaking else "false"
            return info.model_copy(
                update={
                    "previous_version": info.current_version,
                    "current_version": new_version,
                    "security_issues": remaining_security_issues(
                        info.security_issues, new_version
                    ),
                    "updated_at": now,
                    "metadata": metadata,
                }
            )

        self._storage.update_version_info(name, apply)

        logger.info(
            f"Updated {name} {previous[0]} -> {new_version}",
            extra={"package": name, "breaking": is_breaking},
        )
        return UpdateResult(
            name=name,
            previous_version=previous[0],
            new_version=new_version,
            is_breaking=is_breaking,
            updated_at=now,
        )

    async def aclose(self) -> None:
        """Close registries and the cache."""
        for registry in self._registries.values():
            await registry.aclose()
        self._cache.close()
