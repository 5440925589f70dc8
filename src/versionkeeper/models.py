"""
Data model of the version store.

VersionInfo records live in exactly one of the three VersionStore maps
(languages, frameworks, packages), chosen by their kind. These models are
owned by VersionStorage; everything else receives copies.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field, computed_field, model_validator

from versionkeeper.errors import InvalidArgumentError


class VersionKind(str, Enum):
    """What a tracked dependency is; selects its VersionStore map."""

    LANGUAGE = "language"
    FRAMEWORK = "framework"
    PACKAGE = "package"


class SecurityIssue(BaseModel):
    """
    A known vulnerability affecting a package version.

    Attributes:
        id: Advisory identifier (e.g. GO-2023-1234, GHSA-...).
        severity: One of critical, high, medium, low.
        summary: Short description.
        fixed_in: First version containing the fix, if known.
        url: Reference URL, if known.
        published_at: When the advisory was published, if known.
    """

    id: str = Field(..., description="Advisory identifier")
    severity: str = Field(default="medium", description="critical/high/medium/low")
    summary: str = Field(default="", description="Short description")
    fixed_in: str = Field(default="", description="First fixed version")
    url: str = Field(default="", description="Reference URL")
    published_at: datetime | None = Field(default=None, description="Advisory publication time")


class VersionInfo(BaseModel):
    """
    Tracked version record of one dependency.

    is_secure is derived from security_issues so the two can never disagree.
    """

    name: str = Field(..., description="Package, framework or language name")
    language: str = Field(default="", description="Ecosystem language")
    kind: VersionKind = Field(default=VersionKind.PACKAGE, description="Record kind")
    current_version: str = Field(default="", description="Version in use")
    latest_version: str = Field(default="", description="Newest known version")
    previous_version: str = Field(default="", description="Version before the last update")
    security_issues: list[SecurityIssue] = Field(
        default_factory=list, description="Known vulnerabilities"
    )
    update_source: str = Field(default="", description="Registry that reported the version")
    registry_url: str = Field(default="", description="Registry page of the package")
    checked_at: datetime | None = Field(default=None, description="Last registry check")
    updated_at: datetime | None = Field(default=None, description="Last version change")
    metadata: dict[str, str] = Field(default_factory=dict, description="Free-form metadata")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_secure(self) -> bool:
        """True when no security issues are recorded."""
        return not self.security_issues

    @property
    def is_outdated(self) -> bool:
        """True when a latest version is known and differs from the current one."""
        return bool(self.latest_version) and self.current_version != self.latest_version


def _default_max_age() -> timedelta:
    return timedelta(hours=24)


class UpdatePolicy(BaseModel):
    """Update policy persisted alongside the tracked versions."""

    auto_update: bool = Field(default=True)
    security_priority: bool = Field(default=True)
    breaking_change_approval: bool = Field(default=True)
    update_schedule: str = Field(default="daily")
    max_age: timedelta = Field(default_factory=_default_max_age)


class VersionStore(BaseModel):
    """Top-level persisted aggregate."""

    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: str = Field(default="1.0.0", description="Store format version")
    languages: dict[str, VersionInfo] = Field(default_factory=dict)
    frameworks: dict[str, VersionInfo] = Field(default_factory=dict)
    packages: dict[str, VersionInfo] = Field(default_factory=dict)
    update_policy: UpdatePolicy = Field(default_factory=UpdatePolicy)

    @model_validator(mode="after")
    def check_unique_names(self) -> VersionStore:
        """Reject a name recorded in more than one map."""
        seen: set[str] = set()
        for section in (self.languages, self.frameworks, self.packages):
            duplicates = seen.intersection(section)
            if duplicates:
                raise ValueError(
                    f"Names recorded under more than one kind: {sorted(duplicates)}"
                )
            seen.update(section)
        return self

    def section(self, kind: VersionKind | str) -> dict[str, VersionInfo]:
        """
        Return the map holding records of the given kind.

        Raises:
            InvalidArgumentError: If kind is not a known VersionKind.
        """
        try:
            kind = VersionKind(kind)
        except ValueError as e:
            raise InvalidArgumentError(
                f"Unknown version kind: {kind}",
                details={"kind": str(kind), "valid": [k.value for k in VersionKind]},
            ) from e

        if kind is VersionKind.LANGUAGE:
            return self.languages
        if kind is VersionKind.FRAMEWORK:
            return self.frameworks
        return self.packages

    def find(self, name: str) -> VersionInfo | None:
        """Find a record by name in any section."""
        for section in (self.languages, self.frameworks, self.packages):
            if name in section:
                return section[name]
        return None

    def remove(self, name: str) -> VersionInfo | None:
        """Remove a record by name from whichever section holds it."""
        for section in (self.languages, self.frameworks, self.packages):
            if name in section:
                return section.pop(name)
        return None

    def all_versions(self) -> dict[str, VersionInfo]:
        """Return every record keyed by name."""
        return {**self.languages, **self.frameworks, **self.packages}


class VersionQuery(BaseModel):
    """
    Filter for VersionStorage.query(). Unset fields match everything.

    Attributes:
        name: Case-insensitive substring of the record name.
        language: Exact language.
        kind: Exact kind.
        outdated: Match records whose current version differs from latest.
        insecure: Match records with known security issues.
    """

    name: str | None = None
    language: str | None = None
    kind: VersionKind | None = None
    outdated: bool | None = None
    insecure: bool | None = None

    def matches(self, info: VersionInfo) -> bool:
        """Check whether a record satisfies every set predicate."""
        if self.name is not None and self.name.lower() not in info.name.lower():
            return False
        if self.language is not None and info.language != self.language:
            return False
        if self.kind is not None and info.kind != self.kind:
            return False
        if self.outdated is not None and info.is_outdated != self.outdated:
            return False
        if self.insecure is not None and (not info.is_secure) != self.insecure:
            return False
        return True
