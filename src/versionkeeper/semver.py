"""
Semantic version parsing, ordering and constraint matching.

Versions follow MAJOR.MINOR.PATCH[-PRERELEASE][+BUILD] with an optional
leading "v" (as used by Go modules and git tags). Parsing is strict: "1.2"
and "1.2.3.4" are rejected with InvalidVersionError.

Supported constraints:
- ^X.Y.Z   same major, at least X.Y.Z
- ~X.Y.Z   same major and minor, at least X.Y.Z
- >=, <=, >, <  ordinary comparisons
- X.Y.Z, =X.Y.Z, ==X.Y.Z  exact match (build metadata ignored)
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from functools import total_ordering

from versionkeeper.errors import InvalidArgumentError, InvalidVersionError

# Accepts: 1.0.0, v1.2.3, 2.0.0-beta.1, 1.0.0-alpha+build.123
SEMVER_PATTERN = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)"
    r"\.(?P<minor>0|[1-9]\d*)"
    r"\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<build>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

CONSTRAINT_PATTERN = re.compile(r"^\s*(?P<op>\^|~|>=|<=|>|<|==|=)?\s*(?P<version>\S+)\s*$")


def _compare_identifiers(a: str, b: str) -> int:
    """Compare two prerelease identifiers."""
    a_numeric = a.isdigit()
    b_numeric = b.isdigit()

    if a_numeric and b_numeric:
        return (int(a) > int(b)) - (int(a) < int(b))
    # Numeric identifiers always have lower precedence than alphanumeric ones
    if a_numeric:
        return -1
    if b_numeric:
        return 1
    return (a > b) - (a < b)


def _compare_prerelease(a: tuple[str, ...], b: tuple[str, ...]) -> int:
    """Compare two prerelease identifier sequences."""
    if not a and not b:
        return 0
    # A release ranks above any prerelease of the same core version
    if not a:
        return 1
    if not b:
        return -1

    for left, right in zip(a, b):
        result = _compare_identifiers(left, right)
        if result != 0:
            return result

    return (len(a) > len(b)) - (len(a) < len(b))


@total_ordering
@dataclass(frozen=True, eq=False)
class SemVer:
    """
    An immutable semantic version.

    Equality and ordering follow semantic version precedence, so build
    metadata never affects comparisons.

    Attributes:
        major: Major version number.
        minor: Minor version number.
        patch: Patch version number.
        prerelease: Dot-separated prerelease identifiers.
        build: Build metadata, empty when absent.
        original: The text the version was parsed from.
    """

    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()
    build: str = ""
    original: str = ""

    @classmethod
    def parse(cls, version: str) -> SemVer:
        """
        Parse a semantic version string.

        Raises:
            InvalidVersionError: If the string is not a valid semantic version.
        """
        if not isinstance(version, str) or not version.strip():
            raise InvalidVersionError(
                "Version string cannot be empty",
                details={"version": version},
            )

        match = SEMVER_PATTERN.match(version.strip())
        if not match:
            raise InvalidVersionError(
                f"Invalid semantic version: {version}",
                details={
                    "version": version,
                    "format": "[v]MAJOR.MINOR.PATCH[-PRERELEASE][+BUILD]",
                },
            )

        prerelease = match.group("prerelease")
        return cls(
            major=int(match.group("major")),
            minor=int(match.group("minor")),
            patch=int(match.group("patch")),
            prerelease=tuple(prerelease.split(".")) if prerelease else (),
            build=match.group("build") or "",
            original=version,
        )

    @property
    def is_prerelease(self) -> bool:
        """Whether this version carries prerelease identifiers."""
        return bool(self.prerelease)

    def compare(self, other: SemVer) -> int:
        """
        Compare with another version.

        Returns:
            -1 if self < other, 0 if equal in precedence, 1 if self > other.
        """
        for left, right in (
            (self.major, other.major),
            (self.minor, other.minor),
            (self.patch, other.patch),
        ):
            if left != right:
                return 1 if left > right else -1

        return _compare_prerelease(self.prerelease, other.prerelease)

    def is_compatible(self, constraint: str) -> bool:
        """
        Check whether this version satisfies a constraint.

        Raises:
            InvalidVersionError: If the constraint is malformed.
        """
        operator, target = parse_constraint(constraint)
        result = self.compare(target)

        if operator == "^":
            return self.major == target.major and result >= 0
        if operator == "~":
            return (
                self.major == target.major
                and self.minor == target.minor
                and result >= 0
            )
        if operator == ">=":
            return result >= 0
        if operator == "<=":
            return result <= 0
        if operator == ">":
            return result > 0
        if operator == "<":
            return result < 0
        return result == 0

    def __str__(self) -> str:
        version = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            version += "-" + ".".join(self.prerelease)
        if self.build:
            version += "+" + self.build
        return version

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other: SemVer) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self.compare(other) < 0

    def __hash__(self) -> int:
        return hash((self.major, self.minor, self.patch, self.prerelease))


def parse_semver(version: str) -> SemVer:
    """Parse a semantic version string. See SemVer.parse."""
    return SemVer.parse(version)


def parse_constraint(constraint: str) -> tuple[str, SemVer]:
    """
    Split a constraint into its operator and target version.

    Returns:
        Tuple of (operator, version). The operator is "=" for exact matches.

    Raises:
        InvalidVersionError: If the constraint or its version is malformed.
    """
    if not isinstance(constraint, str):
        raise InvalidVersionError(
            "Constraint must be a string",
            details={"constraint": constraint},
        )

    match = CONSTRAINT_PATTERN.match(constraint)
    if not match:
        raise InvalidVersionError(
            f"Invalid version constraint: {constraint!r}",
            details={"constraint": constraint},
        )

    operator = match.group("op") or "="
    if operator == "==":
        operator = "="

    try:
        target = SemVer.parse(match.group("version"))
    except InvalidVersionError as e:
        raise InvalidVersionError(
            f"Invalid version in constraint {constraint!r}",
            details={"constraint": constraint, "version": match.group("version")},
        ) from e

    return operator, target


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two semantic version strings.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2

    Raises:
        InvalidVersionError: If either version is invalid.
    """
    return SemVer.parse(v1).compare(SemVer.parse(v2))


def is_compatible(version: str, constraint: str) -> bool:
    """
    Check whether a version string satisfies a constraint.

    Raises:
        InvalidVersionError: If the version or the constraint is malformed.
    """
    return SemVer.parse(version).is_compatible(constraint)


def is_breaking_change(current: str, latest: str) -> bool:
    """Whether moving from current to latest crosses a major version."""
    return SemVer.parse(latest).major > SemVer.parse(current).major


def sort_versions(versions: Iterable[str]) -> list[str]:
    """
    Sort version strings in ascending precedence order.

    The original strings are returned. Every input must parse; nothing is
    silently skipped.

    Raises:
        InvalidVersionError: If any version is invalid.
    """
    parsed = [(SemVer.parse(v), v) for v in versions]
    parsed.sort(key=lambda pair: pair[0])
    return [original for _, original in parsed]


def get_latest_version(versions: Iterable[str]) -> str:
    """
    Return the highest version from a collection of version strings.

    Raises:
        InvalidArgumentError: If the collection is empty.
        InvalidVersionError: If any version is invalid.
    """
    ordered = sort_versions(versions)
    if not ordered:
        raise InvalidArgumentError("No versions provided")
    return ordered[-1]
