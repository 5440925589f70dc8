"""
Rule-based compatibility checking between tracked packages.

A CompatibilityRule states, for one package version (or version range), which
versions of other packages it requires and which it is known to break with.
The CompatibilityMatrix evaluates a flat name -> version map against every
registered rule.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from versionkeeper.errors import InvalidVersionError
from versionkeeper.logging import get_logger
from versionkeeper.semver import SemVer

logger = get_logger(__name__)


class IssueType(str, Enum):
    """Categories of compatibility issues."""

    INVALID_VERSION = "invalid_version"
    CONSTRAINT_ERROR = "constraint_error"
    INCOMPATIBLE_VERSION = "incompatible_version"
    KNOWN_INCOMPATIBLE = "known_incompatible"


class CompatibilityRule(BaseModel):
    """
    Compatibility constraints attached to one package version line.

    Attributes:
        package: Package the rule applies to.
        version: Exact version ("15.0.0") or range ("^15.0.0") the rule covers.
        compatible: Required constraints on other packages.
        incompatible: Constraints on other packages known to conflict.
        notes: Free text surfaced as a non-blocking warning.
    """

    model_config = ConfigDict(frozen=True)

    package: str = Field(..., description="Package the rule applies to")
    version: str = Field(..., description="Version or version range covered")
    compatible: dict[str, str] = Field(
        default_factory=dict, description="Required constraints on other packages"
    )
    incompatible: dict[str, str] = Field(
        default_factory=dict, description="Conflicting constraints on other packages"
    )
    notes: str = Field(default="", description="Informational notes")

    def applies_to(self, version: SemVer) -> bool:
        """Whether this rule covers the given package version."""
        try:
            return version.is_compatible(self.version)
        except InvalidVersionError:
            logger.debug(
                f"Skipping rule with invalid version {self.version!r}",
                extra={"package": self.package},
            )
            return False


class CompatibilityIssue(BaseModel):
    """
    A blocking compatibility problem.

    package and version name the package found at fault. required_by names
    the package whose rule declared the violated constraint, and is empty for
    invalid_version issues.
    """

    issue_type: IssueType
    package: str = Field(..., description="Package whose version is at fault")
    version: str = Field(..., description="Version found for the package")
    constraint: str = Field(default="", description="Constraint that was violated")
    required_by: str = Field(default="", description="Package that declared the rule")
    message: str = Field(default="")


class CompatibilityWarning(BaseModel):
    """A non-blocking note attached to a matched rule."""

    package: str
    version: str
    message: str


class CompatibilityResult(BaseModel):
    """Outcome of a compatibility check."""

    compatible: bool = True
    issues: list[CompatibilityIssue] = Field(default_factory=list)
    warnings: list[CompatibilityWarning] = Field(default_factory=list)

    def add_issue(self, issue: CompatibilityIssue) -> None:
        """Record a blocking issue and mark the result incompatible."""
        self.issues.append(issue)
        self.compatible = False


class CompatibilityMatrix:
    """
    Registry of compatibility rules keyed by package name.

    Several rules may exist per package, typically one per major version line.
    Rules are immutable once added.
    """

    def __init__(self, rules: Sequence[CompatibilityRule] | None = None) -> None:
        self._rules: dict[str, list[CompatibilityRule]] = {}
        for rule in rules or ():
            self.add_rule(rule)

    @classmethod
    def default(cls) -> CompatibilityMatrix:
        """Build the matrix with the built-in rule table."""
        return cls(DEFAULT_RULES)

    def add_rule(self, rule: CompatibilityRule) -> None:
        """Register a rule."""
        self._rules.setdefault(rule.package, []).append(rule)

    def get_rules(self, package: str) -> list[CompatibilityRule]:
        """Return the rules registered for a package."""
        return list(self._rules.get(package, []))

    def check_compatibility(self, packages: Mapping[str, str]) -> CompatibilityResult:
        """
        Check a set of package versions against the registered rules.

        Args:
            packages: Mapping of package name to version.

        Returns:
            CompatibilityResult listing blocking issues and rule notes.
        """
        result = CompatibilityResult()

        for name, version in packages.items():
            rules = self._rules.get(name)
            if not rules:
                continue

            try:
                parsed = SemVer.parse(version)
            except InvalidVersionError as e:
                result.add_issue(
                    CompatibilityIssue(
                        issue_type=IssueType.INVALID_VERSION,
                        package=name,
                        version=version,
                        message=f"Invalid version format: {e.message}",
                    )
                )
                continue

            for rule in rules:
                if not rule.applies_to(parsed):
                    continue
                self._check_rule(rule, name, version, packages, result)

        return result

    def _check_rule(
        self,
        rule: CompatibilityRule,
        name: str,
        version: str,
        packages: Mapping[str, str],
        result: CompatibilityResult,
    ) -> None:
        for dependency, constraint in rule.compatible.items():
            if dependency not in packages:
                continue
            other = packages[dependency]
            try:
                satisfied = SemVer.parse(other).is_compatible(constraint)
            except InvalidVersionError as e:
                result.add_issue(
                    CompatibilityIssue(
                        issue_type=IssueType.CONSTRAINT_ERROR,
                        package=dependency,
                        version=other,
                        constraint=constraint,
                        required_by=name,
                        message=f"Error checking constraint {constraint}: {e.message}",
                    )
                )
                continue
            if not satisfied:
                result.add_issue(
                    CompatibilityIssue(
                        issue_type=IssueType.INCOMPATIBLE_VERSION,
                        package=dependency,
                        version=other,
                        constraint=constraint,
                        required_by=name,
                        message=(
                            f"{name}@{version} is not compatible with "
                            f"{dependency}@{other} (requires {constraint})"
                        ),
                    )
                )

        for dependency, constraint in rule.incompatible.items():
            if dependency not in packages:
                continue
            other = packages[dependency]
            try:
                matched = SemVer.parse(other).is_compatible(constraint)
            except InvalidVersionError as e:
                result.add_issue(
                    CompatibilityIssue(
                        issue_type=IssueType.CONSTRAINT_ERROR,
                        package=dependency,
                        version=other,
                        constraint=constraint,
                        required_by=name,
                        message=(
                            f"Error checking incompatibility constraint "
                            f"{constraint}: {e.message}"
                        ),
                    )
                )
                continue
            if matched:
                result.add_issue(
                    CompatibilityIssue(
                        issue_type=IssueType.KNOWN_INCOMPATIBLE,
                        package=dependency,
                        version=other,
                        constraint=constraint,
                        required_by=name,
                        message=(
                            f"{name}@{version} is known to be incompatible "
                            f"with {dependency}@{other}"
                        ),
                    )
                )

        if rule.notes:
            result.warnings.append(
                CompatibilityWarning(package=name, version=version, message=rule.notes)
            )

    def suggest_compatible_versions(
        self,
        packages: Mapping[str, str],
        available_versions: Mapping[str, Sequence[str]],
    ) -> dict[str, str]:
        """
        Propose substitutions that satisfy violated constraints.

        For every incompatible_version issue, the first candidate in
        available_versions[package] that satisfies the constraint replaces
        the current version. This is a single pass: conflicts introduced by
        a substitution are not re-checked.

        Args:
            packages: Current package versions.
            available_versions: Candidate versions per package, in preference
                order.

        Returns:
            A copy of packages with suggested substitutions applied.
        """
        suggestions = dict(packages)
        result = self.check_compatibility(suggestions)
        if result.compatible:
            return suggestions

        for issue in result.issues:
            if issue.issue_type != IssueType.INCOMPATIBLE_VERSION or not issue.constraint:
                continue
            for candidate in available_versions.get(issue.package, ()):
                try:
                    if SemVer.parse(candidate).is_compatible(issue.constraint):
                        suggestions[issue.package] = candidate
                        break
                except InvalidVersionError:
                    continue

        return suggestions


# =============================================================================
# Built-in rule table
# =============================================================================

DEFAULT_RULES: tuple[CompatibilityRule, ...] = (
    CompatibilityRule(
        package="next",
        version="^15.0.0",
        compatible={"react": "^18.0.0", "react-dom": "^18.0.0"},
        notes="Next.js 15 requires React 18 or later",
    ),
    CompatibilityRule(
        package="next",
        version="^14.0.0",
        compatible={"react": "^18.0.0", "react-dom": "^18.0.0"},
        notes="Next.js 14 requires React 18 or later",
    ),
    CompatibilityRule(
        package="typescript",
        version="^5.0.0",
        compatible={"@types/node": "^20.0.0", "@types/react": "^18.0.0"},
    ),
    CompatibilityRule(
        package="tailwindcss",
        version="^3.4.0",
        compatible={"autoprefixer": "^10.0.0", "postcss": "^8.0.0"},
    ),
    CompatibilityRule(
        package="github.com/gin-gonic/gin",
        version="^1.9.0",
        compatible={"go": ">=1.19.0"},
        notes="Gin v1.9+ requires Go 1.19 or later",
    ),
    CompatibilityRule(
        package="gorm.io/gorm",
        version="^1.25.0",
        compatible={"go": ">=1.18.0"},
    ),
    CompatibilityRule(
        package="kotlin",
        version="^2.0.0",
        compatible={"android-gradle-plugin": "^8.0.0"},
        notes="Kotlin 2.0 requires Android Gradle Plugin 8.0+",
    ),
)


def validate_package_set(packages: Mapping[str, str]) -> CompatibilityResult:
    """Check a package set against the built-in rule table."""
    return CompatibilityMatrix.default().check_compatibility(packages)


def suggest_compatible_versions(
    packages: Mapping[str, str],
    available_versions: Mapping[str, Sequence[str]],
) -> dict[str, str]:
    """Suggest substitutions using the built-in rule table."""
    return CompatibilityMatrix.default().suggest_compatible_versions(
        packages, available_versions
    )
