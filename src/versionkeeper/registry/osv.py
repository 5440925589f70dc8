"""
OSV vulnerability database client.

Queries an OSV-style endpoint with {package: {name, ecosystem}, version} and
converts the returned advisories into SecurityIssue records. Lookups are
best-effort: any transport failure, non-200 response or malformed body yields
an empty list and an informational log line.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx

from versionkeeper.logging import get_logger
from versionkeeper.models import SecurityIssue

logger = get_logger(__name__)

DEFAULT_OSV_URL = "https://api.osv.dev/v1/query"
DEFAULT_VULNERABILITY_TIMEOUT_SECONDS = 10.0

# GitHub advisories label medium severity "moderate"
_SEVERITY_LABELS = {
    "critical": "critical",
    "high": "high",
    "moderate": "medium",
    "medium": "medium",
    "low": "low",
}


def _dicts(value: Any) -> list[dict[str, Any]]:
    """Return the dict items of a JSON list, ignoring anything else."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def severity_from_score(score: float) -> str:
    """Map a CVSS base score to a severity label."""
    if score >= 9.0:
        return "critical"
    if score >= 7.0:
        return "high"
    if score >= 4.0:
        return "medium"
    return "low"


def determine_severity(vuln: dict[str, Any]) -> str:
    """
    Determine the severity of an OSV advisory.

    Numeric CVSS scores are mapped directly. Otherwise the database-specific
    severity label is used when present, and "medium" when nothing is known.
    """
    for entry in _dicts(vuln.get("severity")):
        if not str(entry.get("type", "")).startswith("CVSS"):
            continue
        try:
            return severity_from_score(float(entry.get("score", "")))
        except (TypeError, ValueError):
            continue

    database_specific = vuln.get("database_specific")
    if not isinstance(database_specific, dict):
        database_specific = {}
    label = str(database_specific.get("severity", "")).lower()
    return _SEVERITY_LABELS.get(label, "medium")


def extract_fixed_version(vuln: dict[str, Any]) -> str:
    """Return the first "fixed" event across affected ranges."""
    for affected in _dicts(vuln.get("affected")):
        for version_range in _dicts(affected.get("ranges")):
            for event in _dicts(version_range.get("events")):
                if event.get("fixed"):
                    return str(event["fixed"])
    return ""


def extract_reference_url(vuln: dict[str, Any]) -> str:
    """Return the first reference URL."""
    for reference in _dicts(vuln.get("references")):
        if reference.get("url"):
            return str(reference["url"])
    return ""


def _parse_published(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def convert_vulnerabilities(data: dict[str, Any]) -> list[SecurityIssue]:
    """Convert an OSV query response into SecurityIssue records."""
    issues: list[SecurityIssue] = []
    for vuln in _dicts(data.get("vulns")):
        if not vuln.get("id"):
            continue
        issues.append(
            SecurityIssue(
                id=str(vuln["id"]),
                severity=determine_severity(vuln),
                summary=str(vuln.get("summary") or vuln.get("details") or ""),
                fixed_in=extract_fixed_version(vuln),
                url=extract_reference_url(vuln),
                published_at=_parse_published(vuln.get("published")),
            )
        )
    return issues


class OSVClient:
    """
    Client for an OSV-style vulnerability query endpoint.

    Args:
        client: Optional pre-built HTTP client; created and owned otherwise.
        url: Query endpoint.
        timeout: Request timeout in seconds for the owned client.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        url: str = DEFAULT_OSV_URL,
        timeout: float = DEFAULT_VULNERABILITY_TIMEOUT_SECONDS,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._url = url

    @property
    def url(self) -> str:
        """Return the query endpoint."""
        return self._url

    async def query(self, ecosystem: str, package: str, version: str) -> list[SecurityIssue]:
        """
        Look up advisories affecting a package version.

        Args:
            ecosystem: OSV ecosystem name (e.g. "Go", "npm").
            package: Package or module name.
            version: Version to check.

        Returns:
            Known issues, or an empty list when the lookup fails.
        """
        payload = {
            "package": {"name": package, "ecosystem": ecosystem},
            "version": version,
        }

        try:
            response = await self._client.post(self._url, json=payload)
        except httpx.HTTPError as e:
            logger.info(
                f"Vulnerability lookup failed for {package}@{version}: {e}",
                extra={"ecosystem": ecosystem, "package": package},
            )
            return []

        if response.status_code != 200:
            logger.info(
                f"Vulnerability database returned HTTP {response.status_code}",
                extra={"ecosystem": ecosystem, "package": package},
            )
            return []

        try:
            data = response.json()
        except ValueError as e:
            logger.info(
                f"Invalid vulnerability response for {package}@{version}: {e}",
                extra={"ecosystem": ecosystem, "package": package},
            )
            return []

        if not isinstance(data, dict):
            return []

        try:
            issues = convert_vulnerabilities(data)
        except (AttributeError, TypeError, ValueError) as e:
            logger.info(
                f"Malformed vulnerability response for {package}@{version}: {e}",
                extra={"ecosystem": ecosystem, "package": package},
            )
            return []
        if issues:
            logger.warning(
                f"{len(issues)} known vulnerabilities in {package}@{version}",
                extra={
                    "ecosystem": ecosystem,
                    "package": package,
                    "ids": [issue.id for issue in issues],
                },
            )
        return issues

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
