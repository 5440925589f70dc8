"""
NPM registry.

Latest versions come from the "latest" dist-tag of GET /{package}. Scoped
package names are URL-encoded (@types/node -> @types%2Fnode). NPM has no
vulnerability lookup here, so check_security always reports no issues.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

from versionkeeper.errors import InvalidVersionError, RegistryError
from versionkeeper.logging import get_logger
from versionkeeper.models import SecurityIssue
from versionkeeper.registry.base import VersionRegistry
from versionkeeper.semver import SemVer

logger = get_logger(__name__)


class NPMRegistry(VersionRegistry):
    """Version registry backed by registry.npmjs.org."""

    name = "npm"
    language = "javascript"
    default_base_url = "https://registry.npmjs.org"
    default_packages = (
        "react",
        "react-dom",
        "next",
        "typescript",
        "tailwindcss",
        "eslint",
        "prettier",
        "@types/node",
        "@types/react",
        "autoprefixer",
        "postcss",
    )

    @staticmethod
    def encode_package_name(package: str) -> str:
        """Encode a package name for use as a URL path segment."""
        return quote(package, safe="@")

    def registry_url(self, package: str) -> str:
        return f"https://www.npmjs.com/package/{package}"

    async def _get_document(self, package: str) -> dict[str, Any]:
        data = await self._get_json(
            f"/{self.encode_package_name(package)}", package=package
        )
        if not isinstance(data, dict):
            raise RegistryError(
                f"Unexpected npm response for {package}",
                details={"registry": self.name, "package": package},
            )
        return data

    async def fetch_latest_version(self, package: str) -> str:
        data = await self._get_document(package)
        dist_tags = data.get("dist-tags")
        latest = dist_tags.get("latest") if isinstance(dist_tags, dict) else None
        if not latest:
            raise RegistryError(
                f"No latest version found for {package}",
                details={"registry": self.name, "package": package},
            )
        return str(latest)

    async def get_version_history(self, package: str, limit: int | None = None) -> list[str]:
        """
        List published versions in ascending SemVer order.

        Versions that do not parse as SemVer are skipped. With a limit, only
        the newest `limit` versions are returned.

        Raises:
            RegistryError: If the package document cannot be fetched.
        """
        data = await self._get_document(package)
        parsed: list[tuple[SemVer, str]] = []
        published = data.get("versions")
        for version in published if isinstance(published, dict) else ():
            try:
                parsed.append((SemVer.parse(version), version))
            except InvalidVersionError:
                logger.debug(
                    f"Skipping non-semver npm version {version!r}",
                    extra={"package": package},
                )

        parsed.sort(key=lambda pair: pair[0])
        versions = [original for _, original in parsed]
        if limit is not None:
            versions = versions[-limit:] if limit > 0 else []
        return versions

    async def check_security(self, package: str, version: str) -> list[SecurityIssue]:
        return []

    async def is_available(self) -> bool:
        try:
            response = await self._request("GET", "/-/ping")
        except RegistryError as e:
            logger.warning(f"npm registry unavailable: {e.message}")
            return False
        return response.status_code == 200
