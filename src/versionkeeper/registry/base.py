"""
Registry abstraction.

This module defines the VersionRegistry abstract base class that all
ecosystem registries (NPM, Go module proxy, GitHub releases) implement.

Each registry owns one httpx.AsyncClient with its own base URL and timeout.
A client can be injected instead, which is how tests substitute mock
endpoints; the injected client must carry the registry's base URL.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

import httpx

from versionkeeper.errors import RegistryError
from versionkeeper.logging import get_logger
from versionkeeper.models import SecurityIssue, VersionInfo, VersionKind

logger = get_logger(__name__)

USER_AGENT = "versionkeeper/0.1.0"
DEFAULT_TIMEOUT_SECONDS = 30.0


class VersionRegistry(ABC):
    """
    Abstract base class for version registries.

    Subclasses set the class attributes and implement:
    - fetch_latest_version(): the ecosystem-specific latest-version lookup
    - check_security(): vulnerability lookup (may return an empty list)
    - is_available(): cheap reachability check

    Attributes:
        name: Registry name used in cache keys and update_source.
        language: Language reported on VersionInfo records.
        kind: Default kind of the records this registry reports.
        default_base_url: Base URL used when no client is injected.
        default_packages: Packages tracked when none are configured.
    """

    name: str = ""
    language: str = ""
    kind: VersionKind = VersionKind.PACKAGE
    default_base_url: str = ""
    default_packages: tuple[str, ...] = ()

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        supported_packages: list[str] | None = None,
    ) -> None:
        """
        Initialize the registry.

        Args:
            client: Optional pre-built HTTP client. When omitted, the registry
                creates and owns one.
            base_url: Override of default_base_url for the owned client.
            timeout: Request timeout in seconds for the owned client.
            supported_packages: Packages to track instead of the defaults.
        """
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url or self.default_base_url,
            timeout=timeout,
            headers=self.default_headers(),
        )
        self._supported = list(
            supported_packages if supported_packages is not None else self.default_packages
        )

    def default_headers(self) -> dict[str, str]:
        """Headers sent with every request of the owned client."""
        return {"User-Agent": USER_AGENT, "Accept": "application/json"}

    @property
    def client(self) -> httpx.AsyncClient:
        """Return the HTTP client."""
        return self._client

    def get_supported_packages(self) -> list[str]:
        """Return the packages this registry tracks."""
        return list(self._supported)

    def registry_url(self, package: str) -> str:
        """Return a human-facing URL for the package."""
        return f"{self.default_base_url}/{package}"

    def kind_for(self, package: str) -> VersionKind:
        """Return the record kind for a package."""
        return self.kind

    def language_for(self, package: str) -> str:
        """Return the language reported for a package."""
        return self.language

    @abstractmethod
    async def fetch_latest_version(self, package: str) -> str:
        """
        Fetch the latest published version string of a package.

        Raises:
            RegistryError: If the package is missing or the registry fails.
        """

    @abstractmethod
    async def check_security(self, package: str, version: str) -> list[SecurityIssue]:
        """
        Return known vulnerabilities of a package version.

        Lookups are best-effort: failures yield an empty list.
        """

    @abstractmethod
    async def is_available(self) -> bool:
        """Check whether the registry is reachable."""

    def build_version_info(
        self,
        package: str,
        latest_version: str,
        security_issues: list[SecurityIssue] | None = None,
    ) -> VersionInfo:
        """Build a VersionInfo record reported by this registry."""
        now = datetime.now(UTC)
        return VersionInfo(
            name=package,
            language=self.language_for(package),
            kind=self.kind_for(package),
            latest_version=latest_version,
            security_issues=security_issues or [],
            update_source=self.name,
            registry_url=self.registry_url(package),
            checked_at=now,
            updated_at=now,
        )

    async def get_latest_version(self, package: str) -> VersionInfo:
        """
        Return the latest version of a package, enriched with security data.

        Raises:
            RegistryError: If the version lookup fails.
        """
        version = await self.fetch_latest_version(package)
        issues = await self.check_security(package, version)
        logger.debug(
            f"Latest version of {package} is {version}",
            extra={"registry": self.name, "package": package, "version": version},
        )
        return self.build_version_info(package, version, issues)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request, mapping transport failures to RegistryError.

        Raises:
            RegistryError: On connection errors and timeouts.
        """
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RegistryError(
                f"{self.name} registry request failed: {e}",
                details={"registry": self.name, "path": path},
            ) from e

    async def _get_json(self, path: str, *, package: str) -> Any:
        """
        GET a JSON document, treating any non-200 response as an error.

        Raises:
            RegistryError: On transport errors, non-200 responses or bad JSON.
        """
        response = await self._request("GET", path)

        if response.status_code == 404:
            raise RegistryError(
                f"Package not found in {self.name} registry: {package}",
                details={"registry": self.name, "package": package, "status": 404},
            )
        if response.status_code != 200:
            raise RegistryError(
                f"{self.name} registry returned HTTP {response.status_code} for {package}",
                details={
                    "registry": self.name,
                    "package": package,
                    "status": response.status_code,
                },
            )

        try:
            return response.json()
        except ValueError as e:
            raise RegistryError(
                f"Invalid JSON from {self.name} registry for {package}",
                details={"registry": self.name, "package": package},
            ) from e

    async def aclose(self) -> None:
        """Close the HTTP client if this registry created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> VersionRegistry:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
