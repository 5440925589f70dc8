"""
Go module proxy registry.

Implements the GOPROXY protocol lookups:
- GET /{module}/@latest returns {"Version": ..., "Time": ...}
- GET /{module}/@v/list returns one version per line

Uppercase letters in module paths are escaped as "!" followed by the
lowercase letter (github.com/Azure/x -> github.com/!azure/x). Security data
comes from the OSV database with ecosystem "Go".
"""

from __future__ import annotations

from typing import Any

import httpx

from versionkeeper.errors import RegistryError
from versionkeeper.logging import get_logger
from versionkeeper.models import SecurityIssue
from versionkeeper.registry.base import VersionRegistry
from versionkeeper.registry.osv import (
    DEFAULT_OSV_URL,
    DEFAULT_VULNERABILITY_TIMEOUT_SECONDS,
    OSVClient,
)

logger = get_logger(__name__)

OSV_ECOSYSTEM = "Go"
AVAILABILITY_CHECK_MODULE = "github.com/gin-gonic/gin"


def encode_module_path(module: str) -> str:
    """Escape a module path per the module proxy protocol."""
    return "".join(f"!{c.lower()}" if c.isupper() else c for c in module)


class GoProxyRegistry(VersionRegistry):
    """
    Version registry backed by proxy.golang.org.

    Args:
        client: Optional pre-built HTTP client for the proxy.
        osv: Vulnerability client. When omitted, one is created (and owned)
            from osv_url and vulnerability_timeout.
        osv_url: OSV query endpoint for the owned vulnerability client.
        vulnerability_timeout: Timeout of the owned vulnerability client.
        **kwargs: Passed to VersionRegistry.
    """

    name = "go"
    language = "go"
    default_base_url = "https://proxy.golang.org"
    default_packages = (
        "github.com/gin-gonic/gin",
        "github.com/gorilla/mux",
        "github.com/stretchr/testify",
        "gorm.io/gorm",
        "github.com/spf13/cobra",
        "github.com/spf13/viper",
    )

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        osv: OSVClient | None = None,
        osv_url: str = DEFAULT_OSV_URL,
        vulnerability_timeout: float = DEFAULT_VULNERABILITY_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(client, **kwargs)
        self._owns_osv = osv is None
        self._osv = osv or OSVClient(url=osv_url, timeout=vulnerability_timeout)

    def registry_url(self, package: str) -> str:
        return f"https://pkg.go.dev/{package}"

    async def fetch_latest_version(self, package: str) -> str:
        encoded = encode_module_path(package)

        response = await self._request("GET", f"/{encoded}/@latest")
        if response.status_code == 200:
            try:
                version = response.json().get("Version")
            except (ValueError, AttributeError):
                version = None
            if version:
                return str(version)

        logger.debug(
            f"@latest unavailable for {package} (HTTP {response.status_code}), "
            "falling back to @v/list",
            extra={"package": package},
        )
        return await self._latest_from_list(package, encoded)

    async def _latest_from_list(self, package: str, encoded: str) -> str:
        response = await self._request("GET", f"/{encoded}/@v/list")
        if response.status_code != 200:
            raise RegistryError(
                f"Go proxy returned HTTP {response.status_code} for {package}",
                details={
                    "registry": self.name,
                    "package": package,
                    "status": response.status_code,
                },
            )

        versions = [line.strip() for line in response.text.splitlines() if line.strip()]
        if not versions:
            raise RegistryError(
                f"No versions published for {package}",
                details={"registry": self.name, "package": package},
            )
        return max(versions)

    async def check_security(self, package: str, version: str) -> list[SecurityIssue]:
        return await self._osv.query(OSV_ECOSYSTEM, package, version)

    async def is_available(self) -> bool:
        try:
            await self.fetch_latest_version(AVAILABILITY_CHECK_MODULE)
        except RegistryError as e:
            logger.warning(f"Go module proxy unavailable: {e.message}")
            return False
        return True

    async def aclose(self) -> None:
        await super().aclose()
        if self._owns_osv:
            await self._osv.aclose()
