"""
Upstream version registries.

Registries are selected by name through REGISTRY_TYPES:
- npm: NPM package registry
- go: Go module proxy, with OSV vulnerability lookups
- github: GitHub releases
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from versionkeeper.errors import InvalidArgumentError
from versionkeeper.registry.base import VersionRegistry
from versionkeeper.registry.github import GitHubRegistry, GitHubRelease, normalize_tag
from versionkeeper.registry.goproxy import GoProxyRegistry, encode_module_path
from versionkeeper.registry.npm import NPMRegistry
from versionkeeper.registry.osv import OSVClient

if TYPE_CHECKING:
    from versionkeeper.config import RegistriesConfig

REGISTRY_TYPES: dict[str, type[VersionRegistry]] = {
    NPMRegistry.name: NPMRegistry,
    GoProxyRegistry.name: GoProxyRegistry,
    GitHubRegistry.name: GitHubRegistry,
}


def create_registries(config: RegistriesConfig) -> dict[str, VersionRegistry]:
    """
    Build the enabled registries from configuration.

    Args:
        config: RegistriesConfig with URLs, timeouts and the enabled list.

    Returns:
        Mapping of registry name to registry instance, in enabled order.

    Raises:
        InvalidArgumentError: If an enabled name is not a known registry.
    """
    registries: dict[str, VersionRegistry] = {}

    for name in config.enabled:
        if name not in REGISTRY_TYPES:
            raise InvalidArgumentError(
                f"Unknown registry: {name}",
                details={"registry": name, "valid": sorted(REGISTRY_TYPES)},
            )

        if name == NPMRegistry.name:
            registries[name] = NPMRegistry(
                base_url=config.npm_url, timeout=config.timeout_seconds
            )
        elif name == GoProxyRegistry.name:
            registries[name] = GoProxyRegistry(
                base_url=config.go_proxy_url,
                timeout=config.timeout_seconds,
                osv_url=config.osv_url,
                vulnerability_timeout=config.vulnerability_timeout_seconds,
            )
        else:
            registries[name] = GitHubRegistry(
                base_url=config.github_api_url,
                timeout=config.timeout_seconds,
                token=config.github_token,
            )

    return registries


__all__ = [
    "REGISTRY_TYPES",
    "GitHubRegistry",
    "GitHubRelease",
    "GoProxyRegistry",
    "NPMRegistry",
    "OSVClient",
    "VersionRegistry",
    "create_registries",
    "encode_module_path",
    "normalize_tag",
]
