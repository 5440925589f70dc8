"""
GitHub releases registry.

Tracks projects published as GitHub releases, named "owner/repo". Tag names
are normalized by stripping a leading "go" (golang/go tags look like
"go1.22.0") or "v".
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from versionkeeper.errors import InvalidArgumentError, RegistryError
from versionkeeper.logging import get_logger
from versionkeeper.models import SecurityIssue, VersionKind
from versionkeeper.registry.base import USER_AGENT, VersionRegistry

logger = get_logger(__name__)

# Language reported for each tracked runtime repository
REPOSITORY_LANGUAGES: dict[str, str] = {
    "nodejs/node": "javascript",
    "golang/go": "go",
    "python/cpython": "python",
    "rust-lang/rust": "rust",
}


def normalize_tag(tag: str) -> str:
    """Strip the "go" or "v" prefix from a release tag."""
    tag = tag.strip()
    if tag.startswith("go") and tag[2:3].isdigit():
        return tag[2:]
    if tag.startswith(("v", "V")) and tag[1:2].isdigit():
        return tag[1:]
    return tag


class GitHubRelease(BaseModel):
    """A release as returned by the GitHub REST API."""

    tag_name: str = Field(default="")
    name: str | None = Field(default=None)
    draft: bool = Field(default=False)
    prerelease: bool = Field(default=False)
    published_at: datetime | None = Field(default=None)
    html_url: str = Field(default="")

    @property
    def version(self) -> str:
        """Normalized version of the release tag."""
        return normalize_tag(self.tag_name)


class GitHubRegistry(VersionRegistry):
    """
    Version registry backed by the GitHub releases API.

    Args:
        client: Optional pre-built HTTP client.
        token: Optional API token, sent as a bearer token.
        **kwargs: Passed to VersionRegistry.
    """

    name = "github"
    language = ""
    kind = VersionKind.LANGUAGE
    default_base_url = "https://api.github.com"
    default_packages = tuple(REPOSITORY_LANGUAGES)

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        token: str | None = None,
        **kwargs: Any,
    ) -> None:
        self._token = token
        super().__init__(client, **kwargs)

    def default_headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": USER_AGENT,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def registry_url(self, package: str) -> str:
        return f"https://github.com/{package}/releases"

    def language_for(self, package: str) -> str:
        return REPOSITORY_LANGUAGES.get(package, "")

    @staticmethod
    def _split_repository(package: str) -> tuple[str, str]:
        owner, _, repo = package.partition("/")
        if not owner or not repo or "/" in repo:
            raise InvalidArgumentError(
                f"GitHub repository must be 'owner/repo': {package}",
                details={"package": package},
            )
        return owner, repo

    async def fetch_latest_version(self, package: str) -> str:
        owner, repo = self._split_repository(package)
        data = await self._get_json(
            f"/repos/{owner}/{repo}/releases/latest", package=package
        )
        tag = (data or {}).get("tag_name") if isinstance(data, dict) else None
        if not tag:
            raise RegistryError(
                f"Latest release of {package} has no tag",
                details={"registry": self.name, "package": package},
            )
        return normalize_tag(str(tag))

    async def get_releases(self, package: str, per_page: int = 30) -> list[GitHubRelease]:
        """
        List recent releases, newest first.

        Raises:
            RegistryError: If the releases cannot be fetched.
        """
        owner, repo = self._split_repository(package)
        data = await self._get_json(
            f"/repos/{owner}/{repo}/releases?per_page={per_page}", package=package
        )
        if not isinstance(data, list):
            raise RegistryError(
                f"Unexpected releases response for {package}",
                details={"registry": self.name, "package": package},
            )
        try:
            return [GitHubRelease.model_validate(item) for item in data]
        except ValidationError as e:
            raise RegistryError(
                f"Malformed release in response for {package}",
                details={"registry": self.name, "package": package},
            ) from e

    async def get_latest_stable_release(self, package: str) -> GitHubRelease:
        """
        Return the newest release that is neither a draft nor a prerelease.

        Raises:
            RegistryError: If no stable release exists.
        """
        for release in await self.get_releases(package):
            if not release.draft and not release.prerelease and release.tag_name:
                return release
        raise RegistryError(
            f"No stable release found for {package}",
            details={"registry": self.name, "package": package},
        )

    async def check_security(self, package: str, version: str) -> list[SecurityIssue]:
        return []

    async def is_available(self) -> bool:
        try:
            response = await self._request("GET", "/rate_limit")
        except RegistryError as e:
            logger.warning(f"GitHub API unavailable: {e.message}")
            return False
        return response.status_code == 200
