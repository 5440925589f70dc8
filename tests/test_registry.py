"""
Tests for the upstream registries.

HTTP is never hit: each registry gets an httpx.AsyncClient over an
httpx.MockTransport whose handler plays the registry.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from versionkeeper.config import RegistriesConfig
from versionkeeper.errors import InvalidArgumentError, RegistryError
from versionkeeper.manager import VersionManager
from versionkeeper.models import VersionInfo, VersionKind
from versionkeeper.registry import (
    GitHubRegistry,
    GoProxyRegistry,
    NPMRegistry,
    OSVClient,
    create_registries,
    encode_module_path,
    normalize_tag,
)
from versionkeeper.registry.osv import (
    convert_vulnerabilities,
    determine_severity,
    severity_from_score,
)
from versionkeeper.storage import VersionStorage

Handler = Callable[[httpx.Request], httpx.Response]

OSV_URL = "https://osv.test/v1/query"


def mock_client(handler: Handler, base_url: str = "https://registry.test") -> httpx.AsyncClient:
    """Build an AsyncClient served by handler."""
    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


def osv_client(handler: Handler) -> OSVClient:
    """Build an OSVClient served by handler."""
    return OSVClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), url=OSV_URL)


def no_vulns(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={})


# =============================================================================
# NPM Tests
# =============================================================================


class TestNPMRegistry:
    """Tests for NPMRegistry."""

    @pytest.mark.asyncio
    async def test_latest_version(self) -> None:
        """Test reading the latest dist-tag."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/react"
            return httpx.Response(200, json={"dist-tags": {"latest": "18.3.1"}})

        registry = NPMRegistry(mock_client(handler))
        info = await registry.get_latest_version("react")

        assert info.name == "react"
        assert info.latest_version == "18.3.1"
        assert info.language == "javascript"
        assert info.kind == VersionKind.PACKAGE
        assert info.update_source == "npm"
        assert info.registry_url == "https://www.npmjs.com/package/react"
        assert info.is_secure
        assert info.checked_at is not None

    @pytest.mark.asyncio
    async def test_scoped_package_is_encoded(self) -> None:
        """Test that the slash of a scoped name is percent-encoded."""
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.raw_path.decode())
            return httpx.Response(200, json={"dist-tags": {"latest": "20.11.0"}})

        registry = NPMRegistry(mock_client(handler))

        assert await registry.fetch_latest_version("@types/node") == "20.11.0"
        assert seen == ["/@types%2Fnode"]

    @pytest.mark.asyncio
    async def test_missing_latest_tag(self) -> None:
        """Test that a document without dist-tags.latest is an error."""
        registry = NPMRegistry(mock_client(lambda r: httpx.Response(200, json={"name": "x"})))

        with pytest.raises(RegistryError, match="No latest version"):
            await registry.fetch_latest_version("x")

    @pytest.mark.asyncio
    async def test_malformed_dist_tags(self) -> None:
        """Test that dist-tags of the wrong shape is a RegistryError."""
        registry = NPMRegistry(
            mock_client(lambda r: httpx.Response(200, json={"dist-tags": ["latest"]}))
        )

        with pytest.raises(RegistryError, match="No latest version"):
            await registry.fetch_latest_version("x")

    @pytest.mark.asyncio
    async def test_package_not_found(self) -> None:
        """Test that a 404 is a RegistryError."""
        registry = NPMRegistry(mock_client(lambda r: httpx.Response(404)))

        with pytest.raises(RegistryError) as exc_info:
            await registry.fetch_latest_version("does-not-exist")

        assert exc_info.value.details["status"] == 404

    @pytest.mark.asyncio
    async def test_server_error(self) -> None:
        """Test that a non-200 response is a RegistryError."""
        registry = NPMRegistry(mock_client(lambda r: httpx.Response(503)))

        with pytest.raises(RegistryError, match="HTTP 503"):
            await registry.fetch_latest_version("react")

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        """Test that connection failures are wrapped."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        registry = NPMRegistry(mock_client(handler))

        with pytest.raises(RegistryError) as exc_info:
            await registry.fetch_latest_version("react")

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        """Test that an unparseable body is a RegistryError."""
        registry = NPMRegistry(mock_client(lambda r: httpx.Response(200, text="<html>")))

        with pytest.raises(RegistryError, match="Invalid JSON"):
            await registry.fetch_latest_version("react")

    @pytest.mark.asyncio
    async def test_version_history(self) -> None:
        """Test that history is SemVer-ordered and skips odd versions."""
        document = {
            "dist-tags": {"latest": "18.3.1"},
            "versions": {"18.3.1": {}, "0.14.0": {}, "18.0.0-rc.0": {}, "18.0.0": {}, "bogus": {}},
        }
        registry = NPMRegistry(mock_client(lambda r: httpx.Response(200, json=document)))

        assert await registry.get_version_history("react") == [
            "0.14.0",
            "18.0.0-rc.0",
            "18.0.0",
            "18.3.1",
        ]
        assert await registry.get_version_history("react", limit=2) == ["18.0.0", "18.3.1"]

    @pytest.mark.asyncio
    async def test_is_available(self) -> None:
        """Test the ping check."""
        up = NPMRegistry(mock_client(lambda r: httpx.Response(200, json={})))
        down = NPMRegistry(mock_client(lambda r: httpx.Response(500)))

        assert await up.is_available()
        assert not await down.is_available()

    @pytest.mark.asyncio
    async def test_check_security_reports_nothing(self) -> None:
        """Test that npm has no vulnerability lookup."""
        registry = NPMRegistry(mock_client(lambda r: httpx.Response(500)))

        assert await registry.check_security("react", "18.0.0") == []

    def test_supported_packages(self) -> None:
        """Test the default and overridden package lists."""
        assert "@types/react" in NPMRegistry(mock_client(no_vulns)).get_supported_packages()
        assert NPMRegistry(
            mock_client(no_vulns), supported_packages=["vue"]
        ).get_supported_packages() == ["vue"]


# =============================================================================
# Go Proxy Tests
# =============================================================================


class TestGoProxyRegistry:
    """Tests for GoProxyRegistry."""

    def test_encode_module_path(self) -> None:
        """Test the uppercase escaping of the proxy protocol."""
        assert encode_module_path("github.com/Azure/azure-sdk") == "github.com/!azure/azure-sdk"
        assert encode_module_path("gorm.io/gorm") == "gorm.io/gorm"

    @pytest.mark.asyncio
    async def test_latest_version(self) -> None:
        """Test reading Version from @latest."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/github.com/gin-gonic/gin/@latest"
            return httpx.Response(200, json={"Version": "v1.10.0", "Time": "2024-05-07T00:00:00Z"})

        registry = GoProxyRegistry(mock_client(handler), osv=osv_client(no_vulns))

        assert await registry.fetch_latest_version("github.com/gin-gonic/gin") == "v1.10.0"

    @pytest.mark.asyncio
    async def test_falls_back_to_version_list(self) -> None:
        """Test the @v/list fallback when @latest fails."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/@latest"):
                return httpx.Response(410)
            assert request.url.path == "/github.com/!burnt!sushi/toml/@v/list"
            return httpx.Response(200, text="v1.2.0\nv1.3.2\nv1.3.0\n\n")

        registry = GoProxyRegistry(mock_client(handler), osv=osv_client(no_vulns))

        assert await registry.fetch_latest_version("github.com/BurntSushi/toml") == "v1.3.2"

    @pytest.mark.asyncio
    async def test_fallback_failure(self) -> None:
        """Test that a failing @v/list is a RegistryError."""
        registry = GoProxyRegistry(
            mock_client(lambda r: httpx.Response(404)), osv=osv_client(no_vulns)
        )

        with pytest.raises(RegistryError):
            await registry.fetch_latest_version("example.com/missing")

    @pytest.mark.asyncio
    async def test_empty_version_list(self) -> None:
        """Test that a module with no versions is a RegistryError."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/@latest"):
                return httpx.Response(404)
            return httpx.Response(200, text="")

        registry = GoProxyRegistry(mock_client(handler), osv=osv_client(no_vulns))

        with pytest.raises(RegistryError, match="No versions"):
            await registry.fetch_latest_version("example.com/empty")

    @pytest.mark.asyncio
    async def test_check_security_queries_osv(self) -> None:
        """Test the OSV request and the converted issues."""
        requests: list[dict] = []

        def osv_handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "vulns": [
                        {
                            "id": "GO-2023-2001",
                            "summary": "Path traversal in gin",
                            "severity": [{"type": "CVSS_V3", "score": "7.5"}],
                            "affected": [
                                {"ranges": [{"events": [{"introduced": "0"}, {"fixed": "1.9.1"}]}]}
                            ],
                            "references": [{"url": "https://pkg.go.dev/vuln/GO-2023-2001"}],
                            "published": "2023-08-01T00:00:00Z",
                        }
                    ]
                },
            )

        registry = GoProxyRegistry(mock_client(no_vulns), osv=osv_client(osv_handler))

        issues = await registry.check_security("github.com/gin-gonic/gin", "v1.9.0")

        assert requests == [
            {
                "package": {"name": "github.com/gin-gonic/gin", "ecosystem": "Go"},
                "version": "v1.9.0",
            }
        ]
        assert len(issues) == 1
        assert issues[0].id == "GO-2023-2001"
        assert issues[0].severity == "high"
        assert issues[0].fixed_in == "1.9.1"
        assert issues[0].url == "https://pkg.go.dev/vuln/GO-2023-2001"
        assert issues[0].published_at is not None

    @pytest.mark.asyncio
    async def test_security_lookup_failure_degrades(self) -> None:
        """Test that an OSV failure yields no issues instead of an error."""

        def latest(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"Version": "v1.25.10"})

        def failing_osv(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        registry = GoProxyRegistry(mock_client(latest), osv=osv_client(failing_osv))

        info = await registry.get_latest_version("gorm.io/gorm")

        assert info.latest_version == "v1.25.10"
        assert info.security_issues == []
        assert info.registry_url == "https://pkg.go.dev/gorm.io/gorm"

    @pytest.mark.asyncio
    async def test_osv_non_200_degrades(self) -> None:
        """Test that an OSV error status yields no issues."""
        osv = osv_client(lambda r: httpx.Response(500))

        assert await osv.query("Go", "gorm.io/gorm", "v1.0.0") == []

    @pytest.mark.asyncio
    async def test_malformed_osv_body_degrades(self) -> None:
        """Test that an advisory body of the wrong shape yields no issues."""
        osv = osv_client(
            lambda r: httpx.Response(200, json={"vulns": [{"id": "X", "affected": ["oops"]}]})
        )

        issues = await osv.query("Go", "gorm.io/gorm", "v1.9.0")

        assert [issue.id for issue in issues] == ["X"]
        assert await osv_client(
            lambda r: httpx.Response(200, json={"vulns": {"id": "X"}})
        ).query("Go", "gorm.io/gorm", "v1.9.0") == []

    @pytest.mark.asyncio
    async def test_malformed_osv_body_does_not_abort_detection(
        self, storage: VersionStorage
    ) -> None:
        """Test that detection still reports the update when OSV returns junk."""

        def latest(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"Version": "v1.10.0"})

        def junk(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"vulns": [{"id": "X", "affected": ["oops"]}]})

        storage.set_version_info(VersionInfo(name="gorm.io/gorm", current_version="1.9.0"))
        registry = GoProxyRegistry(
            mock_client(latest), osv=osv_client(junk), supported_packages=["gorm.io/gorm"]
        )
        manager = VersionManager(storage, registries={"go": registry})

        updates = await manager.detect_version_updates()

        assert updates["gorm.io/gorm"].latest_version == "v1.10.0"
        assert manager.last_skipped == {}

    @pytest.mark.asyncio
    async def test_is_available_checks_gin(self) -> None:
        """Test the availability check."""
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={"Version": "v1.10.0"})

        registry = GoProxyRegistry(mock_client(handler), osv=osv_client(no_vulns))

        assert await registry.is_available()
        assert paths == ["/github.com/gin-gonic/gin/@latest"]


class TestOSVHelpers:
    """Tests for the OSV conversion helpers."""

    @pytest.mark.parametrize(
        ("score", "label"),
        [(9.8, "critical"), (9.0, "critical"), (7.0, "high"), (5.3, "medium"), (3.9, "low")],
    )
    def test_severity_from_score(self, score: float, label: str) -> None:
        """Test the CVSS score thresholds."""
        assert severity_from_score(score) == label

    def test_severity_from_database_label(self) -> None:
        """Test falling back to the database-specific label."""
        assert determine_severity({"database_specific": {"severity": "MODERATE"}}) == "medium"
        assert determine_severity({"database_specific": {"severity": "HIGH"}}) == "high"

    def test_severity_defaults_to_medium(self) -> None:
        """Test that an unscored vector string falls back to medium."""
        vuln = {"severity": [{"type": "CVSS_V3", "score": "CVSS:3.1/AV:N/AC:L"}]}

        assert determine_severity(vuln) == "medium"

    def test_convert_skips_entries_without_id(self) -> None:
        """Test that malformed advisories are dropped."""
        issues = convert_vulnerabilities({"vulns": [{"summary": "no id"}, {"id": "X-1"}]})

        assert [issue.id for issue in issues] == ["X-1"]
        assert issues[0].fixed_in == ""

    def test_convert_ignores_malformed_nested_items(self) -> None:
        """Test that non-object list items are skipped at every level."""
        data = {
            "vulns": [
                "not-an-advisory",
                {
                    "id": "GO-2024-0001",
                    "severity": ["7.5"],
                    "affected": ["oops", {"ranges": [None, {"events": [1, {"fixed": "1.2.3"}]}]}],
                    "references": ["https://example.test"],
                    "database_specific": "HIGH",
                },
                {"id": "GO-2024-0002", "affected": "oops"},
            ]
        }

        issues = convert_vulnerabilities(data)

        assert [issue.id for issue in issues] == ["GO-2024-0001", "GO-2024-0002"]
        assert issues[0].fixed_in == "1.2.3"
        assert issues[0].severity == "medium"
        assert issues[0].url == ""


# =============================================================================
# GitHub Tests
# =============================================================================


class TestGitHubRegistry:
    """Tests for GitHubRegistry."""

    @pytest.mark.parametrize(
        ("tag", "version"),
        [("go1.22.0", "1.22.0"), ("v20.11.1", "20.11.1"), ("3.12.2", "3.12.2"), ("golang", "golang")],
    )
    def test_normalize_tag(self, tag: str, version: str) -> None:
        """Test stripping release tag prefixes."""
        assert normalize_tag(tag) == version

    @pytest.mark.asyncio
    async def test_latest_version(self) -> None:
        """Test reading the latest release tag."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/repos/golang/go/releases/latest"
            return httpx.Response(200, json={"tag_name": "go1.22.1"})

        registry = GitHubRegistry(mock_client(handler))
        info = await registry.get_latest_version("golang/go")

        assert info.latest_version == "1.22.1"
        assert info.kind == VersionKind.LANGUAGE
        assert info.language == "go"
        assert info.registry_url == "https://github.com/golang/go/releases"

    @pytest.mark.asyncio
    async def test_empty_tag_is_error(self) -> None:
        """Test that a release without a tag is an error."""
        registry = GitHubRegistry(mock_client(lambda r: httpx.Response(200, json={"tag_name": ""})))

        with pytest.raises(RegistryError):
            await registry.fetch_latest_version("nodejs/node")

    @pytest.mark.asyncio
    async def test_not_found_is_error(self) -> None:
        """Test that a repository without releases is an error."""
        registry = GitHubRegistry(mock_client(lambda r: httpx.Response(404)))

        with pytest.raises(RegistryError):
            await registry.fetch_latest_version("nodejs/node")

    @pytest.mark.asyncio
    async def test_malformed_release_is_error(self) -> None:
        """Test that a release list with non-object items is a RegistryError."""
        registry = GitHubRegistry(mock_client(lambda r: httpx.Response(200, json=["oops"])))

        with pytest.raises(RegistryError, match="Malformed release"):
            await registry.get_releases("nodejs/node")

    @pytest.mark.asyncio
    async def test_invalid_repository_name(self) -> None:
        """Test that names must be owner/repo."""
        registry = GitHubRegistry(mock_client(no_vulns))

        with pytest.raises(InvalidArgumentError):
            await registry.fetch_latest_version("node")

    @pytest.mark.asyncio
    async def test_latest_stable_release(self) -> None:
        """Test skipping drafts and prereleases."""
        releases = [
            {"tag_name": "v22.0.0-rc.1", "prerelease": True},
            {"tag_name": "v21.9.0", "draft": True},
            {"tag_name": "v21.7.3", "published_at": "2024-04-10T00:00:00Z"},
        ]
        registry = GitHubRegistry(mock_client(lambda r: httpx.Response(200, json=releases)))

        release = await registry.get_latest_stable_release("nodejs/node")

        assert release.version == "21.7.3"
        assert release.published_at is not None

    @pytest.mark.asyncio
    async def test_no_stable_release(self) -> None:
        """Test that a prerelease-only history is an error."""
        releases = [{"tag_name": "v1.0.0-beta", "prerelease": True}]
        registry = GitHubRegistry(mock_client(lambda r: httpx.Response(200, json=releases)))

        with pytest.raises(RegistryError, match="No stable release"):
            await registry.get_latest_stable_release("owner/repo")

    def test_default_headers_with_token(self) -> None:
        """Test the headers of the owned client."""
        registry = GitHubRegistry(token="ghp_secret")

        assert registry.client.headers["Accept"] == "application/vnd.github.v3+json"
        assert registry.client.headers["Authorization"] == "Bearer ghp_secret"
        assert registry.client.headers["User-Agent"].startswith("versionkeeper/")

    def test_default_headers_without_token(self) -> None:
        """Test that no Authorization header is sent without a token."""
        assert "Authorization" not in GitHubRegistry().client.headers


# =============================================================================
# Factory Tests
# =============================================================================


class TestCreateRegistries:
    """Tests for create_registries()."""

    @pytest.mark.asyncio
    async def test_builds_enabled_registries(self) -> None:
        """Test building every registry from configuration."""
        registries = create_registries(
            RegistriesConfig(npm_url="https://npm.internal", github_token="t")
        )
        try:
            assert list(registries) == ["npm", "go", "github"]
            assert isinstance(registries["npm"], NPMRegistry)
            assert str(registries["npm"].client.base_url).startswith("https://npm.internal")
            assert isinstance(registries["go"], GoProxyRegistry)
            assert isinstance(registries["github"], GitHubRegistry)
        finally:
            for registry in registries.values():
                await registry.aclose()

    def test_unknown_registry(self) -> None:
        """Test that an unknown name is rejected."""
        with pytest.raises(InvalidArgumentError):
            create_registries(RegistriesConfig(enabled=["pypi"]))
