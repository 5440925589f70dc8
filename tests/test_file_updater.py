"""
Tests for the filesystem template updater.

Tests cover:
- Rewriting package.json, go.mod and Dockerfile contents
- Detection of affected templates
- Backup and restore of template directories
- Template validation
- Running the update pipeline against templates on disk
"""

from __future__ import annotations

import json
import stat
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from versionkeeper.config import PipelineConfig, TemplatesConfig
from versionkeeper.errors import TemplateUpdateError
from versionkeeper.manager import VersionManager
from versionkeeper.models import VersionInfo
from versionkeeper.storage import VersionStorage
from versionkeeper.updates import FileTemplateUpdater, PipelineOutcome, UpdatePipeline
from versionkeeper.updates.file_updater import (
    rewrite_dockerfile,
    rewrite_go_mod,
    rewrite_package_json,
    rewriter_for,
)

PACKAGE_JSON = """{
  "name": "web-app",
  "engines": {
    "node": ">=18.0.0"
  },
  "dependencies": {
    "react": "^18.2.0",
    "react-dom": "^18.2.0",
    "@types/react": "^18.2.0",
    "next": "latest"
  }
}
"""

GO_MOD = """module example.com/service

go 1.21

require (
\tgithub.com/gin-gonic/gin v1.9.1
\tgithub.com/spf13/cobra v1.7.0 // indirect
)

require gorm.io/gorm v1.25.0
"""

DOCKERFILE = """FROM golang:1.21-alpine AS build
WORKDIR /src
FROM --platform=linux/amd64 node:18-alpine
FROM nginx:1.25
"""


def update(name: str, latest: str, current: str = "") -> VersionInfo:
    """Build an approved update for a package."""
    return VersionInfo(name=name, current_version=current, latest_version=latest)


def updates(*infos: VersionInfo) -> dict[str, VersionInfo]:
    return {info.name: info for info in infos}


@pytest.fixture
def template(tmp_path: Path) -> Path:
    """A template directory holding one file of each handled kind."""
    root = tmp_path / "templates" / "web"
    root.mkdir(parents=True)
    (root / "package.json.tmpl").write_text(PACKAGE_JSON)
    (root / "go.mod").write_text(GO_MOD)
    (root / "Dockerfile").write_text(DOCKERFILE)
    (root / "README.md").write_text("react ^18.2.0\n")
    return root


@pytest.fixture
def updater(template: Path, tmp_path: Path) -> FileTemplateUpdater:
    """An updater over the template fixture."""
    return FileTemplateUpdater([template], tmp_path / "backups")


# =============================================================================
# Rewriters
# =============================================================================


class TestRewriters:
    """Tests for the per-file rewriters."""

    def test_package_json_keeps_range_operator(self) -> None:
        """Test that dependency versions change and operators stay."""
        result = rewrite_package_json(PACKAGE_JSON, updates(update("react", "18.3.1")))

        assert '"react": "^18.3.1"' in result
        # Similar names are not touched
        assert '"react-dom": "^18.2.0"' in result
        assert '"@types/react": "^18.2.0"' in result

    def test_package_json_engine(self) -> None:
        """Test that the node runtime maps onto engines.node."""
        result = rewrite_package_json(PACKAGE_JSON, updates(update("nodejs/node", "v20.11.1")))

        assert '"node": ">=20.11.1"' in result

    def test_package_json_non_numeric_value_left_alone(self) -> None:
        """Test that tags such as "latest" are kept."""
        result = rewrite_package_json(PACKAGE_JSON, updates(update("next", "15.0.0")))

        assert result == PACKAGE_JSON

    def test_package_json_update_without_version_ignored(self) -> None:
        """Test that an update missing its latest version changes nothing."""
        assert rewrite_package_json(PACKAGE_JSON, updates(update("react", ""))) == PACKAGE_JSON

    def test_go_mod_requires(self) -> None:
        """Test require lines in blocks and single-line form."""
        result = rewrite_go_mod(
            GO_MOD,
            updates(
                update("github.com/spf13/cobra", "1.8.0"),
                update("gorm.io/gorm", "v1.25.10"),
            ),
        )

        assert "\tgithub.com/spf13/cobra v1.8.0 // indirect" in result
        assert "require gorm.io/gorm v1.25.10" in result
        assert "\tgithub.com/gin-gonic/gin v1.9.1" in result

    def test_go_mod_directive(self) -> None:
        """Test that the Go toolchain update rewrites the go directive."""
        result = rewrite_go_mod(GO_MOD, updates(update("golang/go", "1.22.0")))

        assert "\ngo 1.22.0\n" in result
        assert "module example.com/service" in result

    def test_dockerfile_base_images(self) -> None:
        """Test that runtime tags change and suffixes stay."""
        result = rewrite_dockerfile(
            DOCKERFILE,
            updates(update("golang/go", "1.22.0"), update("nodejs/node", "20.11.1")),
        )

        assert "FROM golang:1.22.0-alpine AS build" in result
        assert "FROM --platform=linux/amd64 node:20.11.1-alpine" in result
        assert "FROM nginx:1.25" in result

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("package.json", rewrite_package_json),
            ("package.json.tmpl", rewrite_package_json),
            ("go.mod.tmpl", rewrite_go_mod),
            ("Dockerfile", rewrite_dockerfile),
            ("Dockerfile.dev", rewrite_dockerfile),
            ("README.md", None),
        ],
    )
    def test_rewriter_for(self, name: str, expected: object) -> None:
        """Test that rewriters are chosen by file name."""
        assert rewriter_for(Path(name)) is expected


# =============================================================================
# Affected Templates and Rewriting
# =============================================================================


class TestUpdateTemplates:
    """Tests for detection and rewriting of template directories."""

    @pytest.mark.asyncio
    async def test_affected_templates(
        self, updater: FileTemplateUpdater, template: Path
    ) -> None:
        """Test that only templates mentioning an update are affected."""
        assert await updater.get_affected_templates(
            updates(update("react", "18.3.1"))
        ) == [str(template)]
        assert await updater.get_affected_templates(updates(update("vue", "3.4.0"))) == []

    @pytest.mark.asyncio
    async def test_missing_template_dir_skipped(self, tmp_path: Path, template: Path) -> None:
        """Test that a configured directory that does not exist is skipped."""
        updater = FileTemplateUpdater([tmp_path / "missing", template], tmp_path / "bk")

        affected = await updater.get_affected_templates(updates(update("react", "18.3.1")))

        assert affected == [str(template)]

    @pytest.mark.asyncio
    async def test_update_all_templates(
        self, updater: FileTemplateUpdater, template: Path
    ) -> None:
        """Test that every handled file is rewritten on disk."""
        await updater.update_all_templates(
            updates(update("react", "18.3.1"), update("golang/go", "1.22.0"))
        )

        package = json.loads((template / "package.json.tmpl").read_text())
        assert package["dependencies"]["react"] == "^18.3.1"
        assert "\ngo 1.22.0\n" in (template / "go.mod").read_text()
        assert "FROM golang:1.22.0-alpine" in (template / "Dockerfile").read_text()
        # Unhandled files are never rewritten
        assert (template / "README.md").read_text() == "react ^18.2.0\n"

    @pytest.mark.asyncio
    async def test_update_keeps_file_mode(
        self, updater: FileTemplateUpdater, template: Path
    ) -> None:
        """Test that rewritten files keep their permission bits."""
        dockerfile = template / "Dockerfile"
        dockerfile.chmod(0o755)

        await updater.update_all_templates(updates(update("nodejs/node", "20.11.1")))

        assert stat.S_IMODE(dockerfile.stat().st_mode) == 0o755

    @pytest.mark.asyncio
    async def test_vendored_files_untouched(
        self, updater: FileTemplateUpdater, template: Path
    ) -> None:
        """Test that node_modules and vendor trees are skipped."""
        vendored = template / "node_modules" / "lib"
        vendored.mkdir(parents=True)
        (vendored / "package.json").write_text('{"dependencies": {"react": "^17.0.0"}}')

        await updater.update_all_templates(updates(update("react", "18.3.1")))

        assert "^17.0.0" in (vendored / "package.json").read_text()

    @pytest.mark.asyncio
    async def test_unreadable_file_is_error(
        self, updater: FileTemplateUpdater, template: Path
    ) -> None:
        """Test that a file that is not UTF-8 fails with TemplateUpdateError."""
        (template / "go.mod").write_bytes(b"\xff\xfe\x00")

        with pytest.raises(TemplateUpdateError, match="Failed to read"):
            await updater.update_all_templates(updates(update("react", "18.3.1")))


# =============================================================================
# Backup and Restore
# =============================================================================


class TestBackupRestore:
    """Tests for template backups."""

    @pytest.mark.asyncio
    async def test_backup_and_restore(
        self, updater: FileTemplateUpdater, template: Path
    ) -> None:
        """Test that a restore brings back the backed-up contents."""
        await updater.backup_templates([str(template)])
        backup = updater.latest_backup(str(template))

        assert backup is not None
        assert backup.parent == updater.backup_dir
        assert backup.name.startswith("web_backup_")

        await updater.update_all_templates(updates(update("react", "18.3.1")))
        (template / "extra.txt").write_text("created after backup")

        await updater.restore_templates([str(template)])

        assert (template / "package.json.tmpl").read_text() == PACKAGE_JSON
        assert not (template / "extra.txt").exists()

    @pytest.mark.asyncio
    async def test_backups_do_not_collide(
        self, updater: FileTemplateUpdater, template: Path
    ) -> None:
        """Test that repeated backups get distinct directories."""
        await updater.backup_templates([str(template)])
        first = updater.latest_backup(str(template))
        await updater.backup_templates([str(template)])
        second = updater.latest_backup(str(template))

        assert first != second
        assert first.is_dir() and second.is_dir()

    @pytest.mark.asyncio
    async def test_restore_without_backup(
        self, updater: FileTemplateUpdater, template: Path
    ) -> None:
        """Test that restoring a template never backed up fails."""
        with pytest.raises(TemplateUpdateError, match="No backup recorded"):
            await updater.restore_templates([str(template)])

    @pytest.mark.asyncio
    async def test_backup_of_missing_template(
        self, updater: FileTemplateUpdater, tmp_path: Path
    ) -> None:
        """Test that backing up a missing directory fails."""
        with pytest.raises(TemplateUpdateError) as exc_info:
            await updater.backup_templates([str(tmp_path / "gone")])

        assert exc_info.value.error_code == "template_update_failed"


# =============================================================================
# Validation
# =============================================================================


class TestValidation:
    """Tests for template validation."""

    @pytest.mark.asyncio
    async def test_valid_template(self, updater: FileTemplateUpdater, template: Path) -> None:
        """Test that a well-formed template passes."""
        (template / "package.json").write_text(PACKAGE_JSON)

        await updater.validate_template(str(template))

    @pytest.mark.asyncio
    async def test_invalid_json(self, updater: FileTemplateUpdater, template: Path) -> None:
        """Test that a package.json that no longer parses fails."""
        (template / "package.json").write_text('{"dependencies": {"react": "^18.3.1",}')

        with pytest.raises(TemplateUpdateError, match="Invalid JSON"):
            await updater.validate_template(str(template))

    @pytest.mark.asyncio
    async def test_go_mod_without_module(
        self, updater: FileTemplateUpdater, template: Path
    ) -> None:
        """Test that a go.mod without a module directive fails."""
        (template / "go.mod").write_text("go 1.22.0\n")

        with pytest.raises(TemplateUpdateError, match="module directive"):
            await updater.validate_template(str(template))

    @pytest.mark.asyncio
    async def test_missing_template(self, updater: FileTemplateUpdater, tmp_path: Path) -> None:
        """Test that validating a missing directory fails."""
        with pytest.raises(TemplateUpdateError):
            await updater.validate_template(str(tmp_path / "gone"))


# =============================================================================
# Configuration and Pipeline Integration
# =============================================================================


class TestPipelineIntegration:
    """Tests for running the pipeline over templates on disk."""

    def test_from_config(self, tmp_path: Path) -> None:
        """Test building an updater from template configuration."""
        config = TemplatesConfig(
            directories=[str(tmp_path / "a")], backup_dir=str(tmp_path / "bk")
        )

        updater = FileTemplateUpdater.from_config(config)

        assert updater.template_dirs == [tmp_path / "a"]
        assert updater.backup_dir == tmp_path / "bk"

    @staticmethod
    def pipeline(
        storage: VersionStorage, updater: FileTemplateUpdater, max_retries: int = 3
    ) -> UpdatePipeline:
        manager = MagicMock(spec=VersionManager)
        manager.detect_version_updates = AsyncMock(
            return_value=updates(update("react", "18.3.1", current="18.2.0"))
        )
        manager.last_skipped = {}
        config = PipelineConfig(max_retries=max_retries, retry_delay_seconds=0)
        return UpdatePipeline(manager, storage, updater, config)

    @pytest.mark.asyncio
    async def test_pipeline_rewrites_templates(
        self,
        seeded_storage: VersionStorage,
        updater: FileTemplateUpdater,
        template: Path,
    ) -> None:
        """Test that an applied run updates files and the store."""
        result = await self.pipeline(seeded_storage, updater).execute()

        assert result.outcome == PipelineOutcome.APPLIED
        assert result.affected_templates == [str(template)]
        assert '"react": "^18.3.1"' in (template / "package.json.tmpl").read_text()
        assert seeded_storage.get_version_info("react").current_version == "18.3.1"

    @pytest.mark.asyncio
    async def test_pipeline_rollback_restores_files(
        self,
        seeded_storage: VersionStorage,
        updater: FileTemplateUpdater,
        template: Path,
    ) -> None:
        """Test that a failed apply puts the template files back."""
        target = template / "package.json.tmpl"

        def corrupt(_updates: object) -> None:
            target.write_text('{"dependencies": ')
            raise OSError("disk full")

        with patch.object(updater, "_update_all", side_effect=corrupt):
            result = await self.pipeline(seeded_storage, updater, max_retries=1).execute()

        assert result.outcome == PipelineOutcome.ROLLED_BACK
        assert result.rollback_performed
        assert target.read_text() == PACKAGE_JSON
        assert seeded_storage.get_version_info("react").current_version == "18.2.0"

    @pytest.mark.asyncio
    async def test_pipeline_from_config_uses_file_updater(self, tmp_path: Path) -> None:
        """Test that from_config builds a file updater when none is given."""
        from versionkeeper.config import AppConfig

        config = AppConfig.model_validate(
            {
                "storage": {"path": str(tmp_path / "versions.yaml")},
                "templates": {
                    "directories": [str(tmp_path / "web")],
                    "backup_dir": str(tmp_path / "bk"),
                },
            }
        )

        pipeline = UpdatePipeline.from_config(config)

        assert isinstance(pipeline._templates, FileTemplateUpdater)
        assert pipeline._templates.backup_dir == tmp_path / "bk"
        await pipeline._manager.aclose()
