"""
Filesystem template updater.

FileTemplateUpdater rewrites project templates kept as directories on disk.
Three kinds of dependency files are understood, with or without a ".tmpl"
suffix:

- package.json: dependency, devDependency and engines versions
- go.mod: the go directive and require lines
- Dockerfile: FROM lines of runtime base images

Language records are matched through their runtime names, so an update of
"golang/go" rewrites the go directive and golang base images, and an update
of "nodejs/node" rewrites engines.node and node base images.

A template is affected when rewriting it with the approved updates would
change at least one of its files.
"""

from __future__ import annotations

import asyncio
import functools
import json
import re
import shutil
import stat
from collections.abc import Callable, Iterator, Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from versionkeeper.errors import PersistenceError, TemplateUpdateError
from versionkeeper.logging import get_logger
from versionkeeper.models import VersionInfo
from versionkeeper.storage import atomic_write_text
from versionkeeper.updates.templates import TemplateUpdater

if TYPE_CHECKING:
    from versionkeeper.config import TemplatesConfig

logger = get_logger(__name__)

Updates = Mapping[str, VersionInfo]
Rewriter = Callable[[str, Updates], str]

GO_TOOLCHAIN = "golang/go"

# package.json keys of language runtimes
ENGINE_NAMES = {"nodejs/node": "node"}

# Docker base images of language runtimes
BASE_IMAGES = {
    "nodejs/node": "node",
    "golang/go": "golang",
    "python/cpython": "python",
    "rust-lang/rust": "rust",
}

SKIPPED_DIRS = frozenset({".git", "node_modules", "vendor"})

_GO_DIRECTIVE = re.compile(r"^(go[ \t]+)\d+\.\d+(?:\.\d+)?([ \t]*)$", re.MULTILINE)


def _bare(version: str) -> str:
    """Strip a leading "v" from a version string."""
    return version[1:] if version.startswith("v") else version


def _targets(updates: Updates) -> Iterator[tuple[str, str]]:
    """Yield (name, bare latest version) for updates that carry a version."""
    for name, info in updates.items():
        if info.latest_version:
            yield name, _bare(info.latest_version)


# =============================================================================
# Rewriters
# =============================================================================


def rewrite_package_json(content: str, updates: Updates) -> str:
    """
    Point package.json entries at the latest versions.

    Range operators (^, ~, >=) are kept. Entries whose value does not start
    with a digit after the operator ("latest", "workspace:*") are left alone.
    """
    for name, version in _targets(updates):
        key = ENGINE_NAMES.get(name, name)
        pattern = re.compile(r'("' + re.escape(key) + r'"\s*:\s*"[\^~>=<\s]*)\d[^"]*(")')
        content = pattern.sub(lambda m: f"{m[1]}{version}{m[2]}", content)
    return content


def rewrite_go_mod(content: str, updates: Updates) -> str:
    """Update the go directive and require lines of a go.mod file."""
    for name, version in _targets(updates):
        if name == GO_TOOLCHAIN:
            content = _GO_DIRECTIVE.sub(lambda m: f"{m[1]}{version}{m[2]}", content)
            continue
        pattern = re.compile(
            r"^([ \t]*(?:require[ \t]+)?" + re.escape(name) + r"[ \t]+)v\S+", re.MULTILINE
        )
        content = pattern.sub(lambda m: f"{m[1]}v{version}", content)
    return content


def rewrite_dockerfile(content: str, updates: Updates) -> str:
    """
    Update the tags of runtime base images.

    Only the numeric part of a tag changes, so "node:18-alpine" becomes
    "node:20.11.1-alpine".
    """
    for name, version in _targets(updates):
        image = BASE_IMAGES.get(name)
        if image is None:
            continue
        pattern = re.compile(
            r"^(FROM\s+(?:--platform=\S+\s+)?" + re.escape(image) + r":)\d[\w.]*",
            re.MULTILINE | re.IGNORECASE,
        )
        content = pattern.sub(lambda m: f"{m[1]}{version}", content)
    return content


def rewriter_for(path: Path) -> Rewriter | None:
    """Return the rewriter for a template file, or None if it is not handled."""
    name = path.name.removesuffix(".tmpl")
    if name == "package.json":
        return rewrite_package_json
    if name == "go.mod":
        return rewrite_go_mod
    if name == "Dockerfile" or name.startswith("Dockerfile."):
        return rewrite_dockerfile
    return None


# =============================================================================
# Updater
# =============================================================================


class FileTemplateUpdater(TemplateUpdater):
    """
    Template updater over template directories on disk.

    Template paths handed to and returned from the pipeline are the template
    root directories, as strings.

    Args:
        template_dirs: Template root directories. Missing ones are skipped.
        backup_dir: Directory receiving template backups.
    """

    def __init__(self, template_dirs: Sequence[Path | str], backup_dir: Path | str) -> None:
        self._template_dirs = [Path(d) for d in template_dirs]
        self._backup_dir = Path(backup_dir)
        self._backups: dict[str, Path] = {}

    @classmethod
    def from_config(cls, config: TemplatesConfig) -> FileTemplateUpdater:
        """Create an updater from template configuration."""
        return cls(config.directories, config.backup_dir)

    @property
    def template_dirs(self) -> list[Path]:
        """Return the configured template directories."""
        return list(self._template_dirs)

    @property
    def backup_dir(self) -> Path:
        """Return the backup directory."""
        return self._backup_dir

    def latest_backup(self, path: str) -> Path | None:
        """Return the most recent backup taken of a template in this process."""
        return self._backups.get(str(Path(path)))

    # =========================================================================
    # TemplateUpdater interface
    # =========================================================================

    async def get_affected_templates(self, updates: Updates) -> list[str]:
        return await self._in_executor(self._find_affected, updates)

    async def backup_templates(self, paths: Sequence[str]) -> None:
        await self._in_executor(self._backup, list(paths))

    async def restore_templates(self, paths: Sequence[str]) -> None:
        await self._in_executor(self._restore, list(paths))

    async def update_all_templates(self, updates: Updates) -> None:
        await self._in_executor(self._update_all, updates)

    async def validate_template(self, path: str) -> None:
        await self._in_executor(self._validate, path)

    @staticmethod
    async def _in_executor(func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.get_event_loop().run_in_executor(
            None, functools.partial(func, *args)
        )

    # =========================================================================
    # Blocking implementations
    # =========================================================================

    def _existing_dirs(self) -> Iterator[Path]:
        for root in self._template_dirs:
            if root.is_dir():
                yield root
            else:
                logger.warning(
                    f"Template directory not found: {root}", extra={"template": str(root)}
                )

    @staticmethod
    def _template_files(root: Path) -> Iterator[tuple[Path, Rewriter]]:
        for path in sorted(root.rglob("*")):
            if not path.is_file() or SKIPPED_DIRS.intersection(path.relative_to(root).parts):
                continue
            rewriter = rewriter_for(path)
            if rewriter is not None:
                yield path, rewriter

    @staticmethod
    def _read(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise TemplateUpdateError(
                f"Failed to read template file {path}: {e}", details={"path": str(path)}
            ) from e

    def _find_affected(self, updates: Updates) -> list[str]:
        affected: list[str] = []
        for root in self._existing_dirs():
            for path, rewriter in self._template_files(root):
                content = self._read(path)
                if rewriter(content, updates) != content:
                    affected.append(str(root))
                    break
        logger.info(
            f"{len(affected)} templates affected by {len(updates)} updates",
            extra={"templates": affected},
        )
        return affected

    def _backup(self, paths: list[str]) -> None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        try:
            self._backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TemplateUpdateError(
                f"Failed to create template backup directory: {e}",
                details={"path": str(self._backup_dir)},
            ) from e

        for path in paths:
            source = Path(path)
            if not source.is_dir():
                raise TemplateUpdateError(
                    f"Template directory does not exist: {source}",
                    details={"path": path},
                )

            target = self._backup_dir / f"{source.name}_backup_{timestamp}"
            counter = 1
            while target.exists():
                target = self._backup_dir / f"{source.name}_backup_{timestamp}_{counter}"
                counter += 1

            try:
                shutil.copytree(source, target)
            except OSError as e:
                raise TemplateUpdateError(
                    f"Failed to back up template {source}: {e}",
                    details={"path": path, "target": str(target)},
                ) from e

            self._backups[str(source)] = target
            logger.info(
                "Created template backup", extra={"template": path, "backup": str(target)}
            )

    def _restore(self, paths: list[str]) -> None:
        for path in paths:
            target = Path(path)
            backup = self._backups.get(str(target))
            if backup is None or not backup.is_dir():
                raise TemplateUpdateError(
                    f"No backup recorded for template {target}", details={"path": path}
                )

            try:
                if target.exists():
                    shutil.rmtree(target)
                shutil.copytree(backup, target)
            except OSError as e:
                raise TemplateUpdateError(
                    f"Failed to restore template {target}: {e}",
                    details={"path": path, "backup": str(backup)},
                ) from e

            logger.info("Restored template", extra={"template": path, "backup": str(backup)})

    def _update_all(self, updates: Updates) -> None:
        changed = 0
        for root in self._existing_dirs():
            for path, rewriter in self._template_files(root):
                content = self._read(path)
                updated = rewriter(content, updates)
                if updated == content:
                    continue
                try:
                    mode = stat.S_IMODE(path.stat().st_mode)
                    atomic_write_text(path, updated)
                    path.chmod(mode)
                except (OSError, PersistenceError) as e:
                    raise TemplateUpdateError(
                        f"Failed to write template file {path}: {e}",
                        details={"path": str(path)},
                    ) from e
                changed += 1
                logger.info("Updated template file", extra={"path": str(path)})

        logger.info(f"Rewrote {changed} template files", extra={"updates": sorted(updates)})

    def _validate(self, path: str) -> None:
        root = Path(path)
        if not root.is_dir():
            raise TemplateUpdateError(
                f"Template directory does not exist: {root}", details={"path": path}
            )

        for file in sorted(root.rglob("package.json")):
            if SKIPPED_DIRS.intersection(file.relative_to(root).parts):
                continue
            try:
                json.loads(self._read(file))
            except ValueError as e:
                raise TemplateUpdateError(
                    f"Invalid JSON in {file}: {e}", details={"path": str(file)}
                ) from e

        for file in sorted(root.rglob("go.mod")):
            if not re.search(r"^module\s+\S+", self._read(file), re.MULTILINE):
                raise TemplateUpdateError(
                    f"Missing module directive in {file}", details={"path": str(file)}
                )
