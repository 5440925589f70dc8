"""
Template updater interface.

The update pipeline never touches template files itself. It delegates to a
TemplateUpdater, which knows where templates live, which of them reference
a given package, and how to rewrite, back up, restore and validate them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence

from versionkeeper.models import VersionInfo


class TemplateUpdater(ABC):
    """
    Abstract base class for template updaters.

    Implementations signal failure by raising; the pipeline wraps the
    exception in a TemplateUpdateError.
    """

    @abstractmethod
    async def get_affected_templates(self, updates: Mapping[str, VersionInfo]) -> list[str]:
        """
        Return the template paths that reference any of the updated packages.

        Args:
            updates: Approved updates keyed by package name.
        """

    @abstractmethod
    async def backup_templates(self, paths: Sequence[str]) -> None:
        """Back up the given template paths so they can be restored later."""

    @abstractmethod
    async def restore_templates(self, paths: Sequence[str]) -> None:
        """Restore the given template paths from their backups."""

    @abstractmethod
    async def update_all_templates(self, updates: Mapping[str, VersionInfo]) -> None:
        """
        Rewrite every template to use the latest versions of the updates.

        Args:
            updates: Approved updates keyed by package name; each record's
                latest_version is the version to write.
        """

    @abstractmethod
    async def validate_template(self, path: str) -> None:
        """Validate one template, raising if it is invalid."""
