"""
Pytest configuration for the VersionKeeper tests.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from versionkeeper.models import VersionInfo, VersionKind
from versionkeeper.storage import VersionStorage

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "slow: marks tests that wait on the background cache saver",
    )


@pytest.fixture
def storage(tmp_path: Path) -> VersionStorage:
    """A YAML version store in a temporary directory."""
    return VersionStorage(tmp_path / "versions.yaml")


@pytest.fixture
def seeded_storage(storage: VersionStorage) -> VersionStorage:
    """A version store tracking a few packages of each kind."""
    storage.set_version_info(
        VersionInfo(name="react", language="javascript", current_version="18.2.0")
    )
    storage.set_version_info(
        VersionInfo(
            name="next",
            language="javascript",
            kind=VersionKind.FRAMEWORK,
            current_version="14.1.0",
        )
    )
    storage.set_version_info(
        VersionInfo(
            name="golang/go",
            language="go",
            kind=VersionKind.LANGUAGE,
            current_version="1.21.0",
            latest_version="1.22.0",
        )
    )
    return storage
