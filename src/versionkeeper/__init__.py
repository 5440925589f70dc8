"""
VersionKeeper - dependency version tracking for project templates.

This package tracks the versions of language runtimes, frameworks and packages
used by generated project templates, detects newer releases on upstream
registries, decides which updates are safe to apply and applies them with
backup and rollback.
"""

__version__ = "0.1.0"
