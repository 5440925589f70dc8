"""
Configuration management for VersionKeeper.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (explicit path or ./versionkeeper.yml)
3. Environment variables (VERSIONKEEPER_* prefix, __ for nesting)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from versionkeeper.models import UpdatePolicy

DEFAULT_CONFIG_PATH = Path("versionkeeper.yml")
DEFAULT_ENV_PREFIX = "VERSIONKEEPER_"

# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Whether to emit JSON log lines.
    """

    level: str = Field(
        default="info",
        description="Log level",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit one JSON object per log line",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"debug", "info", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        return v_lower


# =============================================================================
# Storage and Cache Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Version store configuration.

    Attributes:
        path: Path of the persisted version store file.
        format: Serialization format ('yaml' or 'json').
    """

    path: str = Field(
        default="versions.yaml",
        description="Path of the persisted version store file",
    )
    format: str = Field(
        default="yaml",
        description="Serialization format: 'yaml' or 'json'",
    )

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate storage format."""
        valid_formats = {"yaml", "json"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(
                f"Invalid storage format: {v}. Must be one of: {', '.join(sorted(valid_formats))}"
            )
        return v_lower


class CacheConfig(BaseModel):
    """Version cache configuration.

    Attributes:
        backend: Cache backend ('memory' or 'file').
        directory: Directory holding version_cache.json (file backend only).
        ttl_seconds: Entry time-to-live; non-positive means 24 hours.
        save_interval_seconds: Periodic save interval of the file backend.
        debounce_seconds: Quiet period before a signalled save is written.
    """

    backend: str = Field(
        default="memory",
        description="Cache backend: 'memory' or 'file'",
    )
    directory: str = Field(
        default=".versionkeeper-cache",
        description="Directory holding version_cache.json",
    )
    ttl_seconds: float = Field(
        default=86400,
        description="Entry time-to-live in seconds",
    )
    save_interval_seconds: float = Field(
        default=30,
        gt=0,
        description="Periodic save interval in seconds",
    )
    debounce_seconds: float = Field(
        default=0.1,
        ge=0,
        description="Quiet period before a signalled save is written",
    )

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate cache backend."""
        valid_backends = {"memory", "file"}
        v_lower = v.lower()
        if v_lower not in valid_backends:
            raise ValueError(
                f"Invalid cache backend: {v}. Must be one of: {', '.join(sorted(valid_backends))}"
            )
        return v_lower


# =============================================================================
# Registry Configuration
# =============================================================================


class RegistriesConfig(BaseModel):
    """Upstream registry configuration.

    Attributes:
        enabled: Registries to activate, by name.
        npm_url: NPM registry base URL.
        go_proxy_url: Go module proxy base URL.
        github_api_url: GitHub REST API base URL.
        github_token: Optional GitHub API token.
        osv_url: OSV vulnerability query endpoint.
        timeout_seconds: Timeout for version lookups.
        vulnerability_timeout_seconds: Timeout for vulnerability lookups.
    """

    enabled: list[str] = Field(
        default_factory=lambda: ["npm", "go", "github"],
        description="Registries to activate",
    )
    npm_url: str = Field(
        default="https://registry.npmjs.org",
        description="NPM registry base URL",
    )
    go_proxy_url: str = Field(
        default="https://proxy.golang.org",
        description="Go module proxy base URL",
    )
    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL",
    )
    github_token: str | None = Field(
        default=None,
        description="Optional GitHub API token",
    )
    osv_url: str = Field(
        default="https://api.osv.dev/v1/query",
        description="OSV vulnerability query endpoint",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for version lookups in seconds",
    )
    vulnerability_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for vulnerability lookups in seconds",
    )

    @field_validator("enabled", mode="before")
    @classmethod
    def validate_enabled(cls, v: Any) -> Any:
        """Accept a single registry name from the environment."""
        if isinstance(v, str):
            return [v]
        return v


# =============================================================================
# Pipeline Configuration
# =============================================================================


class PipelineConfig(BaseModel):
    """Update pipeline configuration.

    Attributes:
        auto_update: Approve ordinary updates automatically.
        security_priority: Always approve updates that fix vulnerabilities.
        breaking_change_approval: Hold back breaking changes for manual review.
        backup_enabled: Back up affected templates before applying.
        rollback_on_failure: Restore backups when applying fails.
        update_schedule: Informational schedule label.
        max_retries: Apply attempts before giving up.
        retry_delay_seconds: Delay between apply attempts.
        notification_enabled: Emit a summary when the run finishes.
    """

    auto_update: bool = Field(default=True, description="Approve ordinary updates")
    security_priority: bool = Field(
        default=True, description="Always approve security updates"
    )
    breaking_change_approval: bool = Field(
        default=True, description="Require manual approval for breaking changes"
    )
    backup_enabled: bool = Field(default=True, description="Back up before applying")
    rollback_on_failure: bool = Field(
        default=True, description="Restore backups when applying fails"
    )
    update_schedule: str = Field(default="daily", description="Update schedule")
    max_retries: int = Field(default=3, ge=1, description="Apply attempts")
    retry_delay_seconds: float = Field(
        default=300, ge=0, description="Delay between apply attempts in seconds"
    )
    notification_enabled: bool = Field(
        default=True, description="Emit a summary notification"
    )

    @classmethod
    def from_policy(cls, policy: UpdatePolicy, **overrides: Any) -> PipelineConfig:
        """
        Build a pipeline configuration from a stored update policy.

        Args:
            policy: Policy persisted in the version store.
            **overrides: Additional fields that take precedence.

        Returns:
            PipelineConfig with the policy's approval flags.
        """
        values: dict[str, Any] = {
            "auto_update": policy.auto_update,
            "security_priority": policy.security_priority,
            "breaking_change_approval": policy.breaking_change_approval,
            "update_schedule": policy.update_schedule,
        }
        values.update(overrides)
        return cls(**values)


# =============================================================================
# Template Configuration
# =============================================================================


class TemplatesConfig(BaseModel):
    """Project template configuration.

    Attributes:
        directories: Template root directories rewritten by updates.
        backup_dir: Directory receiving template backups.
    """

    directories: list[str] = Field(
        default_factory=list,
        description="Template root directories",
    )
    backup_dir: str = Field(
        default="template_backups",
        description="Directory receiving template backups",
    )

    @field_validator("directories", mode="before")
    @classmethod
    def validate_directories(cls, v: Any) -> Any:
        """Accept a single directory from the environment."""
        if isinstance(v, str):
            return [v]
        return v


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        logging: Logging configuration.
        storage: Version store configuration.
        cache: Version cache configuration.
        registries: Upstream registry configuration.
        pipeline: Update pipeline configuration.
        templates: Project template configuration.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Version store configuration",
    )
    cache: CacheConfig = Field(
        default_factory=CacheConfig,
        description="Version cache configuration",
    )
    registries: RegistriesConfig = Field(
        default_factory=RegistriesConfig,
        description="Upstream registry configuration",
    )
    pipeline: PipelineConfig = Field(
        default_factory=PipelineConfig,
        description="Update pipeline configuration",
    )
    templates: TemplatesConfig = Field(
        default_factory=TemplatesConfig,
        description="Project template configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to the appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    VERSIONKEEPER_PIPELINE__MAX_RETRIES=5.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to a YAML configuration file. If None, uses
            ./versionkeeper.yml when it exists.
        env_prefix: Prefix for environment variables.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config("versionkeeper.yml")
        >>> config.storage.format
        'yaml'
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    return AppConfig(**config_dict)
