"""
Update pipeline.

UpdatePipeline drives one update run through its states:

    detect → analyze → approve → identify templates → backup → apply
    → validate → notify

Apply is retried up to max_retries times. When the final attempt fails and
backups were taken, the templates and the version store are restored from
them. execute() always returns a PipelineResult; failures are recorded on
the result instead of being raised.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from versionkeeper.config import PipelineConfig
from versionkeeper.errors import (
    FailedPreconditionError,
    PipelineCancelledError,
    TemplateUpdateError,
    VersionKeeperError,
)
from versionkeeper.logging import get_logger
from versionkeeper.manager import VersionManager, applied_version_info
from versionkeeper.models import VersionInfo
from versionkeeper.semver import is_breaking_change
from versionkeeper.storage import VersionStorage
from versionkeeper.updates.file_updater import FileTemplateUpdater
from versionkeeper.updates.state_machine import PipelineState, PipelineStateMachine
from versionkeeper.updates.templates import TemplateUpdater

if TYPE_CHECKING:
    from versionkeeper.config import AppConfig

logger = get_logger(__name__)


class PipelineOutcome(str, Enum):
    """How a pipeline run ended."""

    NO_OP = "no_op"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class PipelineResult(BaseModel):
    """
    Result of one UpdatePipeline.execute() call.

    Counts are filled in as the run progresses, so a failed run still shows
    how far it got.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool = False
    outcome: PipelineOutcome = PipelineOutcome.FAILED
    start_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    duration: float = Field(default=0.0, description="Run duration in seconds")
    updates_detected: int = 0
    updates_applied: int = 0
    templates_updated: int = 0
    security_updates: int = 0
    breaking_changes: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    updated_versions: dict[str, str] = Field(
        default_factory=dict, description="Package name to newly applied version"
    )
    affected_templates: list[str] = Field(default_factory=list)
    backup_paths: list[str] = Field(
        default_factory=list, description="Template paths that were backed up"
    )
    store_backup: str | None = Field(
        default=None, description="Backup of the version store taken before apply"
    )
    rollback_performed: bool = False
    error: VersionKeeperError | None = Field(default=None, exclude=True)

    def summary(self) -> dict[str, Any]:
        """Return the fields worth logging for a finished run."""
        return {
            "outcome": self.outcome.value,
            "success": self.success,
            "duration": round(self.duration, 3),
            "updates_detected": self.updates_detected,
            "updates_applied": self.updates_applied,
            "security_updates": self.security_updates,
            "breaking_changes": self.breaking_changes,
            "templates_updated": self.templates_updated,
            "rollback_performed": self.rollback_performed,
            "errors": len(self.errors),
            "warnings": len(self.warnings),
        }


NotificationCallback = Callable[[PipelineResult], None]


class UpdatePipeline:
    """
    Orchestrates detection, approval and application of version updates.

    Args:
        manager: Version manager used for detection.
        storage: Version store that approved versions are written to.
        template_updater: Collaborator that rewrites templates.
        config: Approval, backup, retry and notification settings.
    """

    def __init__(
        self,
        manager: VersionManager,
        storage: VersionStorage,
        template_updater: TemplateUpdater,
        config: PipelineConfig | None = None,
    ) -> None:
        self._manager = manager
        self._storage = storage
        self._templates = template_updater
        self._config = config or PipelineConfig()
        self._machine = PipelineStateMachine()
        self._callbacks: list[NotificationCallback] = []
        self._running = False

    @classmethod
    def from_config(
        cls, config: AppConfig, template_updater: TemplateUpdater | None = None
    ) -> UpdatePipeline:
        """
        Create a pipeline and its manager from application configuration.

        Without an explicit updater, templates are rewritten on disk by a
        FileTemplateUpdater over the configured template directories.
        """
        manager = VersionManager.from_config(config)
        if template_updater is None:
            template_updater = FileTemplateUpdater.from_config(config.templates)
        return cls(
            manager=manager,
            storage=manager.storage,
            template_updater=template_updater,
            config=config.pipeline,
        )

    @property
    def state(self) -> PipelineState:
        """Get the current pipeline state."""
        return self._machine.state

    @property
    def state_machine(self) -> PipelineStateMachine:
        """Get the underlying state machine."""
        return self._machine

    @property
    def config(self) -> PipelineConfig:
        """Get the pipeline configuration."""
        return self._config

    def add_notification_callback(self, callback: NotificationCallback) -> None:
        """Add a callback that receives the result of every finished run."""
        self._callbacks.append(callback)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, cancel_event: asyncio.Event | None = None) -> PipelineResult:
        """
        Run the pipeline once.

        Args:
            cancel_event: Optional event; setting it cancels the run at the
                next step boundary or during the retry delay.

        Returns:
            PipelineResult describing the run. Never raises.
        """
        result = PipelineResult()

        if self._running:
            error = FailedPreconditionError(
                "Update pipeline is already running",
                details={"current_state": self.state.value},
            )
            result.errors.append(error.message)
            result.error = error
            self._finish(result)
            return result

        self._running = True
        try:
            self._machine.reset()
            await self._run(result, cancel_event)
        except Exception as e:
            self._fail(result, e)
        finally:
            self._running = False

        self._finish(result)
        if self._config.notification_enabled:
            self._notify(result)
        return result

    async def _run(self, result: PipelineResult, cancel_event: asyncio.Event | None) -> None:
        # Step 1: Detect
        self._machine.transition_to(PipelineState.DETECTING)
        updates = await self._manager.detect_version_updates()
        result.updates_detected = len(updates)
        for package, reason in self._manager.last_skipped.items():
            result.warnings.append(f"{package}: skipped during detection ({reason})")

        if not updates:
            logger.info("No version updates detected")
            self._succeed(result, PipelineOutcome.NO_OP)
            return
        self._check_cancelled(cancel_event)

        # Step 2: Analyze
        self._machine.transition_to(PipelineState.ANALYZING)
        security = {name for name, info in updates.items() if not info.is_secure}
        breaking = {
            name
            for name, info in updates.items()
            if is_breaking_change(info.current_version, info.latest_version)
        }
        result.security_updates = len(security)
        result.breaking_changes = len(breaking)
        self._check_cancelled(cancel_event)

        # Step 3: Approve
        self._machine.transition_to(PipelineState.APPROVING)
        approved = self._approve(updates, security, breaking, result)

        if not approved:
            logger.info("No updates approved", extra={"detected": len(updates)})
            self._succeed(result, PipelineOutcome.NO_OP)
            return
        self._check_cancelled(cancel_event)

        # Step 4: Identify affected templates
        self._machine.transition_to(PipelineState.IDENTIFYING)
        affected = await self._call_templates(
            "identify affected templates", self._templates.get_affected_templates, approved
        )
        result.affected_templates = list(affected)
        self._check_cancelled(cancel_event)

        # Step 5: Backup
        if self._config.backup_enabled:
            self._machine.transition_to(PipelineState.BACKING_UP)
            await self._backup(result)
            self._check_cancelled(cancel_event)

        # Step 6: Apply
        self._machine.transition_to(PipelineState.APPLYING)
        await self._apply(approved, result, cancel_event)

        # Step 7: Validate
        self._machine.transition_to(PipelineState.VALIDATING)
        for path in result.affected_templates:
            try:
                await self._templates.validate_template(path)
            except Exception as e:
                logger.warning(
                    f"Template validation failed for {path}: {e}",
                    extra={"template": path},
                )
                result.warnings.append(f"{path}: validation failed ({e})")

        # Step 8: Notify
        if self._config.notification_enabled:
            self._machine.transition_to(PipelineState.NOTIFYING)

        self._succeed(result, PipelineOutcome.APPLIED)

    def _approve(
        self,
        updates: Mapping[str, VersionInfo],
        security: set[str],
        breaking: set[str],
        result: PipelineResult,
    ) -> dict[str, VersionInfo]:
        approved: dict[str, VersionInfo] = {}

        for name, info in updates.items():
            if name in security and self._config.security_priority:
                approved[name] = info
            elif name in breaking and self._config.breaking_change_approval:
                logger.info(
                    f"Breaking change for {name} requires manual approval",
                    extra={
                        "package": name,
                        "current": info.current_version,
                        "latest": info.latest_version,
                    },
                )
                result.warnings.append(
                    f"{name}: breaking change {info.current_version} -> "
                    f"{info.latest_version} requires manual approval"
                )
            elif self._config.auto_update:
                approved[name] = info
            else:
                result.warnings.append(f"{name}: automatic updates are disabled")

        return approved

    async def _backup(self, result: PipelineResult) -> None:
        try:
            result.store_backup = str(self._storage.backup())
            if result.affected_templates:
                await self._call_templates(
                    "back up templates",
                    self._templates.backup_templates,
                    result.affected_templates,
                )
                result.backup_paths = list(result.affected_templates)
        except VersionKeeperError as e:
            if self._config.rollback_on_failure:
                raise
            logger.warning(f"Backup failed, continuing without rollback: {e.message}")
            result.warnings.append(f"backup failed: {e.message}")

    async def _apply(
        self,
        approved: Mapping[str, VersionInfo],
        result: PipelineResult,
        cancel_event: asyncio.Event | None,
    ) -> None:
        max_retries = self._config.max_retries
        last_error: VersionKeeperError | None = None

        for attempt in range(1, max_retries + 1):
            if self._is_cancelled(cancel_event):
                last_error = PipelineCancelledError(
                    "Update pipeline cancelled during apply", details={"attempt": attempt}
                )
                if attempt == 1:
                    raise last_error
                break

            try:
                now = datetime.now(UTC)
                for info in approved.values():
                    self._storage.set_version_info(applied_version_info(info, now))
                await self._call_templates(
                    "update templates", self._templates.update_all_templates, approved
                )
            except VersionKeeperError as e:
                last_error = e
                logger.warning(
                    f"Apply attempt {attempt}/{max_retries} failed: {e.message}",
                    extra={"attempt": attempt, "error_code": e.error_code},
                )
                if attempt < max_retries:
                    await self._sleep(self._config.retry_delay_seconds, cancel_event)
                continue

            result.updates_applied = len(approved)
            result.templates_updated = len(result.affected_templates)
            result.updated_versions = {
                name: info.latest_version for name, info in approved.items()
            }
            logger.info(
                f"Applied {len(approved)} updates",
                extra={"attempt": attempt, "packages": sorted(approved)},
            )
            return

        if last_error is None:
            raise FailedPreconditionError(
                "No apply attempt was made", details={"max_retries": max_retries}
            )
        if self._config.rollback_on_failure and (result.store_backup or result.backup_paths):
            self._machine.transition_to(PipelineState.ROLLING_BACK)
            await self._rollback(result)
        raise last_error

    async def _rollback(self, result: PipelineResult) -> None:
        try:
            if result.backup_paths:
                await self._call_templates(
                    "restore templates",
                    self._templates.restore_templates,
                    result.backup_paths,
                )
            if result.store_backup:
                self._storage.restore(Path(result.store_backup))
        except VersionKeeperError as e:
            logger.error(f"Rollback failed: {e.message}", extra={"error_code": e.error_code})
            result.errors.append(f"rollback failed: {e.message}")
            return

        result.rollback_performed = True
        logger.info(
            "Rollback completed",
            extra={"templates": len(result.backup_paths), "store": result.store_backup},
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    async def _call_templates(
        action: str, func: Callable[[Any], Awaitable[Any]], argument: Any
    ) -> Any:
        """Call the template updater, wrapping its failures in TemplateUpdateError."""
        try:
            return await func(argument)
        except VersionKeeperError:
            raise
        except Exception as e:
            raise TemplateUpdateError(
                f"Failed to {action}: {e}", details={"action": action}
            ) from e

    @staticmethod
    def _is_cancelled(cancel_event: asyncio.Event | None) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def _check_cancelled(self, cancel_event: asyncio.Event | None) -> None:
        if self._is_cancelled(cancel_event):
            raise PipelineCancelledError(
                f"Update pipeline cancelled while {self.state.value}",
                details={"state": self.state.value},
            )

    @staticmethod
    async def _sleep(delay: float, cancel_event: asyncio.Event | None) -> None:
        """Wait for delay seconds, returning early if the run is cancelled."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except TimeoutError:
            pass

    def _succeed(self, result: PipelineResult, outcome: PipelineOutcome) -> None:
        self._machine.transition_to(PipelineState.SUCCEEDED)
        result.success = True
        result.outcome = outcome

    def _fail(self, result: PipelineResult, error: Exception) -> None:
        if not isinstance(error, VersionKeeperError):
            logger.exception(f"Update pipeline failed unexpectedly: {error}")
            error = VersionKeeperError(
                error_code="internal", message=str(error), details={"type": type(error).__name__}
            )
        else:
            logger.error(
                f"Update pipeline failed: {error.message}",
                extra={"error_code": error.error_code, "state": self.state.value},
            )

        if self._machine.can_transition_to(PipelineState.FAILED):
            self._machine.transition_to(PipelineState.FAILED)
        result.success = False
        result.outcome = (
            PipelineOutcome.ROLLED_BACK if result.rollback_performed else PipelineOutcome.FAILED
        )
        result.errors.append(error.message)
        result.error = error

    @staticmethod
    def _finish(result: PipelineResult) -> None:
        result.end_time = datetime.now(UTC)
        result.duration = (result.end_time - result.start_time).total_seconds()

    def _notify(self, result: PipelineResult) -> None:
        logger.info("Update pipeline finished", extra=result.summary())
        for callback in self._callbacks:
            try:
                callback(result)
            except Exception as e:
                logger.warning(f"Notification callback failed: {e}")
