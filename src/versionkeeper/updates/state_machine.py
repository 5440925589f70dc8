"""
States of the update pipeline.

State machine states:
- idle: No run in progress
- detecting: Asking the manager for newer upstream versions
- analyzing: Classifying security updates and breaking changes
- approving: Applying the approval policy
- identifying: Asking the template updater which templates are affected
- backing_up: Backing up the version store and affected templates
- applying: Persisting versions and rewriting templates (with retries)
- rolling_back: Restoring backups after a failed apply
- validating: Validating the rewritten templates
- notifying: Emitting the run summary
- succeeded: Run finished successfully (terminal)
- failed: Run finished with an error (terminal)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum

from versionkeeper.errors import InvalidArgumentError
from versionkeeper.logging import get_logger

logger = get_logger(__name__)


class PipelineState(str, Enum):
    """
    States for the update pipeline.

    State transitions:
    - idle → detecting (run started)
    - detecting → analyzing (updates found)
    - detecting → succeeded (nothing to update)
    - analyzing → approving
    - approving → identifying (updates approved)
    - approving → succeeded (nothing approved)
    - identifying → backing_up (backups enabled)
    - identifying → applying (backups disabled)
    - backing_up → applying
    - applying → validating (apply succeeded)
    - applying → rolling_back (apply failed, backups available)
    - rolling_back → failed
    - validating → notifying (notifications enabled)
    - validating → succeeded
    - notifying → succeeded
    - any non-terminal state → failed
    - succeeded, failed → idle (reset for the next run)
    """

    IDLE = "idle"
    DETECTING = "detecting"
    ANALYZING = "analyzing"
    APPROVING = "approving"
    IDENTIFYING = "identifying"
    BACKING_UP = "backing_up"
    APPLYING = "applying"
    ROLLING_BACK = "rolling_back"
    VALIDATING = "validating"
    NOTIFYING = "notifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether the run has finished."""
        return self in (PipelineState.SUCCEEDED, PipelineState.FAILED)


# Valid state transitions
_VALID_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.IDLE: {PipelineState.DETECTING},
    PipelineState.DETECTING: {
        PipelineState.ANALYZING,
        PipelineState.SUCCEEDED,
        PipelineState.FAILED,
    },
    PipelineState.ANALYZING: {PipelineState.APPROVING, PipelineState.FAILED},
    PipelineState.APPROVING: {
        PipelineState.IDENTIFYING,
        PipelineState.SUCCEEDED,
        PipelineState.FAILED,
    },
    PipelineState.IDENTIFYING: {
        PipelineState.BACKING_UP,
        PipelineState.APPLYING,
        PipelineState.FAILED,
    },
    PipelineState.BACKING_UP: {PipelineState.APPLYING, PipelineState.FAILED},
    PipelineState.APPLYING: {
        PipelineState.VALIDATING,
        PipelineState.ROLLING_BACK,
        PipelineState.FAILED,
    },
    PipelineState.ROLLING_BACK: {PipelineState.FAILED},
    PipelineState.VALIDATING: {
        PipelineState.NOTIFYING,
        PipelineState.SUCCEEDED,
        PipelineState.FAILED,
    },
    PipelineState.NOTIFYING: {PipelineState.SUCCEEDED, PipelineState.FAILED},
    PipelineState.SUCCEEDED: {PipelineState.IDLE},
    PipelineState.FAILED: {PipelineState.IDLE},
}


class PipelineStateMachine:
    """
    Tracks the state of one pipeline and enforces legal transitions.

    Attributes:
        state: Current state.
        history: (state, timestamp) pairs of the current run.
    """

    def __init__(self) -> None:
        self._state = PipelineState.IDLE
        self._history: list[tuple[PipelineState, datetime]] = []
        self._callbacks: list[Callable[[PipelineState, PipelineState], None]] = []

    @property
    def state(self) -> PipelineState:
        """Get the current state."""
        return self._state

    @property
    def history(self) -> list[tuple[PipelineState, datetime]]:
        """Get the states visited by the current run."""
        return list(self._history)

    def add_transition_callback(
        self, callback: Callable[[PipelineState, PipelineState], None]
    ) -> None:
        """Add a callback invoked with (old_state, new_state) on each transition."""
        self._callbacks.append(callback)

    def can_transition_to(self, new_state: PipelineState) -> bool:
        """Check whether a transition is legal from the current state."""
        return new_state in _VALID_TRANSITIONS.get(self._state, set())

    def transition_to(self, new_state: PipelineState) -> None:
        """
        Transition to a new state.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self._state

        if not self.can_transition_to(new_state):
            raise InvalidArgumentError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ),
                },
            )

        logger.info(
            f"Pipeline state: {current.value} -> {new_state.value}",
            extra={"old_state": current.value, "new_state": new_state.value},
        )

        self._state = new_state
        self._history.append((new_state, datetime.now(UTC)))

        for callback in self._callbacks:
            try:
                callback(current, new_state)
            except Exception as e:
                logger.warning(f"State transition callback failed: {e}")

    def reset(self) -> None:
        """Return to idle, starting a fresh history."""
        if self._state.is_terminal:
            self.transition_to(PipelineState.IDLE)
        elif self._state is not PipelineState.IDLE:
            raise InvalidArgumentError(
                f"Cannot reset while in {self._state.value} state",
                details={"current_state": self._state.value},
            )
        self._history = [(PipelineState.IDLE, datetime.now(UTC))]
