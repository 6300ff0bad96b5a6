"""
Stage tracking for a single migration.

State transitions:
- not_started → archived (installation moved to the backup slot)
- archived → extracted (new release unpacked)
- extracted → migrating (content restore started)
- migrating → completed (restore finished, backup slot handed to cleanup)
- archived / extracted / migrating → rolled_back (backup slot restored)
- archived / extracted / migrating → fatal (restoring the backup slot failed)

Completed, rolled_back and fatal are terminal. The machine holds no
persistent state: the backup slot on disk is the only record a migration
leaves behind.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from phoenix_updater.errors import InternalError
from phoenix_updater.logging import get_logger

logger = get_logger(__name__)


class MigrationStage(str, Enum):
    """Stages of a migration after the download finished."""

    NOT_STARTED = "not_started"
    ARCHIVED = "archived"
    EXTRACTED = "extracted"
    MIGRATING = "migrating"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FATAL = "fatal"


_FAILURE_EDGES = {MigrationStage.ROLLED_BACK, MigrationStage.FATAL}

# Valid state transitions
_VALID_TRANSITIONS: dict[MigrationStage, set[MigrationStage]] = {
    MigrationStage.NOT_STARTED: {MigrationStage.ARCHIVED},
    MigrationStage.ARCHIVED: {MigrationStage.EXTRACTED} | _FAILURE_EDGES,
    MigrationStage.EXTRACTED: {MigrationStage.MIGRATING} | _FAILURE_EDGES,
    MigrationStage.MIGRATING: {MigrationStage.COMPLETED} | _FAILURE_EDGES,
    MigrationStage.COMPLETED: set(),
    MigrationStage.ROLLED_BACK: set(),
    MigrationStage.FATAL: set(),
}


class MigrationStateMachine:
    """
    Validates stage transitions of one migration.

    Attributes:
        stage: Current stage.
        history: ``(stage, timestamp)`` pairs in transition order.
    """

    def __init__(self) -> None:
        self._stage = MigrationStage.NOT_STARTED
        self.history: list[tuple[MigrationStage, datetime]] = [
            (self._stage, datetime.now(UTC))
        ]

    @property
    def stage(self) -> MigrationStage:
        """Current stage."""
        return self._stage

    @property
    def is_terminal(self) -> bool:
        return not _VALID_TRANSITIONS[self._stage]

    @property
    def requires_rollback(self) -> bool:
        """Whether a failure now must restore the backup slot."""
        return MigrationStage.ROLLED_BACK in _VALID_TRANSITIONS[self._stage]

    def transition_to(self, new_stage: MigrationStage) -> None:
        """
        Move to ``new_stage``.

        Raises:
            InternalError: If the transition is not valid.
        """
        current = self._stage
        allowed = _VALID_TRANSITIONS[current]

        if new_stage not in allowed:
            raise InternalError(
                f"Invalid stage transition from {current.value} to {new_stage.value}",
                details={
                    "current_stage": current.value,
                    "target_stage": new_stage.value,
                    "valid_transitions": sorted(s.value for s in allowed),
                },
            )

        self._stage = new_stage
        self.history.append((new_stage, datetime.now(UTC)))
        logger.debug(f"Migration stage: {current.value} -> {new_stage.value}")
