"""Job state machine for managing rip job state transitions.

Centralizes transition validation, logging and broadcasting. Every accepted
transition is written through the registry and published exactly once.
"""

import logging
from datetime import datetime, timezone

from reelix.models import JobSnapshot, JobState
from reelix.services.event_broadcaster import EventBroadcaster
from reelix.services.job_registry import JobRegistry

logger = logging.getLogger(__name__)


class JobStateMachine:
    """Validates and applies job state transitions."""

    # Define valid state transitions
    VALID_TRANSITIONS = {
        JobState.QUEUED: {JobState.RUNNING, JobState.CANCELLED},
        JobState.RUNNING: {
            JobState.SUCCEEDED,
            JobState.FAILED,
            JobState.CANCELLED,
        },
        JobState.SUCCEEDED: set(),  # Terminal state
        JobState.FAILED: set(),  # Terminal state
        JobState.CANCELLED: set(),  # Terminal state
    }

    def __init__(self, registry: JobRegistry, event_broadcaster: EventBroadcaster):
        self._registry = registry
        self._broadcaster = event_broadcaster

    def can_transition(self, from_state: JobState, to_state: JobState) -> bool:
        """Validate if state transition is allowed."""
        return to_state in self.VALID_TRANSITIONS.get(from_state, set())

    def transition(
        self,
        job_id: int,
        to_state: JobState,
        *,
        error_kind: str | None = None,
        error_message: str | None = None,
        exit_status: int | None = None,
    ) -> JobSnapshot | None:
        """Perform a validated transition.

        Args:
            job_id: Job to transition
            to_state: Target state
            error_kind: Error code when transitioning to FAILED/CANCELLED
            error_message: Human-readable failure reason
            exit_status: Process exit status, when one was observed

        Returns:
            The new snapshot, or None if the transition was refused
        """
        refused: list[JobState] = []

        def apply(current: JobSnapshot) -> JobSnapshot:
            if not self.can_transition(current.state, to_state):
                refused.append(current.state)
                return current

            now = datetime.now(timezone.utc)
            changes: dict = {"state": to_state}
            if to_state == JobState.RUNNING:
                changes["started_at"] = now
            if to_state.is_terminal:
                changes["finished_at"] = now
            if to_state == JobState.SUCCEEDED:
                changes["progress_percent"] = 100.0
            if exit_status is not None:
                changes["exit_status"] = exit_status
            if error_kind is not None:
                changes["error_kind"] = error_kind
            if error_message is not None:
                changes["error_message"] = error_message
            return current.evolve(**changes)

        previous, snapshot = self._registry.update(job_id, apply)

        if refused:
            logger.warning(
                f"Invalid state transition for job {job_id}: {refused[0].value} -> {to_state.value}"
            )
            return None

        logger.info(f"Job {job_id} state transition: {previous.state.value} -> {to_state.value}")
        self._broadcaster.broadcast_job_update(snapshot)
        return snapshot
