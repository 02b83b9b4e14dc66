"""Rip job model - the state machine view of one ripping run."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from reelix.models.disk import TitleRef
from reelix.models.media import MediaIdentity


class JobState(str, Enum):
    """States in the rip job lifecycle."""

    QUEUED = "queued"  # Waiting for a free slot / free drive
    RUNNING = "running"  # makemkvcon is (being) spawned and supervised
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})


@dataclass(frozen=True)
class JobSnapshot:
    """Immutable copy of a job at one point in time."""

    id: int
    title_ref: TitleRef
    identity: MediaIdentity
    output_path: str
    state: JobState = JobState.QUEUED
    exit_status: int | None = None
    progress_percent: float = 0.0
    progress_label: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    diagnostics: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def evolve(self, **changes) -> "JobSnapshot":
        return replace(self, **changes)

    def to_payload(self) -> dict:
        """Serializable form used for events and API responses."""
        return {
            "job_id": self.id,
            "disk_id": self.title_ref.disk_id,
            "title_index": self.title_ref.title_index,
            "identity": self.identity.to_dict(),
            "output_path": self.output_path,
            "state": self.state.value,
            "exit_status": self.exit_status,
            "progress_percent": self.progress_percent,
            "progress_label": self.progress_label,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
