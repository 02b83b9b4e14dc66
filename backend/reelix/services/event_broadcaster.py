"""Domain-specific event broadcasting layer.

Provides semantic event methods that wrap the progress bus, so callers never
build raw event dicts themselves.
"""

from reelix.models import Disk, DriveUnavailable, JobSnapshot, UploadSnapshot
from reelix.services.progress_bus import ProgressEventBus


class EventBroadcaster:
    """Domain-specific event broadcasting."""

    def __init__(self, bus: ProgressEventBus):
        self._bus = bus

    @property
    def bus(self) -> ProgressEventBus:
        return self._bus

    # --- Job Events ---

    def broadcast_job_update(self, snapshot: JobSnapshot):
        """Broadcast a job state transition with the full snapshot."""
        self._bus.publish({"type": "job_update", **snapshot.to_payload()})

    def broadcast_job_progress(self, snapshot: JobSnapshot):
        """Broadcast job progress (state unchanged)."""
        self._bus.publish(
            {
                "type": "job_progress",
                "job_id": snapshot.id,
                "state": snapshot.state.value,
                "progress_percent": snapshot.progress_percent,
                "progress_label": snapshot.progress_label,
                "output_path": snapshot.output_path,
            }
        )

    # --- Upload Events ---

    def broadcast_upload_update(self, snapshot: UploadSnapshot):
        """Broadcast an upload state change or whole-percent progress step."""
        self._bus.publish({"type": "upload_update", **snapshot.to_payload()})

    # --- Disk Events ---

    def broadcast_disks_scanned(self, disks: list[Disk], unavailable: list[DriveUnavailable]):
        """Broadcast the outcome of a catalog scan."""
        self._bus.publish(
            {
                "type": "disks_scanned",
                "disks": [
                    {"disk_id": disk.id, "label": disk.label, "title_count": len(disk.titles)}
                    for disk in disks
                ],
                "unavailable": [entry.to_dict() for entry in unavailable],
            }
        )

    def broadcast_assignments_changed(self, disk_id: int):
        """Broadcast that the assignments of a disk changed."""
        self._bus.publish({"type": "assignments_changed", "disk_id": disk_id})

    # --- Reorder Events ---

    def broadcast_reorder_completed(self, series_id: int, season: int, renamed: list[tuple[str, str]]):
        self._bus.publish(
            {
                "type": "reorder_completed",
                "series_id": series_id,
                "season": season,
                "renamed": [list(pair) for pair in renamed],
            }
        )

    def broadcast_reorder_failed(self, series_id: int, season: int, error: dict):
        self._bus.publish(
            {
                "type": "reorder_failed",
                "series_id": series_id,
                "season": season,
                **error,
            }
        )
