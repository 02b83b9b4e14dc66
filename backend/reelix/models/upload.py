"""Upload models - copying finished rips to the FTP server.

Pending uploads are kept in SQLite so a restart picks them up again; the
progress view lives in memory only.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from sqlmodel import Field, SQLModel

from reelix.models.media import MediaIdentity


class UploadState(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"
    SKIPPED = "skipped"  # FTP upload not configured for this kind of media


class PendingUpload(SQLModel, table=True):
    """A finished rip that has not reached the FTP server yet."""

    __tablename__ = "pending_upload"

    id: int | None = Field(default=None, primary_key=True)
    job_id: int | None = None
    local_path: str
    identity_json: str  # MediaIdentity.to_dict() as JSON
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class UploadSnapshot:
    """Immutable copy of an upload at one point in time."""

    id: int
    local_path: str
    identity: MediaIdentity
    job_id: int | None = None
    state: UploadState = UploadState.PENDING
    remote_path: str | None = None
    size_bytes: int | None = None
    sent_bytes: int = 0
    error_kind: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def progress_percent(self) -> float:
        if not self.size_bytes:
            return 100.0 if self.state == UploadState.UPLOADED else 0.0
        return round(min(100.0, self.sent_bytes * 100.0 / self.size_bytes), 1)

    def evolve(self, **changes) -> "UploadSnapshot":
        return replace(self, **changes)

    def to_payload(self) -> dict:
        return {
            "upload_id": self.id,
            "job_id": self.job_id,
            "identity": self.identity.to_dict(),
            "local_path": self.local_path,
            "remote_path": self.remote_path,
            "state": self.state.value,
            "size_bytes": self.size_bytes,
            "sent_bytes": self.sent_bytes,
            "progress_percent": self.progress_percent,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
