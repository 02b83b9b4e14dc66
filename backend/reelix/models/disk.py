"""Disk and Title models - what a catalog scan discovers.

Disks and their titles are immutable: a rescan builds new objects and swaps
them into the catalog wholesale.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class DriveUnavailableReason(str, Enum):
    """Why a drive was left out of the usable set."""

    NO_DISC = "no_disc"
    TRAY_OPEN = "tray_open"
    LOADING = "loading"
    TOOL_MISSING = "tool_missing"
    SCAN_FAILED = "scan_failed"
    TIMEOUT = "timeout"
    NO_TITLES = "no_titles"


@dataclass(frozen=True)
class StreamInfo:
    """One audio/video/subtitle stream of a title. Opaque to the scheduler."""

    index: int
    kind: str = ""  # "Video", "Audio", "Subtitles"
    language: str = ""
    codec: str = ""
    attributes: tuple[tuple[int, str], ...] = ()


@dataclass(frozen=True)
class Title:
    """A title found on a disc by the scanning tool."""

    index: int
    name: str = ""
    duration_seconds: int = 0
    chapter_count: int = 0
    size_bytes: int = 0
    source_file_name: str = ""
    segment_map: str = ""
    streams: tuple[StreamInfo, ...] = ()

    @property
    def duration_text(self) -> str:
        hours, remainder = divmod(self.duration_seconds, 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"{hours}:{minutes:02d}:{seconds:02d}"


@dataclass(frozen=True)
class TitleRef:
    """Reference to a title by disk id and title index."""

    disk_id: int
    title_index: int

    def __str__(self) -> str:
        return f"disk {self.disk_id} title {self.title_index}"


@dataclass(frozen=True)
class Disk:
    """An optical disc sitting in a drive, with its scanned titles."""

    id: int  # MakeMKV drive index
    label: str
    drive_name: str = ""
    device: str = ""
    titles: tuple[Title, ...] = ()
    scanned_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def title(self, index: int) -> Title | None:
        for title in self.titles:
            if title.index == index:
                return title
        return None

    @property
    def source_spec(self) -> str:
        """Source argument understood by makemkvcon."""
        return f"disc:{self.id}"


@dataclass(frozen=True)
class DriveUnavailable:
    """A drive that could not be scanned, reported instead of dropped."""

    drive_id: int | None
    reason: DriveUnavailableReason
    label: str = ""
    drive_name: str = ""
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "drive_id": self.drive_id,
            "reason": self.reason.value,
            "label": self.label,
            "drive_name": self.drive_name,
            "detail": self.detail,
        }
