"""Data models for Reelix."""

from reelix.models.app_config import AppConfig
from reelix.models.disk import Disk, DriveUnavailable, DriveUnavailableReason, StreamInfo, Title, TitleRef
from reelix.models.job import JobSnapshot, JobState
from reelix.models.media import EpisodeIdentity, MediaIdentity, MovieIdentity, SeriesRef, SwapOperation
from reelix.models.upload import PendingUpload, UploadSnapshot, UploadState

__all__ = [
    "AppConfig",
    "Disk",
    "DriveUnavailable",
    "DriveUnavailableReason",
    "EpisodeIdentity",
    "JobSnapshot",
    "JobState",
    "MediaIdentity",
    "MovieIdentity",
    "PendingUpload",
    "SeriesRef",
    "StreamInfo",
    "SwapOperation",
    "Title",
    "TitleRef",
    "UploadSnapshot",
    "UploadState",
]
