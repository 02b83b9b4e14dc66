"""REST API routes for Reelix."""

import asyncio
import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from reelix.core.errors import (
    AssignmentConflictError,
    AssignmentLockedError,
    ConfigurationError,
    DuplicateJobError,
    InvalidPartLabelError,
    InvalidPermutationError,
    JobNotFoundError,
    PartialReorderFailure,
    ReelixError,
    RemoteStoreError,
    UnknownTitleError,
    UploadNotFoundError,
)
from reelix.core.remote_store import FtpFileStore
from reelix.models import (
    Disk,
    EpisodeIdentity,
    JobSnapshot,
    MediaIdentity,
    MovieIdentity,
    SeriesRef,
    SwapOperation,
    TitleRef,
)
from reelix.services import runtime
from reelix.services.config_service import get_config as get_db_config
from reelix.services.config_service import update_config as update_db_config
from reelix.services.ftp_reorder import FtpReorderEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["reelix"])

# Most specific first
_STATUS_BY_ERROR: list[tuple[type[ReelixError], int]] = [
    (UnknownTitleError, 404),
    (JobNotFoundError, 404),
    (UploadNotFoundError, 404),
    (DuplicateJobError, 409),
    (AssignmentConflictError, 409),
    (AssignmentLockedError, 409),
    (InvalidPartLabelError, 422),
    (InvalidPermutationError, 422),
    (PartialReorderFailure, 502),
    (RemoteStoreError, 502),
    (ConfigurationError, 400),
]


def _http_error(exc: ReelixError) -> HTTPException:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status, detail=exc.to_dict())
    return HTTPException(status_code=500, detail=exc.to_dict())


# Request/Response Models
class MovieModel(BaseModel):
    id: int
    title: str = ""
    year: int | None = None
    edition: str | None = None
    part: str | int | None = None

    def to_identity(self) -> MovieIdentity:
        return MovieIdentity(
            id=self.id, title=self.title, year=self.year, edition=self.edition or None, part=self.part
        )


class EpisodeModel(BaseModel):
    series_id: int
    series_title: str = ""
    year: int | None = None
    season: int = Field(ge=0)
    episode: int = Field(ge=0)
    episode_title: str = ""
    part: str | int | None = None

    def to_identity(self) -> EpisodeIdentity:
        return EpisodeIdentity(
            series_id=self.series_id,
            season=self.season,
            episode=self.episode,
            part=self.part,
            series_title=self.series_title,
            year=self.year,
            episode_title=self.episode_title,
        )


class EpisodeAssignmentRequest(BaseModel):
    """Request model for assigning a title to a TV episode."""

    disk_id: int
    title_index: int
    episode: EpisodeModel
    part: str | int | None = None


class MovieAssignmentRequest(BaseModel):
    """Assign a title to a movie; ``part`` splits the movie across titles."""

    disk_id: int
    title_index: int
    movie: MovieModel
    part: str | int | None = None


class WithdrawRequest(BaseModel):
    """Withdraw a title's assignment; optional identity guards against races."""

    disk_id: int
    title_index: int
    episode: EpisodeModel | None = None
    movie: MovieModel | None = None


class RipOneRequest(BaseModel):
    """Rip one title. Without an identity the title's assignment is used."""

    disk_id: int
    title_index: int
    movie: MovieModel | None = None
    episode: EpisodeModel | None = None


class RipSeasonRequest(BaseModel):
    disk_id: int
    series_id: int
    season: int


class SwapModel(BaseModel):
    from_episode: int
    to_episode: int


class ReorderRequest(BaseModel):
    """Request model for renumbering episodes on the FTP server."""

    series_id: int
    series_title: str
    year: int | None = None
    season: int
    swaps: list[SwapModel]
    episode_titles: dict[int, str] | None = None


class ConfigResponse(BaseModel):
    """Response model for configuration."""

    makemkv_path: str
    staging_path: str
    library_movies_path: str
    library_tv_path: str
    ftp_host: str
    ftp_user: str
    ftp_pass: str
    ftp_movie_upload_path: str
    ftp_tv_upload_path: str
    setup_complete: bool


class ConfigUpdate(BaseModel):
    """Request model for updating configuration."""

    makemkv_path: str | None = None
    staging_path: str | None = None
    library_movies_path: str | None = None
    library_tv_path: str | None = None
    ftp_host: str | None = None
    ftp_user: str | None = None
    ftp_pass: str | None = None
    ftp_movie_upload_path: str | None = None
    ftp_tv_upload_path: str | None = None
    setup_complete: bool | None = None


def _disk_payload(disk: Disk) -> dict:
    return {
        "disk_id": disk.id,
        "label": disk.label,
        "drive_name": disk.drive_name,
        "device": disk.device,
        "scanned_at": disk.scanned_at.isoformat(),
        "titles": [
            {
                "index": title.index,
                "name": title.name,
                "duration_seconds": title.duration_seconds,
                "duration": title.duration_text,
                "chapter_count": title.chapter_count,
                "size_bytes": title.size_bytes,
                "source_file_name": title.source_file_name,
                "segment_map": title.segment_map,
                "streams": [
                    {
                        "index": stream.index,
                        "kind": stream.kind,
                        "language": stream.language,
                        "codec": stream.codec,
                    }
                    for stream in title.streams
                ],
            }
            for title in disk.titles
        ],
    }


def _job_payload(snapshot: JobSnapshot) -> dict:
    return {**snapshot.to_payload(), "diagnostics": list(snapshot.diagnostics)}


def _require_title(title_ref: TitleRef) -> None:
    if runtime.disk_catalog.get(title_ref.disk_id) is None:
        raise UnknownTitleError(title_ref.disk_id)
    if runtime.disk_catalog.title(title_ref.disk_id, title_ref.title_index) is None:
        raise UnknownTitleError(title_ref.disk_id, title_ref.title_index)


def _require_unlocked(title_ref: TitleRef) -> None:
    job = runtime.rip_scheduler.active_job_for(title_ref)
    if job is not None:
        raise AssignmentLockedError(f"{title_ref} is being ripped by job {job.id}")


# --- Disks ---


@router.get("/disks")
async def list_disks() -> dict:
    """Cached catalog from the last scan."""
    catalog = runtime.disk_catalog
    return {
        "disks": [_disk_payload(disk) for disk in catalog.disks()],
        "unavailable": [entry.to_dict() for entry in catalog.unavailable],
    }


@router.post("/disks/scan")
async def scan_disks() -> dict:
    """Rescan all drives. Drives holding a different disc lose their assignments."""
    catalog = runtime.disk_catalog
    previous_labels = {disk.id: disk.label for disk in catalog.disks()}

    disks = await catalog.scan()

    for disk in disks:
        old_label = previous_labels.get(disk.id)
        if old_label is not None and old_label != disk.label:
            runtime.assignment_store.clear_disk(disk.id)

    return {
        "disks": [_disk_payload(disk) for disk in disks],
        "unavailable": [entry.to_dict() for entry in catalog.unavailable],
    }


@router.get("/disks/{disk_id}/assignments")
async def list_assignments(disk_id: int) -> list[dict]:
    return [assignment.to_dict() for assignment in runtime.assignment_store.assignments_for_disk(disk_id)]


# --- Assignments ---


@router.post("/assignments/episode")
async def assign_episode(request: EpisodeAssignmentRequest) -> dict:
    """Assign a title to a TV episode (optionally one part of it)."""
    title_ref = TitleRef(request.disk_id, request.title_index)
    try:
        _require_title(title_ref)
        _require_unlocked(title_ref)
        assignment = runtime.assignment_store.assign(
            title_ref, request.episode.to_identity(), part=request.part
        )
    except ReelixError as e:
        raise _http_error(e) from e
    return assignment.to_dict()


@router.post("/assignments/movie")
async def assign_movie(request: MovieAssignmentRequest) -> dict:
    title_ref = TitleRef(request.disk_id, request.title_index)
    try:
        _require_title(title_ref)
        _require_unlocked(title_ref)
        assignment = runtime.assignment_store.assign(
            title_ref, request.movie.to_identity(), part=request.part
        )
    except ReelixError as e:
        raise _http_error(e) from e
    return assignment.to_dict()


@router.post("/assignments/withdraw")
async def withdraw_assignment(request: WithdrawRequest) -> dict:
    """Withdraw a title's assignment. Withdrawing nothing is not an error."""
    title_ref = TitleRef(request.disk_id, request.title_index)
    identity: MediaIdentity | None = None
    try:
        if request.episode is not None:
            identity = request.episode.to_identity()
        elif request.movie is not None:
            identity = request.movie.to_identity()
        _require_unlocked(title_ref)
    except ReelixError as e:
        raise _http_error(e) from e

    removed = runtime.assignment_store.withdraw(title_ref, identity)
    return {"status": "withdrawn" if removed else "unchanged", "removed": removed}


# --- Ripping ---


@router.post("/rip/one")
async def rip_one(request: RipOneRequest) -> dict:
    """Submit a rip job for one title."""
    title_ref = TitleRef(request.disk_id, request.title_index)
    identity: MediaIdentity | None
    try:
        if request.movie is not None:
            identity = request.movie.to_identity()
        elif request.episode is not None:
            identity = request.episode.to_identity()
        else:
            identity = runtime.assignment_store.assignment_for(title_ref)
    except ReelixError as e:
        raise _http_error(e) from e
    if identity is None:
        raise HTTPException(
            status_code=422,
            detail={"error": "unassigned_title", "message": f"{title_ref} has no assignment"},
        )

    try:
        job_id = await runtime.rip_scheduler.submit(request.disk_id, request.title_index, identity)
    except ReelixError as e:
        raise _http_error(e) from e
    return {"job_id": job_id, "job": _job_payload(runtime.rip_scheduler.status(job_id))}


@router.post("/rip/season")
async def rip_season(request: RipSeasonRequest) -> dict:
    """Submit rip jobs for every assigned episode of a season on one disk.

    Jobs are submitted in episode then part order. Titles that are already
    being ripped are reported as skipped.
    """
    if runtime.disk_catalog.get(request.disk_id) is None:
        raise _http_error(UnknownTitleError(request.disk_id))

    assignments = [
        a
        for a in runtime.assignment_store.assignments_for_disk(request.disk_id)
        if isinstance(a.identity, EpisodeIdentity)
        and a.identity.series_id == request.series_id
        and a.identity.season == request.season
    ]
    assignments.sort(key=lambda a: (a.identity.episode, int(a.identity.part or 0)))

    job_ids: list[int] = []
    skipped: list[dict] = []
    for assignment in assignments:
        ref = assignment.title_ref
        try:
            job_ids.append(await runtime.rip_scheduler.submit(ref.disk_id, ref.title_index, assignment.identity))
        except (DuplicateJobError, UnknownTitleError) as e:
            skipped.append(e.to_dict())
        except ReelixError as e:
            raise _http_error(e) from e

    logger.info(
        f"Season rip for series {request.series_id} S{request.season:02d} on disk {request.disk_id}: "
        f"{len(job_ids)} submitted, {len(skipped)} skipped"
    )
    return {"job_ids": job_ids, "skipped": skipped}


@router.get("/jobs")
async def list_jobs() -> list[dict]:
    """Active jobs then recent history, newest first."""
    return [snapshot.to_payload() for snapshot in runtime.rip_scheduler.jobs()]


@router.get("/jobs/{job_id}")
async def get_job(job_id: int) -> dict:
    try:
        return _job_payload(runtime.rip_scheduler.status(job_id))
    except ReelixError as e:
        raise _http_error(e) from e


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: int) -> dict:
    """Request cancellation; the final state arrives as a job_update event."""
    try:
        snapshot = runtime.rip_scheduler.cancel(job_id)
    except ReelixError as e:
        raise _http_error(e) from e
    return {"job_id": job_id, "state": snapshot.state.value}


# --- Uploads ---


@router.get("/uploads")
async def list_uploads() -> list[dict]:
    """Uploads of finished rips to the FTP server, newest first."""
    return [snapshot.to_payload() for snapshot in runtime.upload_queue.uploads()]


@router.post("/uploads/{upload_id}/retry")
async def retry_upload(upload_id: int) -> dict:
    """Queue a failed upload again; other uploads are returned unchanged."""
    try:
        snapshot = runtime.upload_queue.retry(upload_id)
    except ReelixError as e:
        raise _http_error(e) from e
    return snapshot.to_payload()


# --- TV on FTP ---


@router.post("/tv/reorder")
async def reorder_episodes(request: ReorderRequest) -> dict:
    """Renumber a season's episodes on the FTP server."""
    config = await get_db_config()
    series = SeriesRef(id=request.series_id, title=request.series_title, year=request.year)
    swaps = [SwapOperation(s.from_episode, s.to_episode) for s in request.swaps]

    def run():
        with FtpFileStore.from_config(config) as store:
            engine = FtpReorderEngine(store, config.ftp_tv_upload_path)
            return engine.reorder(series, request.season, swaps, request.episode_titles)

    try:
        result = await asyncio.to_thread(run)
    except ReelixError as e:
        runtime.broadcaster.broadcast_reorder_failed(series.id, request.season, e.to_dict())
        raise _http_error(e) from e

    runtime.broadcaster.broadcast_reorder_completed(series.id, request.season, list(result.renames))
    return result.to_dict()


@router.get("/tv/{series_id}/seasons/{season}/ripped")
async def ripped_episodes(series_id: int, season: int, title: str, year: int | None = None) -> dict:
    """Episode numbers of a season that already exist on the FTP server."""
    config = await get_db_config()
    series = SeriesRef(id=series_id, title=title, year=year)

    def run() -> list[int]:
        with FtpFileStore.from_config(config) as store:
            return FtpReorderEngine(store, config.ftp_tv_upload_path).ripped_episode_numbers(series, season)

    try:
        episodes = await asyncio.to_thread(run)
    except ReelixError as e:
        raise _http_error(e) from e
    return {"series_id": series_id, "season": season, "episodes": episodes}


# --- Config ---


@router.get("/config", response_model=ConfigResponse)
async def get_config() -> ConfigResponse:
    """Get current configuration from database.

    The FTP password is redacted.
    """
    config = await get_db_config()
    return ConfigResponse(
        makemkv_path=config.makemkv_path,
        staging_path=config.staging_path,
        library_movies_path=config.library_movies_path,
        library_tv_path=config.library_tv_path,
        ftp_host=config.ftp_host,
        ftp_user=config.ftp_user,
        ftp_pass="***" if config.ftp_pass else "",  # Redacted
        ftp_movie_upload_path=config.ftp_movie_upload_path,
        ftp_tv_upload_path=config.ftp_tv_upload_path,
        setup_complete=config.setup_complete,
    )


@router.put("/config")
async def update_config(config: ConfigUpdate) -> dict:
    """Update configuration and persist to database."""
    # Build kwargs from non-None fields
    update_data = {k: v for k, v in config.model_dump().items() if v is not None}

    if update_data:
        await update_db_config(**update_data)

    return {"status": "updated", "persisted": True}
