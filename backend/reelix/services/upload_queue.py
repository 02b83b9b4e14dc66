"""Upload queue - copies finished rips to the FTP server, one at a time.

A successful rip is queued here and a single worker uploads files in order
through FtpFileStore, so transfers get the same retry policy as every other
FTP operation. Queued uploads are written to SQLite and picked up again by
``resume_pending`` after a restart; the row goes away once the file is on the
server. The local library copy is always kept.
"""

import asyncio
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from sqlmodel import select

from reelix.core import naming
from reelix.core.errors import ConfigurationError, ReelixError, UploadNotFoundError
from reelix.core.remote_store import FtpFileStore
from reelix.database import async_session
from reelix.models import AppConfig, EpisodeIdentity, MediaIdentity, PendingUpload, UploadSnapshot, UploadState
from reelix.models.media import identity_from_dict
from reelix.services.config_service import get_config
from reelix.services.event_broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)


def remote_path_for(config: AppConfig, identity: MediaIdentity) -> str | None:
    """Server path for ``identity``, or None when uploads of its kind are not configured."""
    root = config.ftp_tv_upload_path if isinstance(identity, EpisodeIdentity) else config.ftp_movie_upload_path
    if not config.ftp_host or not root:
        return None
    return str(PurePosixPath(root, naming.path_for(identity)))


class UploadQueue:
    """Sequential uploader of finished rips."""

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        *,
        history_capacity: int = 100,
        config_loader: Callable[[], Awaitable[AppConfig]] = get_config,
        store_factory: Callable[[AppConfig], FtpFileStore] = FtpFileStore.from_config,
    ):
        self._broadcaster = broadcaster
        self._history_capacity = history_capacity
        self._config_loader = config_loader
        self._store_factory = store_factory

        self._uploads: dict[int, UploadSnapshot] = {}
        self._finished: deque[int] = deque()
        self._pending: deque[int] = deque()
        self._worker: asyncio.Task | None = None
        self._closed = False

    # --- Queries ---

    def status(self, upload_id: int) -> UploadSnapshot:
        """Raises UploadNotFoundError for unknown or evicted ids."""
        snapshot = self._uploads.get(upload_id)
        if snapshot is None:
            raise UploadNotFoundError(upload_id)
        return snapshot

    def uploads(self) -> list[UploadSnapshot]:
        """All known uploads, newest first."""
        return sorted(self._uploads.values(), key=lambda u: u.id, reverse=True)

    # --- Commands ---

    async def enqueue(
        self, local_path: str | Path, identity: MediaIdentity, job_id: int | None = None
    ) -> UploadSnapshot:
        """Record a finished rip and queue its upload."""
        if self._closed:
            raise ConfigurationError("Upload queue is shutting down")

        async with async_session() as session:
            row = PendingUpload(
                job_id=job_id,
                local_path=str(local_path),
                identity_json=json.dumps(identity.to_dict()),
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)

        snapshot = UploadSnapshot(id=row.id, local_path=str(local_path), identity=identity, job_id=job_id)
        self._add(snapshot)
        return snapshot

    async def resume_pending(self) -> int:
        """Queue the uploads a previous run did not finish.

        Rows whose local file is gone, or that cannot be read back, are
        dropped. Returns the number of uploads queued.
        """
        resumed: list[UploadSnapshot] = []
        async with async_session() as session:
            result = await session.execute(select(PendingUpload).order_by(PendingUpload.id))
            for row in result.scalars().all():
                if row.id in self._uploads:
                    continue
                try:
                    identity = identity_from_dict(json.loads(row.identity_json))
                except (ValueError, KeyError, ReelixError) as e:
                    logger.warning(f"Dropping pending upload {row.id}: unreadable identity ({e})")
                    await session.delete(row)
                    continue
                if not Path(row.local_path).is_file():
                    logger.warning(f"Dropping pending upload {row.id}: {row.local_path} no longer exists")
                    await session.delete(row)
                    continue
                resumed.append(
                    UploadSnapshot(
                        id=row.id,
                        local_path=row.local_path,
                        identity=identity,
                        job_id=row.job_id,
                        created_at=row.created_at,
                    )
                )
            await session.commit()

        for snapshot in resumed:
            self._add(snapshot)
        if resumed:
            logger.info(f"Resumed {len(resumed)} pending upload(s)")
        return len(resumed)

    def retry(self, upload_id: int) -> UploadSnapshot:
        """Queue a failed upload again. Uploads in any other state are left alone."""
        snapshot = self.status(upload_id)
        if snapshot.state != UploadState.FAILED or self._closed:
            return snapshot
        snapshot = self._update(
            upload_id,
            state=UploadState.PENDING,
            sent_bytes=0,
            error_kind=None,
            error_message=None,
            finished_at=None,
        )
        self._pending.append(upload_id)
        self._ensure_worker()
        return snapshot

    async def shutdown(self) -> None:
        """Stop the worker. Unfinished uploads stay in the database for next start."""
        self._closed = True
        self._pending.clear()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)

    # --- Worker ---

    def _add(self, snapshot: UploadSnapshot) -> None:
        self._uploads[snapshot.id] = snapshot
        self._pending.append(snapshot.id)
        logger.info(f"Upload {snapshot.id} queued: {snapshot.local_path}")
        self._broadcaster.broadcast_upload_update(snapshot)
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._closed:
            return
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="upload-queue")

    async def _run(self) -> None:
        while self._pending:
            upload_id = self._pending.popleft()
            try:
                await self._process(upload_id)
            except Exception as e:
                logger.exception(f"Upload {upload_id}: unexpected error")
                if self._uploads[upload_id].state not in (UploadState.UPLOADED, UploadState.SKIPPED):
                    self._update(
                        upload_id,
                        state=UploadState.FAILED,
                        error_kind=ReelixError.code,
                        error_message=f"Unexpected error: {e}",
                        finished_at=datetime.now(timezone.utc),
                    )

    async def _process(self, upload_id: int) -> None:
        snapshot = self._uploads[upload_id]
        config = await self._config_loader()
        remote_path = remote_path_for(config, snapshot.identity)
        if remote_path is None:
            logger.info(f"Upload {upload_id}: FTP upload not configured, skipping {snapshot.local_path}")
            await self._forget(upload_id)
            self._update(
                upload_id,
                state=UploadState.SKIPPED,
                error_message="FTP upload is not configured",
                finished_at=datetime.now(timezone.utc),
            )
            return

        local_path = Path(snapshot.local_path)
        loop = asyncio.get_running_loop()

        def report(sent: int) -> None:
            loop.call_soon_threadsafe(self._record_progress, upload_id, sent)

        def transfer(size: int) -> bool:
            with self._store_factory(config) as store:
                if store.size(remote_path) == size:
                    return False
                store.upload(local_path, remote_path, progress=report)
                return True

        try:
            size = local_path.stat().st_size
            self._update(
                upload_id, state=UploadState.UPLOADING, remote_path=remote_path, size_bytes=size, sent_bytes=0
            )
            transferred = await asyncio.to_thread(transfer, size)
        except (ReelixError, OSError) as e:
            logger.error(f"Upload {upload_id} of {local_path} failed: {e}")
            self._update(
                upload_id,
                state=UploadState.FAILED,
                remote_path=remote_path,
                error_kind=e.code if isinstance(e, ReelixError) else "local_file_error",
                error_message=str(e),
                finished_at=datetime.now(timezone.utc),
            )
            return

        if transferred:
            logger.info(f"Upload {upload_id}: {local_path} -> {remote_path}")
        else:
            logger.info(f"Upload {upload_id}: {remote_path} already on the server")
        await self._forget(upload_id)
        self._update(upload_id, state=UploadState.UPLOADED, sent_bytes=size, finished_at=datetime.now(timezone.utc))

    def _record_progress(self, upload_id: int, sent: int) -> None:
        previous = self._uploads.get(upload_id)
        if previous is None or previous.state != UploadState.UPLOADING:
            return
        current = previous.evolve(sent_bytes=sent)
        self._uploads[upload_id] = current
        if int(current.progress_percent) != int(previous.progress_percent):
            self._broadcaster.broadcast_upload_update(current)

    def _update(self, upload_id: int, **changes) -> UploadSnapshot:
        snapshot = self._uploads[upload_id].evolve(**changes)
        self._uploads[upload_id] = snapshot
        self._broadcaster.broadcast_upload_update(snapshot)
        if snapshot.state in (UploadState.UPLOADED, UploadState.SKIPPED):
            self._finished.append(upload_id)
            while len(self._finished) > self._history_capacity:
                self._uploads.pop(self._finished.popleft(), None)
        return snapshot

    async def _forget(self, upload_id: int) -> None:
        async with async_session() as session:
            row = await session.get(PendingUpload, upload_id)
            if row is not None:
                await session.delete(row)
                await session.commit()
