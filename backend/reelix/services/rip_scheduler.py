"""Rip job scheduler - queues, runs and supervises makemkvcon processes.

Jobs are admitted FIFO while fewer than ``max_concurrent`` are running and
their disk is idle (a drive reads one title at a time). Each running job has
one watcher task that owns its process: it streams progress from stdout,
waits for exit or a cancellation request, and decides the terminal state.
Succeeded jobs are handed to the upload queue when one is attached.

All scheduling state (queue, running set, busy disks) is touched only from
the event loop; job snapshots go through the registry.
"""

import asyncio
import logging
import shutil
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from reelix.core import naming
from reelix.core.errors import (
    CancellationTimeout,
    ConfigurationError,
    OutputMoveFailure,
    ProcessExitFailure,
    ProcessSpawnFailure,
    ReelixError,
    ToolReportedFalseSuccess,
    UnknownTitleError,
)
from reelix.core.makemkv import build_rip_command, interpret_rip_line
from reelix.models import AppConfig, EpisodeIdentity, JobSnapshot, JobState, MediaIdentity, TitleRef
from reelix.services.config_service import get_config
from reelix.services.disk_catalog import DiskCatalog
from reelix.services.event_broadcaster import EventBroadcaster
from reelix.services.job_registry import JobRegistry
from reelix.services.job_state_machine import JobStateMachine
from reelix.services.upload_queue import UploadQueue

logger = logging.getLogger(__name__)

# Longest stdout line kept whole; longer lines are skipped
OUTPUT_LINE_LIMIT = 1024 * 1024
OUTPUT_READ_SIZE = 64 * 1024


@dataclass
class _JobPlan:
    """Everything a watcher needs to run one job, fixed at submission."""

    makemkv_path: str
    source_spec: str
    staging_dir: Path
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None


@dataclass
class _OutputState:
    diagnostics: deque
    last_message: str | None = None


@dataclass
class _Outcome:
    state: JobState
    exit_status: int | None = None
    error: ReelixError | None = None


class RipJobScheduler:
    """Bounded-concurrency runner for rip jobs."""

    def __init__(
        self,
        catalog: DiskCatalog,
        broadcaster: EventBroadcaster,
        *,
        max_concurrent: int = 2,
        history_capacity: int = 100,
        termination_timeout: float = 10.0,
        diagnostic_lines: int = 200,
        min_title_length: int = 45,
        config_loader: Callable[[], Awaitable[AppConfig]] = get_config,
        command_factory: Callable[..., list[str]] = build_rip_command,
        uploader: UploadQueue | None = None,
    ):
        self._catalog = catalog
        self._broadcaster = broadcaster
        self._max_concurrent = max_concurrent
        self._termination_timeout = termination_timeout
        self._diagnostic_lines = diagnostic_lines
        self._min_title_length = min_title_length
        self._config_loader = config_loader
        self._command_factory = command_factory
        self._uploader = uploader

        self._registry = JobRegistry(history_capacity)
        self._state_machine = JobStateMachine(self._registry, broadcaster)

        self._queue: deque[int] = deque()
        self._plans: dict[int, _JobPlan] = {}
        self._running: dict[int, _JobPlan] = {}
        self._busy_disks: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    # --- Queries ---

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def queued_ids(self) -> list[int]:
        return list(self._queue)

    def status(self, job_id: int) -> JobSnapshot:
        """Last published snapshot of a job. Never waits on a transition.

        Raises:
            JobNotFoundError: unknown or evicted job id
        """
        return self._registry.get(job_id)

    def jobs(self) -> list[JobSnapshot]:
        return self._registry.all()

    def active_job_for(self, title_ref: TitleRef) -> JobSnapshot | None:
        return self._registry.active_for_title(title_ref)

    # --- Commands ---

    async def submit(self, disk_id: int, title_index: int, identity: MediaIdentity) -> int:
        """Create a job ripping one title as ``identity`` and try to start it.

        Raises:
            UnknownTitleError: the disk or title is not in the catalog
            DuplicateJobError: the title already has a non-terminal job
            ConfigurationError: the library or staging location is not set
        """
        if self._closed:
            raise ConfigurationError("Scheduler is shutting down")

        config = await self._config_loader()
        if self._closed:
            raise ConfigurationError("Scheduler is shutting down")

        disk = self._catalog.get(disk_id)
        if disk is None:
            raise UnknownTitleError(disk_id)
        if disk.title(title_index) is None:
            raise UnknownTitleError(disk_id, title_index)

        is_episode = isinstance(identity, EpisodeIdentity)
        library_root = config.library_tv_path if is_episode else config.library_movies_path
        if not library_root:
            kind = "TV" if is_episode else "movie"
            raise ConfigurationError(f"No {kind} library path configured")
        if not config.staging_path:
            raise ConfigurationError("No staging path configured")

        output_path = Path(library_root).expanduser() / naming.path_for(identity)
        title_ref = TitleRef(disk_id, title_index)

        snapshot = self._registry.create(
            title_ref,
            lambda job_id: JobSnapshot(
                id=job_id,
                title_ref=title_ref,
                identity=identity,
                output_path=str(output_path),
            ),
        )
        self._plans[snapshot.id] = _JobPlan(
            makemkv_path=config.makemkv_path or "makemkvcon",
            source_spec=disk.source_spec,
            staging_dir=Path(config.staging_path).expanduser() / f"job_{snapshot.id}",
        )
        self._queue.append(snapshot.id)

        logger.info(f"Job {snapshot.id} queued: {title_ref} -> {output_path}")
        self._broadcaster.broadcast_job_update(snapshot)
        self._dispatch()
        return snapshot.id

    def cancel(self, job_id: int) -> JobSnapshot:
        """Request cancellation and return immediately.

        Queued jobs are cancelled on the spot. Running jobs are terminated by
        their watcher; the final state arrives as a later event. Terminal jobs
        are left alone.

        Raises:
            JobNotFoundError: unknown job id
        """
        snapshot = self._registry.get(job_id)
        if snapshot.is_terminal:
            logger.debug(f"Job {job_id} already {snapshot.state.value}; cancel ignored")
            return snapshot

        if snapshot.state == JobState.QUEUED:
            if job_id in self._queue:
                self._queue.remove(job_id)
            self._plans.pop(job_id, None)
            cancelled = self._state_machine.transition(job_id, JobState.CANCELLED)
            return cancelled or self._registry.get(job_id)

        plan = self._running.get(job_id)
        if plan is not None and not plan.cancel_event.is_set():
            logger.info(f"Job {job_id}: cancellation requested")
            plan.cancel_event.set()
        return self._registry.get(job_id)

    async def shutdown(self) -> None:
        """Cancel everything and wait for all watchers to finish."""
        self._closed = True
        for job_id in list(self._queue):
            self.cancel(job_id)
        for plan in self._running.values():
            plan.cancel_event.set()
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} rip job(s) to stop")
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # --- Scheduling ---

    def _dispatch(self) -> None:
        """Start queued jobs while a slot and their disk are free."""
        while not self._closed and len(self._running) < self._max_concurrent:
            job_id = self._next_runnable()
            if job_id is None:
                return
            self._queue.remove(job_id)
            plan = self._plans[job_id]

            snapshot = self._state_machine.transition(job_id, JobState.RUNNING)
            if snapshot is None:
                self._plans.pop(job_id, None)
                continue

            self._running[job_id] = plan
            self._busy_disks.add(snapshot.title_ref.disk_id)
            task = asyncio.create_task(self._watch(snapshot, plan), name=f"rip-job-{job_id}")
            plan.task = task
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _next_runnable(self) -> int | None:
        for job_id in self._queue:
            snapshot = self._registry.find(job_id)
            if snapshot is not None and snapshot.title_ref.disk_id not in self._busy_disks:
                return job_id
        return None

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Watcher {task.get_name()} crashed: {exc}", exc_info=exc)

    # --- Supervision ---

    async def _watch(self, snapshot: JobSnapshot, plan: _JobPlan) -> None:
        job_id = snapshot.id
        try:
            outcome = await self._supervise(snapshot, plan)
        except asyncio.CancelledError:
            self._finish(job_id, _Outcome(JobState.CANCELLED))
            raise
        except Exception as e:
            logger.exception(f"Job {job_id}: unexpected error while supervising rip")
            outcome = _Outcome(JobState.FAILED, error=ReelixError(f"Unexpected error: {e}"))
        finally:
            self._running.pop(job_id, None)
            self._plans.pop(job_id, None)
            self._busy_disks.discard(snapshot.title_ref.disk_id)

        self._finish(job_id, outcome)
        await asyncio.to_thread(shutil.rmtree, plan.staging_dir, ignore_errors=True)
        self._dispatch()
        if self._uploader is not None:
            await self._hand_off(job_id)

    async def _hand_off(self, job_id: int) -> None:
        """Queue the upload of a succeeded job's output file."""
        snapshot = self._registry.find(job_id)
        if snapshot is None or snapshot.state != JobState.SUCCEEDED:
            return
        try:
            await self._uploader.enqueue(snapshot.output_path, snapshot.identity, job_id=job_id)
        except Exception:
            logger.exception(f"Job {job_id}: could not queue upload of {snapshot.output_path}")

    def _finish(self, job_id: int, outcome: _Outcome) -> None:
        error = outcome.error
        if error is not None:
            logger.warning(f"Job {job_id}: {error.code}: {error}")
        self._state_machine.transition(
            job_id,
            outcome.state,
            exit_status=outcome.exit_status,
            error_kind=error.code if error else None,
            error_message=str(error) if error else None,
        )

    async def _supervise(self, snapshot: JobSnapshot, plan: _JobPlan) -> _Outcome:
        job_id = snapshot.id
        cmd = self._command_factory(
            plan.makemkv_path,
            plan.source_spec,
            snapshot.title_ref.title_index,
            plan.staging_dir,
            self._min_title_length,
        )

        # Job ids restart with the process; never pick up a previous run's files
        await asyncio.to_thread(shutil.rmtree, plan.staging_dir, ignore_errors=True)
        try:
            plan.staging_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Job {job_id}: starting {' '.join(cmd)}")
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return _Outcome(JobState.FAILED, error=ProcessSpawnFailure(f"Could not start {cmd[0]}: {e}"))

        output = _OutputState(diagnostics=deque(maxlen=self._diagnostic_lines))
        reader = asyncio.create_task(self._read_output(job_id, proc.stdout, output))
        waiter = asyncio.create_task(proc.wait())
        cancel_wait = asyncio.create_task(plan.cancel_event.wait())

        try:
            done, _ = await asyncio.wait({waiter, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._terminate(job_id, proc, waiter)
            reader.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if waiter not in done:
            killed = await self._terminate(job_id, proc, waiter)
            await self._drain(reader)
            self._store_diagnostics(job_id, output)
            error = None
            if killed:
                error = CancellationTimeout(
                    f"makemkvcon ignored termination for {self._termination_timeout:g}s and was killed"
                )
            return _Outcome(JobState.CANCELLED, exit_status=proc.returncode, error=error)

        exit_status = waiter.result()
        await self._drain(reader)
        self._store_diagnostics(job_id, output)
        logger.info(f"Job {job_id}: makemkvcon exited with status {exit_status}")

        if exit_status != 0:
            message = output.last_message or f"makemkvcon exited with status {exit_status}"
            return _Outcome(JobState.FAILED, exit_status=exit_status, error=ProcessExitFailure(message))

        try:
            produced = await asyncio.to_thread(self._move_output, plan.staging_dir, Path(snapshot.output_path))
        except OSError as e:
            return _Outcome(
                JobState.FAILED,
                exit_status=exit_status,
                error=OutputMoveFailure(f"Could not move rip to {snapshot.output_path}: {e}"),
            )
        if produced is None:
            return _Outcome(
                JobState.FAILED,
                exit_status=exit_status,
                error=ToolReportedFalseSuccess("makemkvcon exited 0 but produced no output file"),
            )

        logger.info(f"Job {job_id}: moved {produced.name} to {snapshot.output_path}")
        return _Outcome(JobState.SUCCEEDED, exit_status=exit_status)

    async def _terminate(self, job_id: int, proc: asyncio.subprocess.Process, waiter: asyncio.Task) -> bool:
        """Terminate, then kill if still alive after the grace period.

        Returns True if the process had to be killed.
        """
        if waiter.done():
            return False
        logger.info(f"Job {job_id}: terminating makemkvcon (pid {proc.pid})")
        try:
            proc.terminate()
        except ProcessLookupError:
            return False

        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=self._termination_timeout)
            return False
        except asyncio.TimeoutError:
            logger.warning(f"Job {job_id}: makemkvcon ignored termination, killing")
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await waiter
            return True

    async def _drain(self, reader: asyncio.Task) -> None:
        try:
            await asyncio.wait_for(reader, timeout=self._termination_timeout)
        except asyncio.TimeoutError:
            logger.debug("Output reader did not reach EOF; abandoning it")

    async def _read_output(self, job_id: int, stream: asyncio.StreamReader, output: _OutputState) -> None:
        buffer = bytearray()
        skipping = False
        while True:
            chunk = await stream.read(OUTPUT_READ_SIZE)
            if not chunk:
                break
            buffer.extend(chunk)
            end = buffer.find(b"\n")
            while end >= 0:
                raw = bytes(buffer[:end])
                del buffer[: end + 1]
                if skipping:
                    # Tail of an oversized line
                    skipping = False
                else:
                    self._handle_line(job_id, raw, output)
                end = buffer.find(b"\n")
            if len(buffer) > OUTPUT_LINE_LIMIT:
                if not skipping:
                    logger.debug(f"Job {job_id}: skipped an output line over {OUTPUT_LINE_LIMIT} bytes")
                    output.diagnostics.append(f"[output line over {OUTPUT_LINE_LIMIT} bytes skipped]")
                skipping = True
                buffer.clear()
        if buffer and not skipping:
            self._handle_line(job_id, bytes(buffer), output)

    def _handle_line(self, job_id: int, raw: bytes, output: _OutputState) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        event = interpret_rip_line(line)
        if event.percent is not None or event.label is not None:
            self._record_progress(job_id, event.percent, event.label)
        elif event.message:
            output.diagnostics.append(event.message)
            output.last_message = event.message

    def _record_progress(self, job_id: int, percent: float | None, label: str | None) -> None:
        def apply(current: JobSnapshot) -> JobSnapshot:
            if current.state != JobState.RUNNING:
                return current
            changes = {}
            if percent is not None:
                changes["progress_percent"] = round(percent, 1)
            if label is not None:
                changes["progress_label"] = label
            return current.evolve(**changes)

        previous, current = self._registry.update(job_id, apply)
        if current is previous:
            return
        if (
            int(current.progress_percent) != int(previous.progress_percent)
            or current.progress_label != previous.progress_label
        ):
            self._broadcaster.broadcast_job_progress(current)

    def _store_diagnostics(self, job_id: int, output: _OutputState) -> None:
        lines = tuple(output.diagnostics)
        self._registry.update(job_id, lambda current: current.evolve(diagnostics=lines))

    @staticmethod
    def _move_output(staging_dir: Path, output_path: Path) -> Path | None:
        """Move the largest non-empty .mkv in staging to ``output_path``."""
        candidates = [p for p in staging_dir.glob("*.mkv") if p.stat().st_size > 0]
        if not candidates:
            return None
        produced = max(candidates, key=lambda p: p.stat().st_size)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(produced), str(output_path))
        return produced
