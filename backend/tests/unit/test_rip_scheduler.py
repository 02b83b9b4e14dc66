"""Tests for RipJobScheduler.

These run the real supervision path against a fake makemkvcon script
(tests/fixtures/fake_makemkvcon.py), so process spawning, progress parsing,
termination and output moving are all exercised.
"""

import asyncio
import sys
from pathlib import Path

import pytest

from reelix.core.errors import ConfigurationError, DuplicateJobError, JobNotFoundError, UnknownTitleError
from reelix.models import Disk, JobState, Title
from reelix.services.rip_scheduler import RipJobScheduler

FAKE_TOOL = Path(__file__).parent.parent / "fixtures" / "fake_makemkvcon.py"


def gated_per_disk(release_dir: Path):
    """Command factory whose jobs block until ``release-<disk>`` exists."""

    def build(makemkv_path, source_spec, title_index, output_dir, min_length):
        disk_id = source_spec.split(":", 1)[1]
        return [sys.executable, str(FAKE_TOOL), "gated", str(output_dir), str(release_dir / f"release-{disk_id}")]

    return build


def release(release_dir: Path, disk_id: int) -> None:
    (release_dir / f"release-{disk_id}").touch()


def add_disks(catalog, *disk_ids: int) -> None:
    for disk_id in disk_ids:
        catalog.test_disks[disk_id] = Disk(
            id=disk_id,
            label=f"DISC_{disk_id}",
            titles=(Title(index=0, duration_seconds=1400), Title(index=1, duration_seconds=1400)),
        )


async def wait_until(predicate, timeout: float = 15.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


@pytest.fixture
async def make_scheduler(static_catalog, broadcaster, library):
    """Build schedulers against the static catalog; all are shut down afterwards."""
    created: list[RipJobScheduler] = []

    def _make(command_factory, **kwargs) -> RipJobScheduler:
        kwargs.setdefault("max_concurrent", 2)
        kwargs.setdefault("termination_timeout", 5.0)
        scheduler = RipJobScheduler(
            static_catalog,
            broadcaster,
            config_loader=library,
            command_factory=command_factory,
            **kwargs,
        )
        created.append(scheduler)
        return scheduler

    yield _make

    for scheduler in created:
        await scheduler.shutdown()


class TestSuccessfulRip:
    async def test_output_moved_to_library_path(self, make_scheduler, fake_rip_command, library, episode, wait_for_state):
        scheduler = make_scheduler(fake_rip_command("success"))

        job_id = await scheduler.submit(0, 1, episode(1))
        snapshot = await wait_for_state(scheduler, job_id, JobState.SUCCEEDED, JobState.FAILED)

        assert snapshot.state == JobState.SUCCEEDED
        assert snapshot.exit_status == 0
        assert snapshot.progress_percent == 100.0
        expected = library.root / "tv" / "The Office (2005)" / "Season 01" / "The Office (2005) - S01E01 - Episode 1.mkv"
        assert snapshot.output_path == str(expected)
        assert expected.read_bytes().startswith(b"\x1aE\xdf\xa3")

    async def test_movie_goes_to_movie_library(self, make_scheduler, fake_rip_command, library, movie, wait_for_state):
        scheduler = make_scheduler(fake_rip_command("success"))

        job_id = await scheduler.submit(0, 0, movie)
        await wait_for_state(scheduler, job_id, JobState.SUCCEEDED)

        assert (library.root / "movies" / "Blade Runner (1982)" / "Blade Runner (1982).mkv").exists()

    async def test_events_follow_lifecycle(
        self, make_scheduler, fake_rip_command, episode, events, drain_events, wait_for_state
    ):
        scheduler = make_scheduler(fake_rip_command("success"))

        job_id = await scheduler.submit(0, 1, episode(1))
        await wait_for_state(scheduler, job_id, JobState.SUCCEEDED)

        job_events = [e for e in drain_events(events) if e.get("job_id") == job_id]
        updates = [e["state"] for e in job_events if e["type"] == "job_update"]
        assert updates == ["queued", "running", "succeeded"]

        progress = [e for e in job_events if e["type"] == "job_progress"]
        percents = [e["progress_percent"] for e in progress]
        assert 50.0 in percents
        assert percents == sorted(percents)
        assert progress[0]["progress_label"] == "Saving to MKV file"
        assert job_events[-1]["type"] == "job_update"

    async def test_title_can_be_ripped_again_after_success(self, make_scheduler, fake_rip_command, episode, wait_for_state):
        scheduler = make_scheduler(fake_rip_command("success"))

        first = await scheduler.submit(0, 1, episode(1))
        await wait_for_state(scheduler, first, JobState.SUCCEEDED)
        second = await scheduler.submit(0, 1, episode(1))

        assert second != first
        await wait_for_state(scheduler, second, JobState.SUCCEEDED)


class TestFailures:
    @pytest.mark.parametrize("mode", ["no-output", "empty"])
    async def test_exit_zero_without_output_is_false_success(
        self, make_scheduler, fake_rip_command, library, episode, wait_for_state, mode
    ):
        scheduler = make_scheduler(fake_rip_command(mode))

        job_id = await scheduler.submit(0, 1, episode(1))
        snapshot = await wait_for_state(scheduler, job_id, JobState.SUCCEEDED, JobState.FAILED)

        assert snapshot.state == JobState.FAILED
        assert snapshot.error_kind == "tool_reported_false_success"
        assert snapshot.exit_status == 0
        assert not Path(snapshot.output_path).exists()

    async def test_non_zero_exit(self, make_scheduler, fake_rip_command, episode, wait_for_state):
        scheduler = make_scheduler(fake_rip_command("fail"))

        job_id = await scheduler.submit(0, 1, episode(1))
        snapshot = await wait_for_state(scheduler, job_id, JobState.FAILED, JobState.SUCCEEDED)

        assert snapshot.state == JobState.FAILED
        assert snapshot.error_kind == "process_exit_failure"
        assert snapshot.exit_status == 3
        assert snapshot.error_message == "Failed to open disc"
        assert "some unrecognised chatter" in snapshot.diagnostics

    async def test_spawn_failure(self, make_scheduler, tmp_path, episode, wait_for_state):
        def missing_tool(makemkv_path, source_spec, title_index, output_dir, min_length):
            return [str(tmp_path / "no-such-makemkvcon"), "mkv", source_spec, str(title_index), str(output_dir)]

        scheduler = make_scheduler(missing_tool)

        job_id = await scheduler.submit(0, 1, episode(1))
        snapshot = await wait_for_state(scheduler, job_id, JobState.FAILED)

        assert snapshot.error_kind == "process_spawn_failure"
        assert snapshot.exit_status is None

    async def test_failed_job_frees_its_slot(self, make_scheduler, fake_rip_command, episode, wait_for_state):
        scheduler = make_scheduler(fake_rip_command("fail"), max_concurrent=1)

        first = await scheduler.submit(0, 0, episode(1))
        second = await scheduler.submit(0, 1, episode(2))

        await wait_for_state(scheduler, first, JobState.FAILED)
        await wait_for_state(scheduler, second, JobState.FAILED)
        assert scheduler.running_count == 0


class TestSubmitValidation:
    async def test_unknown_disk(self, make_scheduler, fake_rip_command, episode):
        scheduler = make_scheduler(fake_rip_command("success"))
        with pytest.raises(UnknownTitleError):
            await scheduler.submit(9, 0, episode(1))
        assert scheduler.jobs() == []

    async def test_unknown_title(self, make_scheduler, fake_rip_command, episode):
        scheduler = make_scheduler(fake_rip_command("success"))
        with pytest.raises(UnknownTitleError) as exc:
            await scheduler.submit(0, 99, episode(1))
        assert exc.value.title_index == 99

    async def test_duplicate_active_job(self, make_scheduler, tmp_path, episode, wait_for_state):
        scheduler = make_scheduler(gated_per_disk(tmp_path))

        job_id = await scheduler.submit(0, 1, episode(1))
        with pytest.raises(DuplicateJobError) as exc:
            await scheduler.submit(0, 1, episode(2))
        assert exc.value.existing_job_id == job_id

        release(tmp_path, 0)
        await wait_for_state(scheduler, job_id, JobState.SUCCEEDED)

    async def test_missing_library_path(self, make_scheduler, fake_rip_command, library, episode):
        library.config.library_tv_path = ""
        scheduler = make_scheduler(fake_rip_command("success"))
        with pytest.raises(ConfigurationError):
            await scheduler.submit(0, 1, episode(1))

    async def test_status_of_unknown_job(self, make_scheduler, fake_rip_command):
        scheduler = make_scheduler(fake_rip_command("success"))
        with pytest.raises(JobNotFoundError):
            scheduler.status(123)


class TestConcurrency:
    async def test_ceiling_is_respected(self, make_scheduler, static_catalog, tmp_path, episode, wait_for_state):
        add_disks(static_catalog, 2, 3)
        scheduler = make_scheduler(gated_per_disk(tmp_path), max_concurrent=2)

        ids = [await scheduler.submit(disk_id, 0, episode(disk_id + 1)) for disk_id in range(4)]

        states = [scheduler.status(job_id).state for job_id in ids]
        assert states == [JobState.RUNNING, JobState.RUNNING, JobState.QUEUED, JobState.QUEUED]
        assert scheduler.running_count == 2
        assert scheduler.queued_ids == ids[2:]

        for disk_id in range(4):
            release(tmp_path, disk_id)
        for job_id in ids:
            await wait_for_state(scheduler, job_id, JobState.SUCCEEDED)

    async def test_one_queued_job_promoted_per_completion(
        self, make_scheduler, static_catalog, tmp_path, episode, wait_for_state
    ):
        add_disks(static_catalog, 2, 3)
        scheduler = make_scheduler(gated_per_disk(tmp_path), max_concurrent=2)
        ids = [await scheduler.submit(disk_id, 0, episode(disk_id + 1)) for disk_id in range(4)]

        release(tmp_path, 0)
        await wait_for_state(scheduler, ids[0], JobState.SUCCEEDED)
        await wait_for_state(scheduler, ids[2], JobState.RUNNING)

        assert scheduler.status(ids[3]).state == JobState.QUEUED
        assert scheduler.running_count == 2

        for disk_id in (1, 2, 3):
            release(tmp_path, disk_id)
        for job_id in ids:
            await wait_for_state(scheduler, job_id, JobState.SUCCEEDED)

    async def test_one_job_per_disk(self, make_scheduler, tmp_path, episode, wait_for_state):
        scheduler = make_scheduler(gated_per_disk(tmp_path), max_concurrent=2)

        first = await scheduler.submit(0, 0, episode(1))
        second = await scheduler.submit(0, 1, episode(2))
        other_disk = await scheduler.submit(1, 0, episode(3))

        assert scheduler.status(first).state == JobState.RUNNING
        assert scheduler.status(second).state == JobState.QUEUED
        assert scheduler.status(other_disk).state == JobState.RUNNING

        release(tmp_path, 0)
        await wait_for_state(scheduler, first, JobState.SUCCEEDED)
        await wait_for_state(scheduler, second, JobState.SUCCEEDED)

        release(tmp_path, 1)
        await wait_for_state(scheduler, other_disk, JobState.SUCCEEDED)


class TestCancellation:
    async def test_cancel_queued_job_never_spawns(self, make_scheduler, tmp_path, library, episode, wait_for_state):
        scheduler = make_scheduler(gated_per_disk(tmp_path), max_concurrent=1)
        running = await scheduler.submit(0, 0, episode(1))
        queued = await scheduler.submit(1, 0, episode(2))

        snapshot = scheduler.cancel(queued)

        assert snapshot.state == JobState.CANCELLED
        assert snapshot.started_at is None
        assert queued not in scheduler.queued_ids
        assert not (library.root / "staging" / f"job_{queued}").exists()

        release(tmp_path, 0)
        await wait_for_state(scheduler, running, JobState.SUCCEEDED)
        assert scheduler.status(queued).state == JobState.CANCELLED

    async def test_cancel_running_job(self, make_scheduler, fake_rip_command, episode, wait_for_state):
        scheduler = make_scheduler(fake_rip_command("hang"))
        job_id = await scheduler.submit(0, 1, episode(1))
        await wait_until(lambda: scheduler.status(job_id).progress_percent > 0)

        scheduler.cancel(job_id)
        snapshot = await wait_for_state(scheduler, job_id, JobState.CANCELLED, JobState.FAILED)

        assert snapshot.state == JobState.CANCELLED
        assert snapshot.error_kind is None
        assert not Path(snapshot.output_path).exists()
        assert scheduler.running_count == 0

    async def test_process_ignoring_termination_is_killed(
        self, make_scheduler, fake_rip_command, episode, wait_for_state
    ):
        scheduler = make_scheduler(fake_rip_command("stubborn"), termination_timeout=0.5)
        job_id = await scheduler.submit(0, 1, episode(1))
        await wait_until(lambda: scheduler.status(job_id).progress_percent > 0)

        scheduler.cancel(job_id)
        snapshot = await wait_for_state(scheduler, job_id, JobState.CANCELLED, JobState.FAILED)

        assert snapshot.state == JobState.CANCELLED
        assert snapshot.error_kind == "cancellation_timeout"

    async def test_cancel_terminal_job_is_noop(
        self, make_scheduler, fake_rip_command, episode, events, drain_events, wait_for_state
    ):
        scheduler = make_scheduler(fake_rip_command("success"))
        job_id = await scheduler.submit(0, 1, episode(1))
        await wait_for_state(scheduler, job_id, JobState.SUCCEEDED)
        drain_events(events)

        assert scheduler.cancel(job_id).state == JobState.SUCCEEDED
        assert drain_events(events) == []

    async def test_cancelled_slot_goes_to_next_job(self, make_scheduler, fake_rip_command, episode, wait_for_state):
        scheduler = make_scheduler(fake_rip_command("hang"), max_concurrent=1)
        first = await scheduler.submit(0, 0, episode(1))
        second = await scheduler.submit(1, 0, episode(2))
        assert scheduler.status(second).state == JobState.QUEUED

        scheduler.cancel(first)
        await wait_for_state(scheduler, first, JobState.CANCELLED)
        await wait_for_state(scheduler, second, JobState.RUNNING)

    async def test_shutdown_cancels_everything(self, make_scheduler, tmp_path, episode, wait_for_state):
        scheduler = make_scheduler(gated_per_disk(tmp_path), max_concurrent=1)
        running = await scheduler.submit(0, 0, episode(1))
        queued = await scheduler.submit(1, 0, episode(2))

        await scheduler.shutdown()

        assert scheduler.status(running).state == JobState.CANCELLED
        assert scheduler.status(queued).state == JobState.CANCELLED
        with pytest.raises(ConfigurationError):
            await scheduler.submit(1, 1, episode(3))

    async def test_submit_racing_shutdown_is_refused(
        self, static_catalog, broadcaster, library, fake_rip_command, episode
    ):
        loader_entered = asyncio.Event()
        release_loader = asyncio.Event()

        async def slow_loader():
            loader_entered.set()
            await release_loader.wait()
            return await library()

        scheduler = RipJobScheduler(
            static_catalog, broadcaster, config_loader=slow_loader, command_factory=fake_rip_command("success")
        )
        pending = asyncio.create_task(scheduler.submit(0, 1, episode(1)))
        await loader_entered.wait()

        await scheduler.shutdown()
        release_loader.set()

        with pytest.raises(ConfigurationError):
            await pending
        assert scheduler.jobs() == []


class TestToolOutput:
    async def test_very_long_line_is_read_whole(self, make_scheduler, fake_rip_command, episode, wait_for_state):
        scheduler = make_scheduler(fake_rip_command("long-line"))

        job_id = await scheduler.submit(0, 1, episode(1))
        snapshot = await wait_for_state(scheduler, job_id, JobState.SUCCEEDED, JobState.FAILED)

        assert snapshot.state == JobState.SUCCEEDED
        assert "x" * 100_000 in snapshot.diagnostics

    async def test_line_over_limit_is_skipped_whole(
        self, make_scheduler, fake_rip_command, episode, wait_for_state, monkeypatch
    ):
        monkeypatch.setattr("reelix.services.rip_scheduler.OUTPUT_LINE_LIMIT", 1024)
        scheduler = make_scheduler(fake_rip_command("long-line"))

        job_id = await scheduler.submit(0, 1, episode(1))
        snapshot = await wait_for_state(scheduler, job_id, JobState.SUCCEEDED, JobState.FAILED)

        assert snapshot.state == JobState.SUCCEEDED
        assert snapshot.diagnostics == ("[output line over 1024 bytes skipped]",)

    async def test_diagnostics_keep_only_latest_lines(self, make_scheduler, fake_rip_command, episode, wait_for_state):
        scheduler = make_scheduler(fake_rip_command("chatter"), diagnostic_lines=3)

        job_id = await scheduler.submit(0, 1, episode(1))
        snapshot = await wait_for_state(scheduler, job_id, JobState.SUCCEEDED, JobState.FAILED)

        assert snapshot.state == JobState.SUCCEEDED
        assert snapshot.diagnostics == ("chatter line 8", "chatter line 9", "chatter line 10")

    async def test_leftover_staging_files_do_not_count_as_output(
        self, make_scheduler, fake_rip_command, library, episode, wait_for_state
    ):
        stale = library.root / "staging" / "job_1"
        stale.mkdir(parents=True)
        (stale / "title_t00.mkv").write_bytes(b"\x1aE\xdf\xa3 from an earlier run")
        scheduler = make_scheduler(fake_rip_command("no-output"))

        job_id = await scheduler.submit(0, 1, episode(1))
        snapshot = await wait_for_state(scheduler, job_id, JobState.SUCCEEDED, JobState.FAILED)

        assert job_id == 1
        assert snapshot.state == JobState.FAILED
        assert snapshot.error_kind == "tool_reported_false_success"
