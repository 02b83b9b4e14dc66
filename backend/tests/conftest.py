"""Core pytest fixtures shared by unit and integration tests."""

import asyncio
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from reelix.models import AppConfig, Disk, EpisodeIdentity, MovieIdentity, StreamInfo, Title
from reelix.services.disk_catalog import DiskCatalog
from reelix.services.event_broadcaster import EventBroadcaster
from reelix.services.progress_bus import ProgressEventBus

FAKE_MAKEMKVCON = Path(__file__).parent / "fixtures" / "fake_makemkvcon.py"


def make_disk(disk_id: int = 0, label: str = "THE_OFFICE_S1", title_count: int = 4) -> Disk:
    titles = tuple(
        Title(
            index=index,
            name=f"Title {index}",
            duration_seconds=22 * 60 + index,
            chapter_count=6,
            size_bytes=1_200_000_000,
            source_file_name=f"0000{index}.mpls",
            streams=(StreamInfo(index=0, kind="Video", codec="MPEG2"),),
        )
        for index in range(title_count)
    )
    return Disk(id=disk_id, label=label, drive_name="BD-RE HL-DT-ST", device=f"/dev/sr{disk_id}", titles=titles)


@pytest.fixture
def episode():
    """Factory for episode identities of one show."""

    def _episode(number: int, part: str | None = None, season: int = 1, **kwargs) -> EpisodeIdentity:
        defaults = dict(series_title="The Office", year=2005, episode_title=f"Episode {number}")
        defaults.update(kwargs)
        return EpisodeIdentity(series_id=2316, season=season, episode=number, part=part, **defaults)

    return _episode


@pytest.fixture
def movie():
    return MovieIdentity(id=78, title="Blade Runner", year=1982)


@pytest.fixture
def event_bus():
    return ProgressEventBus(queue_size=1000)


@pytest.fixture
def broadcaster(event_bus):
    return EventBroadcaster(event_bus)


@pytest.fixture
def events(event_bus):
    """Subscription collecting every event published during the test."""
    sub = event_bus.subscribe()
    yield sub
    sub.close()


def drain(subscription) -> list[dict]:
    items = []
    while subscription.pending():
        items.append(subscription.get_nowait())
    return items


@pytest.fixture
def drain_events():
    return drain


@pytest.fixture
def static_catalog():
    """A DiskCatalog stand-in serving fixed disks (0 and 1 by default)."""
    disks = {0: make_disk(0), 1: make_disk(1, label="THE_OFFICE_S1_D2")}
    catalog = MagicMock(spec=DiskCatalog)
    catalog.get.side_effect = disks.get
    catalog.title.side_effect = lambda disk_id, index: disks[disk_id].title(index) if disk_id in disks else None
    catalog.disks.side_effect = lambda: [disks[key] for key in sorted(disks)]
    catalog.unavailable = []
    catalog.test_disks = disks
    return catalog


@pytest.fixture
def library(tmp_path):
    """Local staging/library layout and a config loader pointing at it."""
    config = AppConfig(
        makemkv_path="makemkvcon",
        staging_path=str(tmp_path / "staging"),
        library_movies_path=str(tmp_path / "movies"),
        library_tv_path=str(tmp_path / "tv"),
    )

    async def load() -> AppConfig:
        return config

    load.config = config
    load.root = tmp_path
    return load


@pytest.fixture
def fake_rip_command():
    """Build a command factory that runs the fake makemkvcon in ``mode``."""

    def _factory(mode: str, release: Path | None = None):
        def build(makemkv_path, source_spec, title_index, output_dir, min_length):
            cmd = [sys.executable, str(FAKE_MAKEMKVCON), mode, str(output_dir)]
            if release is not None:
                cmd.append(str(release))
            return cmd

        return build

    return _factory


@pytest.fixture
def wait_for_state():
    """Poll a scheduler until a job reaches one of ``states``."""

    async def _wait(scheduler, job_id: int, *states, timeout: float = 15.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            snapshot = scheduler.status(job_id)
            if snapshot.state in states:
                return snapshot
            if loop.time() > deadline:
                raise AssertionError(f"job {job_id} stuck in {snapshot.state.value}, wanted {states}")
            await asyncio.sleep(0.02)

    return _wait
