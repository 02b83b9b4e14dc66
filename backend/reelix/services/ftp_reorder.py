"""FTP episode reorder - renumber already-uploaded episodes of a season.

A reorder request is a list of (from, to) episode swaps that must form a
permutation of the episodes present on the server. The engine validates the
whole request against the live listing before touching anything, orders the
renames so no rename ever overwrites a file (cycles go through a scratch
name), applies them, and on failure tries to undo what was applied.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from pathlib import PurePosixPath

from reelix.core import naming
from reelix.core.errors import InvalidPermutationError, PartialReorderFailure, ReelixError
from reelix.core.remote_store import RemoteFileStore
from reelix.models import SeriesRef, SwapOperation

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = ".reelix-swap-"


@dataclass(frozen=True)
class EpisodeFile:
    name: str
    episode: int
    part: str | None
    title: str
    extension: str


@dataclass(frozen=True)
class ReorderPlan:
    directory: str
    renames: tuple[tuple[str, str], ...]  # original name -> final name
    steps: tuple[tuple[str, str], ...]  # rename sequence, scratch names included


@dataclass(frozen=True)
class ReorderResult:
    series_id: int
    season: int
    directory: str
    renames: tuple[tuple[str, str], ...]
    steps: tuple[tuple[str, str], ...]

    def to_dict(self) -> dict:
        return {
            "series_id": self.series_id,
            "season": self.season,
            "directory": self.directory,
            "renames": [list(pair) for pair in self.renames],
            "steps": [list(pair) for pair in self.steps],
        }


class FtpReorderEngine:
    """Validated, collision-free episode renumbering on a remote store."""

    def __init__(self, store: RemoteFileStore, base_path: str):
        self._store = store
        self._base_path = base_path or "/"

    def season_directory(self, series: SeriesRef, season: int) -> str:
        series_dir = naming.title_year(series.title, series.year)
        return str(PurePosixPath(self._base_path, naming.season_directory(series_dir, season)))

    def list_episode_files(self, series: SeriesRef, season: int) -> tuple[str, list[EpisodeFile], list[str]]:
        """Return the season directory, its episode files and any other entries."""
        directory = self.season_directory(series, season)
        series_dir = naming.title_year(series.title, series.year)

        episodes: list[EpisodeFile] = []
        others: list[str] = []
        for name in self._store.list_names(directory):
            parsed = naming.parse_episode_file_name(name, series_dir, season)
            if parsed is None:
                others.append(name)
                continue
            episodes.append(
                EpisodeFile(
                    name=name,
                    episode=parsed.episode,
                    part=parsed.part,
                    title=parsed.title,
                    extension=parsed.extension,
                )
            )
        return directory, episodes, others

    def ripped_episode_numbers(self, series: SeriesRef, season: int) -> list[int]:
        """Episode numbers that already have at least one file on the server."""
        _, episodes, _ = self.list_episode_files(series, season)
        return sorted({episode.episode for episode in episodes})

    def plan(
        self,
        series: SeriesRef,
        season: int,
        swaps: list[SwapOperation],
        episode_titles: dict[int, str] | None = None,
    ) -> ReorderPlan:
        """Validate ``swaps`` against the live listing and compute the renames.

        Raises:
            InvalidPermutationError: the swaps are not a permutation of the
                episodes present, or the result would clobber a file
        """
        directory, episodes, others = self.list_episode_files(series, season)
        by_episode: dict[int, list[EpisodeFile]] = defaultdict(list)
        for episode in episodes:
            by_episode[episode.episode].append(episode)

        _validate_permutation(swaps, by_episode)

        episode_titles = episode_titles or {}
        series_dir = naming.title_year(series.title, series.year)

        def title_for(number: int) -> str:
            if episode_titles.get(number):
                return episode_titles[number]
            files = sorted(by_episode[number], key=lambda f: int(f.part or 0))
            return files[0].title

        renames: dict[str, str] = {}
        for swap in swaps:
            target_title = title_for(swap.to_episode)
            for file in by_episode[swap.from_episode]:
                new_name = naming.episode_file_name(
                    series_dir, season, swap.to_episode, target_title, file.part, file.extension
                )
                if new_name != file.name:
                    renames[file.name] = new_name

        destinations = list(renames.values())
        if len(set(destinations)) != len(destinations):
            raise InvalidPermutationError("Two files would be renamed to the same name")

        moving = set(renames)
        bystanders = {e.name for e in episodes if e.name not in moving} | set(others)
        clobbered = sorted(bystanders.intersection(destinations))
        if clobbered:
            raise InvalidPermutationError(f"Reorder would overwrite files not being moved: {', '.join(clobbered)}")

        steps = _order_renames(renames, occupied={e.name for e in episodes} | set(others))
        return ReorderPlan(directory=directory, renames=tuple(renames.items()), steps=tuple(steps))

    def reorder(
        self,
        series: SeriesRef,
        season: int,
        swaps: list[SwapOperation],
        episode_titles: dict[int, str] | None = None,
    ) -> ReorderResult:
        """Renumber the episodes of a season on the server.

        Raises:
            InvalidPermutationError: rejected before any remote change
            PartialReorderFailure: a rename failed midway; applied renames
                were reversed as far as possible
            TransientNetworkError: the listing could not be fetched
        """
        plan = self.plan(series, season, swaps, episode_titles)
        logger.info(
            f"Reordering {series.title} season {season}: {len(plan.renames)} files, {len(plan.steps)} renames"
        )

        location = {original: original for original, _ in plan.renames}
        applied: list[tuple[str, str]] = []
        for source, target in plan.steps:
            try:
                self._store.rename(self._path(plan.directory, source), self._path(plan.directory, target))
            except ReelixError as e:
                logger.error(f"Reorder step {source} -> {target} failed: {e}")
                self._rollback(plan.directory, applied, location)
                unrestored = sorted(name for name, current in location.items() if current != name)
                stranded = ", ".join(f"{name} (now {location[name]})" for name in unrestored)
                message = f"Rename {source} -> {target} failed: {e}"
                if stranded:
                    message += f"; could not restore {stranded}"
                raise PartialReorderFailure(
                    message,
                    failed_step=(source, target),
                    applied=list(applied),
                    unrestored=unrestored,
                ) from e
            applied.append((source, target))
            _move(location, source, target)

        logger.info(f"Reorder of {series.title} season {season} complete")
        return ReorderResult(
            series_id=series.id,
            season=season,
            directory=plan.directory,
            renames=plan.renames,
            steps=plan.steps,
        )

    def _rollback(self, directory: str, applied: list[tuple[str, str]], location: dict[str, str]) -> None:
        """Reverse applied renames newest first, best effort."""
        for source, target in reversed(applied):
            try:
                self._store.rename(self._path(directory, target), self._path(directory, source))
            except ReelixError as e:
                logger.error(f"Rollback of {source} -> {target} failed: {e}")
                continue
            _move(location, target, source)

    @staticmethod
    def _path(directory: str, name: str) -> str:
        return str(PurePosixPath(directory, name))


def _validate_permutation(swaps: list[SwapOperation], by_episode: dict[int, list[EpisodeFile]]) -> None:
    sources = [swap.from_episode for swap in swaps]
    targets = [swap.to_episode for swap in swaps]

    missing = sorted({n for n in sources + targets if n not in by_episode})
    if missing:
        raise InvalidPermutationError(f"Episodes not present on the server: {missing}")
    if len(set(sources)) != len(sources):
        raise InvalidPermutationError("An episode is moved more than once")
    if len(set(targets)) != len(targets):
        raise InvalidPermutationError("Two episodes are moved to the same number")
    if set(sources) != set(targets):
        unfilled = sorted(set(sources) - set(targets))
        overfilled = sorted(set(targets) - set(sources))
        raise InvalidPermutationError(
            f"Swaps are not a permutation: episodes {unfilled} would be left empty, "
            f"episodes {overfilled} would be overwritten"
        )

    for number in sources:
        files = by_episode[number]
        if len(files) < 2:
            continue
        parts = [f.part for f in files]
        if None in parts or len(set(parts)) != len(parts):
            raise InvalidPermutationError(
                f"Episode {number} has several files without distinct part labels"
            )


def _order_renames(renames: dict[str, str], occupied: set[str]) -> list[tuple[str, str]]:
    """Order renames so every target is free when it is renamed into.

    Chains resolve by moving the file whose target is free first. When only
    cycles remain, one file of the cycle is parked under a scratch name.
    """
    pending = dict(renames)
    occupied = set(occupied)
    steps: list[tuple[str, str]] = []
    stamp = int(time.time())
    scratch_count = 0

    while pending:
        progressed = False
        for source, target in list(pending.items()):
            if target in occupied:
                continue
            steps.append((source, target))
            occupied.discard(source)
            occupied.add(target)
            del pending[source]
            progressed = True

        if progressed:
            continue

        source = next(iter(pending))
        extension = PurePosixPath(source).suffix
        scratch = f"{SCRATCH_PREFIX}{stamp}-{scratch_count}{extension}"
        while scratch in occupied:
            scratch_count += 1
            scratch = f"{SCRATCH_PREFIX}{stamp}-{scratch_count}{extension}"
        scratch_count += 1

        steps.append((source, scratch))
        occupied.discard(source)
        occupied.add(scratch)
        pending[scratch] = pending.pop(source)

    return steps


def _move(location: dict[str, str], source: str, target: str) -> None:
    for original, current in location.items():
        if current == source:
            location[original] = target
            return
