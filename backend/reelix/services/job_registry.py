"""In-memory arena of rip jobs.

Each active job lives in a record with its own lock; the only way to change
a job is :meth:`JobRegistry.update`, which swaps in a new immutable snapshot.
Readers always get the last published snapshot and never wait for a writer
of another job. Terminal jobs move into a fixed-capacity history, oldest
evicted first.
"""

import itertools
import logging
import threading
from collections import OrderedDict
from collections.abc import Callable

from reelix.core.errors import DuplicateJobError, JobNotFoundError
from reelix.models import JobSnapshot, TitleRef

logger = logging.getLogger(__name__)


class JobRecord:
    """Mutation gateway for a single job."""

    __slots__ = ("lock", "snapshot")

    def __init__(self, snapshot: JobSnapshot):
        self.lock = threading.Lock()
        self.snapshot = snapshot


class JobRegistry:
    def __init__(self, history_capacity: int = 100):
        self._history_capacity = history_capacity
        self._ids = itertools.count(1)
        self._lock = threading.Lock()  # guards membership of the two maps
        self._active: dict[int, JobRecord] = {}
        self._history: OrderedDict[int, JobSnapshot] = OrderedDict()

    def create(self, title_ref: TitleRef, factory: Callable[[int], JobSnapshot]) -> JobSnapshot:
        """Record a new job for ``title_ref``.

        Raises:
            DuplicateJobError: a non-terminal job already holds the title
        """
        with self._lock:
            for record in self._active.values():
                if record.snapshot.title_ref == title_ref:
                    raise DuplicateJobError(
                        title_ref.disk_id, title_ref.title_index, record.snapshot.id
                    )
            snapshot = factory(next(self._ids))
            self._active[snapshot.id] = JobRecord(snapshot)
        return snapshot

    def get(self, job_id: int) -> JobSnapshot:
        snapshot = self.find(job_id)
        if snapshot is None:
            raise JobNotFoundError(job_id)
        return snapshot

    def find(self, job_id: int) -> JobSnapshot | None:
        record = self._active.get(job_id)
        if record is not None:
            return record.snapshot
        return self._history.get(job_id)

    def update(
        self, job_id: int, fn: Callable[[JobSnapshot], JobSnapshot]
    ) -> tuple[JobSnapshot, JobSnapshot]:
        """Apply ``fn`` to the job's snapshot under its lock.

        Returns the (previous, current) pair. Historical jobs are immutable:
        ``fn`` still sees them but its result is discarded.
        """
        record = self._active.get(job_id)
        if record is None:
            snapshot = self._history.get(job_id)
            if snapshot is None:
                raise JobNotFoundError(job_id)
            fn(snapshot)
            return snapshot, snapshot

        with record.lock:
            previous = record.snapshot
            current = fn(previous)
            record.snapshot = current

        if current.is_terminal and not previous.is_terminal:
            self._retire(current)
        return previous, current

    def _retire(self, snapshot: JobSnapshot) -> None:
        with self._lock:
            self._active.pop(snapshot.id, None)
            self._history[snapshot.id] = snapshot
            while len(self._history) > self._history_capacity:
                evicted_id, _ = self._history.popitem(last=False)
                logger.debug(f"Evicted job {evicted_id} from history")

    def active(self) -> list[JobSnapshot]:
        """Non-terminal jobs in submission order."""
        with self._lock:
            records = list(self._active.values())
        return sorted((record.snapshot for record in records), key=lambda s: s.id)

    def history(self) -> list[JobSnapshot]:
        """Terminal jobs, most recently finished first."""
        with self._lock:
            return list(reversed(self._history.values()))

    def all(self) -> list[JobSnapshot]:
        """Active jobs (newest first) followed by history."""
        return list(reversed(self.active())) + self.history()

    def active_for_title(self, title_ref: TitleRef) -> JobSnapshot | None:
        for snapshot in self.active():
            if snapshot.title_ref == title_ref:
                return snapshot
        return None
