"""Title assignment store - which disc title is ripped as which movie/episode.

Keeps a forward index (title -> identity) and an inverse index
(identity -> title) that are always changed together under one lock, so no
observer ever sees them disagree.

Rules:
    * a title maps to at most one identity
    * an identity maps to at most one title; a multi-part movie or episode
      may span several titles, one per distinct part number
    * a movie or episode is either assigned whole or in parts, never both
"""

import logging
import threading
from dataclasses import dataclass

from reelix.core.errors import AssignmentConflictError
from reelix.models import EpisodeIdentity, MediaIdentity, TitleRef
from reelix.services.event_broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Assignment:
    title_ref: TitleRef
    identity: MediaIdentity

    def to_dict(self) -> dict:
        return {
            "disk_id": self.title_ref.disk_id,
            "title_index": self.title_ref.title_index,
            "identity": self.identity.to_dict(),
        }


class TitleAssignmentStore:
    """Thread-safe two-way mapping between disc titles and media identities."""

    def __init__(self, broadcaster: EventBroadcaster):
        self._broadcaster = broadcaster
        self._lock = threading.Lock()
        self._by_title: dict[TitleRef, MediaIdentity] = {}
        self._by_identity: dict[MediaIdentity, TitleRef] = {}

    def assign(self, title_ref: TitleRef, identity: MediaIdentity, part: str | int | None = None) -> Assignment:
        """Assign ``title_ref`` to ``identity``, replacing its previous assignment.

        Args:
            title_ref: Disc title being assigned
            identity: Target movie or episode
            part: Part number for multi-title movies and episodes; overrides
                ``identity.part``

        Raises:
            AssignmentConflictError: the identity (or an incompatible form of
                the same movie or episode) is already held by another title
            InvalidPartLabelError: ``part`` is not a valid part number
        """
        if part not in (None, ""):
            identity = identity.with_part(part)

        with self._lock:
            holder = self._by_identity.get(identity)
            if holder is not None and holder != title_ref:
                raise AssignmentConflictError(f"{_describe(identity)} is already assigned to {holder}")

            self._check_parts(title_ref, identity)

            previous = self._by_title.get(title_ref)
            if previous is not None:
                del self._by_identity[previous]
            self._by_title[title_ref] = identity
            self._by_identity[identity] = title_ref

        if previous is not None and previous != identity:
            logger.info(f"Reassigned {title_ref}: {_describe(previous)} -> {_describe(identity)}")
        else:
            logger.info(f"Assigned {title_ref} to {_describe(identity)}")
        self._broadcaster.broadcast_assignments_changed(title_ref.disk_id)
        return Assignment(title_ref, identity)

    def _check_parts(self, title_ref: TitleRef, identity: MediaIdentity) -> None:
        for other, other_ref in self._by_identity.items():
            if other_ref == title_ref or other.group_key != identity.group_key:
                continue
            if other.is_multi_part != identity.is_multi_part:
                raise AssignmentConflictError(
                    f"{_describe(identity.with_part(None))} is already assigned "
                    f"{'in parts' if other.is_multi_part else 'whole'} to {other_ref}"
                )

    def withdraw(self, title_ref: TitleRef, identity: MediaIdentity | None = None) -> bool:
        """Remove the assignment of ``title_ref``. Idempotent.

        When ``identity`` is given the title is only withdrawn if it is
        currently assigned to it; a movie or episode without a part number
        matches any of its parts.

        Returns:
            True if an assignment was removed
        """
        with self._lock:
            current = self._by_title.get(title_ref)
            if current is None or (identity is not None and not _matches(current, identity)):
                return False
            del self._by_title[title_ref]
            del self._by_identity[current]

        logger.info(f"Withdrew {_describe(current)} from {title_ref}")
        self._broadcaster.broadcast_assignments_changed(title_ref.disk_id)
        return True

    def assignment_for(self, title_ref: TitleRef) -> MediaIdentity | None:
        with self._lock:
            return self._by_title.get(title_ref)

    def titles_for(self, identity: MediaIdentity) -> list[TitleRef]:
        """Titles assigned to ``identity``; all parts, in part order, when it has no part."""
        with self._lock:
            if not identity.part:
                matches = [
                    (int(other.part or 0), ref)
                    for other, ref in self._by_identity.items()
                    if other.group_key == identity.group_key
                ]
                return [ref for _, ref in sorted(matches, key=lambda item: item[0])]
            ref = self._by_identity.get(identity)
            return [ref] if ref is not None else []

    def assignments_for_disk(self, disk_id: int) -> tuple[Assignment, ...]:
        """Point-in-time view of one disk's assignments, ordered by title."""
        with self._lock:
            items = [
                Assignment(ref, identity)
                for ref, identity in self._by_title.items()
                if ref.disk_id == disk_id
            ]
        return tuple(sorted(items, key=lambda a: a.title_ref.title_index))

    def all(self) -> tuple[Assignment, ...]:
        with self._lock:
            items = [Assignment(ref, identity) for ref, identity in self._by_title.items()]
        return tuple(sorted(items, key=lambda a: (a.title_ref.disk_id, a.title_ref.title_index)))

    def clear_disk(self, disk_id: int) -> int:
        """Drop every assignment of a disk. Returns how many were removed."""
        with self._lock:
            refs = [ref for ref in self._by_title if ref.disk_id == disk_id]
            for ref in refs:
                del self._by_identity[self._by_title.pop(ref)]

        if refs:
            logger.info(f"Cleared {len(refs)} assignments of disk {disk_id}")
            self._broadcaster.broadcast_assignments_changed(disk_id)
        return len(refs)


def _matches(current: MediaIdentity, identity: MediaIdentity) -> bool:
    if current == identity:
        return True
    return not identity.part and current.group_key == identity.group_key


def _describe(identity: MediaIdentity) -> str:
    if isinstance(identity, EpisodeIdentity):
        suffix = f" part {identity.part}" if identity.part else ""
        return f"series {identity.series_id} {identity.code}{suffix}"
    edition = f" ({identity.edition})" if identity.edition else ""
    suffix = f" part {identity.part}" if identity.part else ""
    return f"movie {identity.id}{edition}{suffix}"
