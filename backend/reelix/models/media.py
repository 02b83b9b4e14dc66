"""Media identities - the movie or TV episode a title is ripped for.

Identities arrive already resolved by the metadata service, so they carry the
display fields needed for naming. Only the key fields take part in equality
and hashing; two identities for the same episode compare equal even if one
carries a fresher episode title.

A movie or an episode may be split across several titles, one per part.
Part labels are whole numbers from 1 to 65535, kept in canonical string form
("02" becomes "2").
"""

from dataclasses import dataclass, field
from typing import Union

from reelix.core.errors import InvalidPartLabelError

MAX_PART_NUMBER = 65535


def normalize_part(part: str | int | None) -> str | None:
    """Canonical form of a part label; None or "" means no part.

    Raises:
        InvalidPartLabelError: the label is not a number from 1 to 65535
    """
    if part is None:
        return None
    text = str(part).strip()
    if not text:
        return None
    if not (text.isascii() and text.isdigit()) or not 1 <= int(text) <= MAX_PART_NUMBER:
        raise InvalidPartLabelError(f"Invalid part label {part!r}: expected a number from 1 to {MAX_PART_NUMBER}")
    return str(int(text))


@dataclass(frozen=True)
class MovieIdentity:
    """A movie, optionally a specific edition or one part of a multi-title movie."""

    id: int
    title: str = field(default="", compare=False)
    year: int | None = field(default=None, compare=False)
    edition: str | None = None
    part: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "part", normalize_part(self.part))

    @property
    def is_multi_part(self) -> bool:
        return bool(self.part)

    @property
    def group_key(self) -> tuple:
        """Identifies the movie regardless of part."""
        return ("movie", self.id, self.edition)

    def with_part(self, part: str | int | None) -> "MovieIdentity":
        return MovieIdentity(id=self.id, title=self.title, year=self.year, edition=self.edition, part=part)

    def to_dict(self) -> dict:
        return {
            "kind": "movie",
            "id": self.id,
            "title": self.title,
            "year": self.year,
            "edition": self.edition,
            "part": self.part,
        }


@dataclass(frozen=True)
class EpisodeIdentity:
    """A TV episode, optionally one numbered part of a multi-title episode."""

    series_id: int
    season: int
    episode: int
    part: str | None = None
    series_title: str = field(default="", compare=False)
    year: int | None = field(default=None, compare=False)
    episode_title: str = field(default="", compare=False)

    def __post_init__(self):
        object.__setattr__(self, "part", normalize_part(self.part))

    @property
    def is_multi_part(self) -> bool:
        return bool(self.part)

    @property
    def episode_key(self) -> tuple[int, int, int]:
        """(series, season, episode) regardless of part."""
        return (self.series_id, self.season, self.episode)

    @property
    def group_key(self) -> tuple:
        return ("episode", *self.episode_key)

    @property
    def code(self) -> str:
        return f"S{self.season:02d}E{self.episode:02d}"

    def with_part(self, part: str | int | None) -> "EpisodeIdentity":
        return EpisodeIdentity(
            series_id=self.series_id,
            season=self.season,
            episode=self.episode,
            part=part,
            series_title=self.series_title,
            year=self.year,
            episode_title=self.episode_title,
        )

    def to_dict(self) -> dict:
        return {
            "kind": "episode",
            "series_id": self.series_id,
            "series_title": self.series_title,
            "year": self.year,
            "season": self.season,
            "episode": self.episode,
            "episode_title": self.episode_title,
            "part": self.part,
        }


MediaIdentity = Union[MovieIdentity, EpisodeIdentity]


@dataclass(frozen=True)
class SeriesRef:
    """A TV series as needed to locate its files on the remote store."""

    id: int
    title: str
    year: int | None = None


@dataclass(frozen=True)
class SwapOperation:
    """Move the file(s) of ``from_episode`` to episode number ``to_episode``."""

    from_episode: int
    to_episode: int


def identity_from_dict(data: dict) -> MediaIdentity:
    """Rebuild an identity from its ``to_dict`` form."""
    if data.get("kind") == "episode":
        return EpisodeIdentity(
            series_id=data["series_id"],
            season=data["season"],
            episode=data["episode"],
            part=data.get("part"),
            series_title=data.get("series_title") or "",
            year=data.get("year"),
            episode_title=data.get("episode_title") or "",
        )
    if data.get("kind") == "movie":
        return MovieIdentity(
            id=data["id"],
            title=data.get("title") or "",
            year=data.get("year"),
            edition=data.get("edition"),
            part=data.get("part"),
        )
    raise ValueError(f"Unknown identity kind: {data.get('kind')!r}")
