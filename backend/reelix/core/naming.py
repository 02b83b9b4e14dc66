"""Naming policy - where a ripped title lands in a Plex-style library.

Everything here is pure string manipulation: no filesystem access, so the
same identity always yields the same path.

    Episode: Breaking Bad (2008)/Season 01/Breaking Bad (2008) - S01E05-pt2 - Gray Matter.mkv
    Movie:   Blade Runner (1982)/Blade Runner (1982) - Final Cut.mkv
    Part:    Dune (2021)/Dune (2021)-pt1.mkv
"""

import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from reelix.core.errors import InvalidPartLabelError
from reelix.models.media import EpisodeIdentity, MediaIdentity, MovieIdentity, normalize_part

EXTENSION = ".mkv"

# Characters that are illegal in a path segment on at least one common filesystem
_ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*]')

_EPISODE_CODE = re.compile(r"^[sS](\d{1,3})[eE](\d{1,4})(?:-pt(\d+))?$")
_TRAILING_PART = re.compile(r"^(.*)-pt(\d+)$")


@dataclass(frozen=True)
class ParsedEpisodeFile:
    """An episode file name taken apart again."""

    episode: int
    part: str | None
    title: str
    extension: str


def sanitize(text: str) -> str:
    """Replace characters that cannot appear in a file or directory name."""
    cleaned = _ILLEGAL_CHARS.sub("-", text)
    return re.sub(r"\s+", " ", cleaned).strip().rstrip(".")


def title_year(title: str, year: int | None) -> str:
    """'Title (Year)', or just 'Title' when the year is unknown."""
    name = sanitize(title)
    if year:
        return f"{name} ({year})"
    return name


def season_folder(season: int) -> str:
    return f"Season {season:02d}"


def part_suffix(part: str | None) -> str:
    return f"-pt{normalize_part(part)}" if part else ""


def episode_code(season: int, episode: int, part: str | None = None) -> str:
    return f"S{season:02d}E{episode:02d}" + part_suffix(part)


def file_name_for(identity: MediaIdentity) -> str:
    """File name (no directories) for an identity."""
    if isinstance(identity, EpisodeIdentity):
        series = title_year(identity.series_title, identity.year)
        code = episode_code(identity.season, identity.episode, identity.part)
        name = f"{series} - {code}"
        if identity.episode_title:
            name += f" - {sanitize(identity.episode_title)}"
        return name + EXTENSION

    if isinstance(identity, MovieIdentity):
        name = title_year(identity.title, identity.year)
        if identity.edition:
            name += f" - {sanitize(identity.edition)}"
        return name + part_suffix(identity.part) + EXTENSION

    raise TypeError(f"Unsupported identity type: {type(identity).__name__}")


def path_for(identity: MediaIdentity) -> str:
    """Library-relative POSIX path for an identity."""
    if isinstance(identity, EpisodeIdentity):
        series = title_year(identity.series_title, identity.year)
        path = PurePosixPath(series, season_folder(identity.season), file_name_for(identity))
        return str(path)

    if isinstance(identity, MovieIdentity):
        folder = title_year(identity.title, identity.year)
        return str(PurePosixPath(folder, file_name_for(identity)))

    raise TypeError(f"Unsupported identity type: {type(identity).__name__}")


def season_directory(series_title_year: str, season: int) -> str:
    """Relative directory holding one season's episodes."""
    return str(PurePosixPath(series_title_year, season_folder(season)))


def episode_file_name(
    series_title_year: str,
    season: int,
    episode: int,
    title: str,
    part: str | None = None,
    extension: str = EXTENSION,
) -> str:
    """Build an episode file name from parts already known to be clean."""
    name = f"{series_title_year} - {episode_code(season, episode, part)}"
    if title:
        name += f" - {sanitize(title)}"
    return name + extension


def parse_episode_file_name(name: str, series_title_year: str, season: int) -> ParsedEpisodeFile | None:
    """Take apart a file written by :func:`episode_file_name`.

    Also understands the older convention where the part suffix trails the
    episode title (``Show (2001) - S01E01 - Pilot-pt2.mkv``). Returns None when
    the name is not a ``.mkv`` file (in any letter case) of this series and
    season, or carries an out-of-range part number.
    """
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem or f".{ext.lower()}" != EXTENSION:
        return None
    extension = f".{ext}"

    prefix = f"{series_title_year} - "
    if not stem.startswith(prefix):
        return None
    rest = stem[len(prefix):]

    code, sep, title = rest.partition(" - ")
    match = _EPISODE_CODE.match(code.strip())
    if match is None:
        return None
    if int(match.group(1)) != season:
        return None

    episode = int(match.group(2))
    part = match.group(3)
    title = title.strip() if sep else ""

    if part is None:
        trailing = _TRAILING_PART.match(title)
        if trailing:
            title, part = trailing.group(1).strip(), trailing.group(2)

    try:
        part = normalize_part(part)
    except InvalidPartLabelError:
        return None

    return ParsedEpisodeFile(episode=episode, part=part, title=title, extension=extension)
