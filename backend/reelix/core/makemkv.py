"""MakeMKV CLI wrapper - robot-mode parsing and command construction.

makemkvcon in robot mode (``-r``) prints one record per line::

    DRV:0,2,999,12,"BD-RE HL-DT-ST","THE_OFFICE_S1","/dev/sr0"
    TINFO:0,9,0,"0:22:14"
    SINFO:0,1,6,0,"AC3"
    PRGV:3276,16384,65536
    MSG:5010,0,0,"Failed to open disc","Failed to open disc"

This module turns those lines into domain objects. It never spawns processes
itself; the catalog and the scheduler own process lifecycles.
"""

import csv
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from reelix.models.disk import StreamInfo, Title

logger = logging.getLogger(__name__)

ROBOT_KINDS = {"CINFO", "TINFO", "SINFO", "TCOUNT", "DRV", "PRGV", "PRGT", "PRGC", "MSG"}

# Drive state reported in the second DRV field
DRIVE_EMPTY = 0
DRIVE_TRAY_OPEN = 1
DRIVE_INSERTED = 2
DRIVE_LOADING = 3
DRIVE_NOT_ATTACHED = 256

# Attribute ids shared by TINFO and SINFO
ATTR_TYPE = 1
ATTR_NAME = 2
ATTR_LANG_CODE = 3
ATTR_LANG_NAME = 4
ATTR_CODEC_SHORT = 6
ATTR_CHAPTER_COUNT = 8
ATTR_DURATION = 9
ATTR_DISK_SIZE = 10
ATTR_DISK_SIZE_BYTES = 11
ATTR_SOURCE_FILE_NAME = 16
ATTR_SEGMENTS_MAP = 26

# Enumerating drives is done by asking for a disc index that cannot exist
DRIVE_LIST_SOURCE = "disc:9999"


@dataclass(frozen=True)
class RobotLine:
    """One parsed robot-mode record."""

    kind: str
    fields: tuple[str, ...]


@dataclass(frozen=True)
class DriveRecord:
    """A DRV line: one drive slot as MakeMKV sees it."""

    index: int
    state: int
    flags: str
    drive_name: str
    disc_name: str
    device: str

    @property
    def attached(self) -> bool:
        return self.state != DRIVE_NOT_ATTACHED and bool(self.drive_name)


@dataclass(frozen=True)
class RipEvent:
    """What one line of rip output means for the job."""

    percent: float | None = None
    label: str | None = None
    message: str | None = None


def parse_robot_line(line: str) -> RobotLine | None:
    """Split a robot-mode line into its kind and fields.

    Returns None for blank lines and anything that is not a robot record.
    """
    line = line.strip()
    if not line or ":" not in line:
        return None

    kind, _, payload = line.partition(":")
    if kind not in ROBOT_KINDS:
        return None

    try:
        fields = next(csv.reader([payload]), [])
    except csv.Error:
        logger.debug(f"Unparseable robot line: {line}")
        return None
    return RobotLine(kind=kind, fields=tuple(fields))


def parse_drives(output: str) -> list[DriveRecord]:
    """Parse the DRV lines of a drive listing, skipping empty slots."""
    drives = []
    for raw in output.splitlines():
        record = parse_robot_line(raw)
        if record is None or record.kind != "DRV" or len(record.fields) < 6:
            continue
        fields = record.fields
        try:
            drive = DriveRecord(
                index=int(fields[0]),
                state=int(fields[1]),
                flags=fields[3],
                drive_name=fields[4],
                disc_name=fields[5],
                device=fields[6] if len(fields) > 6 else "",
            )
        except ValueError:
            logger.debug(f"Skipping malformed DRV line: {raw}")
            continue
        if drive.attached:
            drives.append(drive)
    return drives


def parse_titles(output: str) -> list[Title]:
    """Parse TINFO/SINFO lines of a disc scan into Titles ordered by index."""
    title_attrs: dict[int, dict[int, str]] = {}
    stream_attrs: dict[int, dict[int, dict[int, str]]] = {}

    for raw in output.splitlines():
        record = parse_robot_line(raw)
        if record is None:
            continue
        try:
            if record.kind == "TINFO" and len(record.fields) >= 4:
                title_idx, attr_id = int(record.fields[0]), int(record.fields[1])
                title_attrs.setdefault(title_idx, {})[attr_id] = record.fields[3]
            elif record.kind == "SINFO" and len(record.fields) >= 5:
                title_idx = int(record.fields[0])
                stream_idx, attr_id = int(record.fields[1]), int(record.fields[2])
                title_attrs.setdefault(title_idx, {})
                streams = stream_attrs.setdefault(title_idx, {})
                streams.setdefault(stream_idx, {})[attr_id] = record.fields[4]
        except ValueError:
            logger.debug(f"Skipping malformed info line: {raw}")

    titles = []
    for index in sorted(title_attrs):
        attrs = title_attrs[index]
        streams = tuple(
            StreamInfo(
                index=stream_idx,
                kind=values.get(ATTR_TYPE, ""),
                language=values.get(ATTR_LANG_CODE, ""),
                codec=values.get(ATTR_CODEC_SHORT, ""),
                attributes=tuple(sorted(values.items())),
            )
            for stream_idx, values in sorted(stream_attrs.get(index, {}).items())
        )
        size_bytes = _parse_int(attrs.get(ATTR_DISK_SIZE_BYTES, ""))
        if not size_bytes:
            size_bytes = parse_size(attrs.get(ATTR_DISK_SIZE, ""))
        titles.append(
            Title(
                index=index,
                name=attrs.get(ATTR_NAME, ""),
                duration_seconds=parse_duration(attrs.get(ATTR_DURATION, "")),
                chapter_count=_parse_int(attrs.get(ATTR_CHAPTER_COUNT, "")),
                size_bytes=size_bytes,
                source_file_name=attrs.get(ATTR_SOURCE_FILE_NAME, ""),
                segment_map=attrs.get(ATTR_SEGMENTS_MAP, ""),
                streams=streams,
            )
        )
    return titles


def parse_messages(output: str) -> list[str]:
    """Return the human-readable text of every MSG line."""
    messages = []
    for raw in output.splitlines():
        record = parse_robot_line(raw)
        if record is not None and record.kind == "MSG" and len(record.fields) >= 4:
            messages.append(record.fields[3])
    return messages


def interpret_rip_line(line: str) -> RipEvent:
    """Classify one line of rip output.

    PRGV lines carry the overall progress (``total`` out of ``max``), PRGT and
    PRGC name the operation in progress. Everything else is diagnostic text;
    it is never treated as an error by itself.
    """
    record = parse_robot_line(line)
    if record is None:
        return RipEvent(message=line.strip() or None)

    if record.kind == "PRGV" and len(record.fields) >= 3:
        try:
            total = int(record.fields[1])
            maximum = int(record.fields[2])
        except ValueError:
            return RipEvent(message=line.strip())
        if maximum <= 0:
            return RipEvent()
        percent = max(0.0, min(100.0, total * 100.0 / maximum))
        return RipEvent(percent=percent)

    if record.kind in ("PRGT", "PRGC") and len(record.fields) >= 3:
        return RipEvent(label=record.fields[2])

    if record.kind == "MSG" and len(record.fields) >= 4:
        return RipEvent(message=record.fields[3])

    return RipEvent(message=line.strip())


def build_drive_list_command(makemkv_path: str | Path) -> list[str]:
    return [str(makemkv_path), "-r", "--cache=1", "info", DRIVE_LIST_SOURCE]


def build_info_command(makemkv_path: str | Path, drive_index: int, min_length: int) -> list[str]:
    return [
        str(makemkv_path),
        "-r",
        f"--minlength={min_length}",
        "--cache=128",
        "info",
        f"disc:{drive_index}",
    ]


def build_rip_command(
    makemkv_path: str | Path,
    source_spec: str,
    title_index: int,
    output_dir: Path,
    min_length: int,
) -> list[str]:
    """Command that rips one title of ``source_spec`` into ``output_dir``."""
    return [
        str(makemkv_path),
        "-r",
        "--progress=-same",
        "--noscan",
        f"--minlength={min_length}",
        "--cache=1024",
        "mkv",
        source_spec,
        str(title_index),
        str(output_dir),
    ]


def parse_duration(duration_str: str) -> int:
    """Parse duration string (H:MM:SS) to seconds."""
    parts = duration_str.split(":")
    try:
        if len(parts) == 3:
            return int(parts[0]) * 3600 + int(parts[1]) * 60 + int(parts[2])
        if len(parts) == 2:
            return int(parts[0]) * 60 + int(parts[1])
        return int(parts[0])
    except ValueError:
        return 0


def parse_size(size_str: str) -> int:
    """Parse size string (e.g., '12.5 GB') to bytes."""
    match = re.match(r"([\d.]+)\s*(GB|MB|KB|B)", size_str, re.IGNORECASE)
    if not match:
        return 0

    value = float(match.group(1))
    unit = match.group(2).upper()

    multipliers = {"B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3}
    return int(value * multipliers.get(unit, 1))


def _parse_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0
