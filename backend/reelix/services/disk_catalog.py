"""Disk catalog - the drives MakeMKV can see and the titles on their discs.

Scans are caller-triggered, never periodic. A scan builds a complete new
mapping and swaps it in with a single assignment, so readers see either the
previous catalog or the new one. Drives that cannot be scanned are reported
in :attr:`DiskCatalog.unavailable` with a reason instead of vanishing.
"""

import asyncio
import logging
import subprocess
from collections.abc import Awaitable, Callable

from reelix.core.makemkv import (
    DRIVE_EMPTY,
    DRIVE_LOADING,
    DRIVE_TRAY_OPEN,
    DriveRecord,
    build_drive_list_command,
    build_info_command,
    parse_drives,
    parse_messages,
    parse_titles,
)
from reelix.models import AppConfig, Disk, DriveUnavailable, DriveUnavailableReason, Title
from reelix.services.config_service import get_config
from reelix.services.event_broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)

_IDLE_STATES = {
    DRIVE_EMPTY: DriveUnavailableReason.NO_DISC,
    DRIVE_TRAY_OPEN: DriveUnavailableReason.TRAY_OPEN,
    DRIVE_LOADING: DriveUnavailableReason.LOADING,
}


class DiskCatalog:
    """Cache of scanned disks keyed by MakeMKV drive index."""

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        *,
        scan_timeout: float = 120.0,
        min_title_length: int = 45,
        config_loader: Callable[[], Awaitable[AppConfig]] = get_config,
    ):
        self._broadcaster = broadcaster
        self._scan_timeout = scan_timeout
        self._min_title_length = min_title_length
        self._config_loader = config_loader
        self._disks: dict[int, Disk] = {}
        self._unavailable: tuple[DriveUnavailable, ...] = ()
        self._scan_lock = asyncio.Lock()

    @property
    def unavailable(self) -> list[DriveUnavailable]:
        """Drives left out of the last scan, with the reason."""
        return list(self._unavailable)

    def disks(self) -> list[Disk]:
        disks = self._disks
        return [disks[key] for key in sorted(disks)]

    def get(self, disk_id: int) -> Disk | None:
        return self._disks.get(disk_id)

    def title(self, disk_id: int, title_index: int) -> Title | None:
        disk = self._disks.get(disk_id)
        if disk is None:
            return None
        return disk.title(title_index)

    async def scan(self) -> list[Disk]:
        """Rescan every drive and replace the catalog.

        Per-drive failures never fail the scan as a whole.
        """
        async with self._scan_lock:
            config = await self._config_loader()
            makemkv_path = config.makemkv_path or "makemkvcon"

            disks: dict[int, Disk] = {}
            unavailable: list[DriveUnavailable] = []

            drives, failure = await self._list_drives(makemkv_path)
            if failure is not None:
                unavailable.append(failure)

            for drive in drives:
                reason = _IDLE_STATES.get(drive.state)
                if reason is not None:
                    unavailable.append(
                        DriveUnavailable(
                            drive_id=drive.index,
                            reason=reason,
                            label=drive.disc_name,
                            drive_name=drive.drive_name,
                        )
                    )
                    continue

                try:
                    result = await self._scan_drive(makemkv_path, drive)
                except Exception as e:
                    logger.exception(f"Unexpected error scanning drive {drive.index}")
                    result = DriveUnavailable(
                        drive_id=drive.index,
                        reason=DriveUnavailableReason.SCAN_FAILED,
                        label=drive.disc_name,
                        drive_name=drive.drive_name,
                        detail=str(e),
                    )
                if isinstance(result, Disk):
                    disks[result.id] = result
                else:
                    unavailable.append(result)

            self._disks = disks
            self._unavailable = tuple(unavailable)

        logger.info(f"Disk scan complete: {len(disks)} usable, {len(unavailable)} unavailable")
        for entry in unavailable:
            logger.info(f"Drive {entry.drive_id} unavailable: {entry.reason.value} {entry.detail}".rstrip())

        self._broadcaster.broadcast_disks_scanned(self.disks(), self.unavailable)
        return self.disks()

    async def _list_drives(self, makemkv_path: str) -> tuple[list[DriveRecord], DriveUnavailable | None]:
        cmd = build_drive_list_command(makemkv_path)
        logger.info(f"Enumerating drives: {' '.join(cmd)}")
        try:
            result = await self._run(cmd)
        except FileNotFoundError:
            logger.error(f"MakeMKV not found at: {makemkv_path}")
            return [], DriveUnavailable(
                drive_id=None,
                reason=DriveUnavailableReason.TOOL_MISSING,
                detail=f"makemkvcon not found at {makemkv_path}",
            )
        except subprocess.TimeoutExpired:
            logger.error("MakeMKV drive enumeration timed out")
            return [], DriveUnavailable(
                drive_id=None,
                reason=DriveUnavailableReason.TIMEOUT,
                detail=f"drive enumeration exceeded {self._scan_timeout:g}s",
            )
        except OSError as e:
            logger.error(f"Could not run MakeMKV: {e}")
            return [], DriveUnavailable(
                drive_id=None, reason=DriveUnavailableReason.TOOL_MISSING, detail=str(e)
            )

        # Listing a nonexistent disc exits non-zero but still prints DRV lines
        return parse_drives(result.stdout or ""), None

    async def _scan_drive(self, makemkv_path: str, drive: DriveRecord) -> Disk | DriveUnavailable:
        cmd = build_info_command(makemkv_path, drive.index, self._min_title_length)
        logger.info(f"Scanning disc: {' '.join(cmd)}")

        def unavailable(reason: DriveUnavailableReason, detail: str = "") -> DriveUnavailable:
            return DriveUnavailable(
                drive_id=drive.index,
                reason=reason,
                label=drive.disc_name,
                drive_name=drive.drive_name,
                detail=detail,
            )

        try:
            result = await self._run(cmd)
        except FileNotFoundError:
            return unavailable(DriveUnavailableReason.TOOL_MISSING, f"makemkvcon not found at {makemkv_path}")
        except subprocess.TimeoutExpired:
            logger.error(f"MakeMKV scan of drive {drive.index} timed out")
            return unavailable(DriveUnavailableReason.TIMEOUT, f"scan exceeded {self._scan_timeout:g}s")
        except OSError as e:
            return unavailable(DriveUnavailableReason.SCAN_FAILED, str(e))

        output = result.stdout or ""
        if result.returncode != 0:
            messages = parse_messages(output)
            detail = messages[-1] if messages else f"exit code {result.returncode}"
            logger.error(f"MakeMKV scan of drive {drive.index} failed: {detail}")
            return unavailable(DriveUnavailableReason.SCAN_FAILED, detail)

        titles = parse_titles(output)
        if not titles:
            return unavailable(DriveUnavailableReason.NO_TITLES)

        logger.info(f"Found {len(titles)} titles on disc {drive.disc_name!r} (drive {drive.index})")
        return Disk(
            id=drive.index,
            label=drive.disc_name,
            drive_name=drive.drive_name,
            device=drive.device,
            titles=tuple(titles),
        )

    async def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        def run_makemkv() -> subprocess.CompletedProcess:
            """Run MakeMKV in a thread (Windows asyncio subprocess workaround)."""
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self._scan_timeout,
            )

        return await asyncio.to_thread(run_makemkv)
