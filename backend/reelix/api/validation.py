"""Validation endpoints for pre-flight checks."""

import asyncio
import logging
import shutil
import subprocess
import sys
from pathlib import Path

from fastapi import APIRouter
from pydantic import BaseModel

from reelix.core.errors import RemoteStoreError
from reelix.core.remote_store import FtpFileStore

logger = logging.getLogger(__name__)

router = APIRouter()


class ValidationRequest(BaseModel):
    """Request model for validation endpoints."""

    path: str


class ValidationResponse(BaseModel):
    """Response model for validation endpoints."""

    valid: bool
    error: str | None = None
    version: str | None = None
    path: str | None = None


class FtpValidationRequest(BaseModel):
    host: str
    user: str = ""
    password: str = ""
    directory: str = ""


class ToolDetectionResult(BaseModel):
    """Detection result for a single tool."""

    found: bool
    path: str | None = None
    version: str | None = None
    error: str | None = None


class DetectToolsResponse(BaseModel):
    """Response for the detect-tools endpoint."""

    makemkv: ToolDetectionResult
    platform: str


def _get_makemkv_search_paths() -> list[str]:
    """Return platform-specific common MakeMKV installation paths."""
    if sys.platform == "win32":
        return [
            r"C:\Program Files (x86)\MakeMKV\makemkvcon64.exe",
            r"C:\Program Files\MakeMKV\makemkvcon64.exe",
            r"C:\Program Files (x86)\MakeMKV\makemkvcon.exe",
            r"C:\Program Files\MakeMKV\makemkvcon.exe",
        ]
    if sys.platform == "darwin":
        return ["/Applications/MakeMKV.app/Contents/MacOS/makemkvcon"]
    return [
        "/usr/bin/makemkvcon",
        "/usr/local/bin/makemkvcon",
        "/snap/bin/makemkvcon",
        "/var/lib/flatpak/exports/bin/com.makemkv.MakeMKV",
    ]


def _validate_makemkv_binary(path_str: str) -> ToolDetectionResult:
    """Run a candidate binary without arguments and check it is makemkvcon.

    MakeMKV prints its usage and exits 1 when run bare, so the output is
    checked instead of the exit code.
    """
    try:
        result = subprocess.run(
            [path_str],
            capture_output=True,
            timeout=10,
            text=True,
        )
    except subprocess.TimeoutExpired:
        return ToolDetectionResult(found=False, path=path_str, error="Command timeout (10s)")
    except OSError as e:
        return ToolDetectionResult(found=False, path=path_str, error=f"Execution failed: {e}")

    output = result.stdout + result.stderr
    if "makemkv" not in output.lower():
        return ToolDetectionResult(found=False, path=path_str, error="Not a valid MakeMKV executable")

    version = "MakeMKV (version not detectable)"
    for line in output.split("\n"):
        if "version" in line.lower() or "v1." in line:
            version = line.strip()
            break

    return ToolDetectionResult(found=True, path=path_str, version=version)


def detect_makemkv() -> ToolDetectionResult:
    """Auto-detect MakeMKV by searching PATH then common install locations."""
    # 1. Check system PATH
    for name in ("makemkvcon64", "makemkvcon"):
        found = shutil.which(name)
        if found:
            logger.info(f"Found MakeMKV on PATH: {found}")
            result = _validate_makemkv_binary(found)
            if result.found:
                return result

    # 2. Check platform-specific common locations
    for path_str in _get_makemkv_search_paths():
        if Path(path_str).is_file():
            logger.info(f"Found MakeMKV at: {path_str}")
            result = _validate_makemkv_binary(path_str)
            if result.found:
                return result

    return ToolDetectionResult(found=False, error="MakeMKV not found")


@router.get("/detect-tools", response_model=DetectToolsResponse)
async def detect_tools() -> DetectToolsResponse:
    """Auto-detect the MakeMKV installation."""
    return DetectToolsResponse(
        makemkv=await asyncio.to_thread(detect_makemkv),
        platform=sys.platform,
    )


@router.post("/validate/makemkv", response_model=ValidationResponse)
async def validate_makemkv(request: ValidationRequest) -> ValidationResponse:
    """Validate a MakeMKV installation by path."""
    makemkv_path = Path(request.path)

    if not makemkv_path.exists():
        return ValidationResponse(valid=False, error="File not found at specified path")

    if not makemkv_path.is_file():
        return ValidationResponse(valid=False, error="Path is not a file")

    result = await asyncio.to_thread(_validate_makemkv_binary, str(makemkv_path))
    if not result.found:
        return ValidationResponse(valid=False, error=result.error)
    return ValidationResponse(valid=True, version=result.version, path=result.path)


@router.post("/validate/ftp", response_model=ValidationResponse)
async def validate_ftp(request: FtpValidationRequest) -> ValidationResponse:
    """Log in to an FTP server and optionally list a directory."""
    if not request.host.strip():
        return ValidationResponse(valid=False, error="Host is required")

    def check() -> str:
        with FtpFileStore(request.host, request.user, request.password) as store:
            cwd = store.check()
            if request.directory:
                store.list_names(request.directory)
                return request.directory
            return cwd

    try:
        path = await asyncio.to_thread(check)
    except RemoteStoreError as e:
        return ValidationResponse(valid=False, error=str(e))

    return ValidationResponse(valid=True, path=path)
