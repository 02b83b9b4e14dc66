"""Remote file store access - listing, renaming and uploading files on the FTP server.

The reorder engine and the upload queue only need the primitives described by
:class:`RemoteFileStore`. :class:`FtpFileStore` implements them on
``ftplib`` with connect/operation timeouts and bounded retries for transient
network failures.
"""

import ftplib
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from functools import wraps
from pathlib import Path, PurePosixPath
from typing import Any, Protocol, TypeVar

from reelix.config import settings
from reelix.core.errors import (
    ConfigurationError,
    RemoteStoreError,
    TransientNetworkError,
    error_context,
    handle_errors,
)
from reelix.models import AppConfig

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_FTP_PORT = 21
UPLOAD_BLOCK_SIZE = 64 * 1024

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (ftplib.error_temp, EOFError, OSError)


class RemoteFileStore(Protocol):
    def list_names(self, directory: str) -> list[str]:
        """Base names of the entries in ``directory``."""
        ...

    def rename(self, source: str, target: str) -> None: ...

    def size(self, path: str) -> int | None: ...

    def upload(self, local_path: Path, remote_path: str, progress: Callable[[int], None] | None = None) -> None: ...


def retry_network_operation(max_retries: int = 3, base_delay: float = 1.0) -> Callable[[F], F]:
    """Decorator for retrying network operations.

    Transient failures are retried with exponential backoff; once the retries
    are exhausted the last failure surfaces as TransientNetworkError.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception = None
            delay = base_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except TRANSIENT_ERRORS as e:
                    last_exception = e
                    if attempt == max_retries:
                        logger.error(f"Max retries ({max_retries}) exceeded for {func.__name__}: {e}")
                        break

                    logger.warning(f"Network retry {attempt + 1}/{max_retries + 1} for {func.__name__}: {e}")
                    time.sleep(delay)
                    delay = min(delay * 2, 30)  # Cap at 30 seconds

            raise TransientNetworkError(
                f"{func.__name__} failed after {max_retries + 1} attempts: {last_exception}"
            ) from last_exception

        return wrapper  # type: ignore

    return decorator


def parse_host(host: str) -> tuple[str, int]:
    """Split 'host' or 'host:port'."""
    host = host.strip()
    name, sep, port = host.rpartition(":")
    if sep and port.isdigit():
        return name, int(port)
    return host, DEFAULT_FTP_PORT


class FtpFileStore:
    """RemoteFileStore backed by an FTP server. Connects lazily."""

    def __init__(self, host: str, user: str, password: str, *, timeout: float = 30.0):
        self.host, self.port = parse_host(host)
        self._user = user
        self._password = password
        self._timeout = timeout
        self._ftp: ftplib.FTP | None = None

    @classmethod
    def from_config(cls, config: AppConfig, timeout: float | None = None) -> "FtpFileStore":
        if not config.ftp_host:
            raise ConfigurationError("FTP host is not configured")
        return cls(
            config.ftp_host,
            config.ftp_user,
            config.ftp_pass,
            timeout=settings.ftp_timeout_seconds if timeout is None else timeout,
        )

    def _connect(self) -> ftplib.FTP:
        if self._ftp is None:
            logger.debug(f"Connecting to FTP {self.host}:{self.port}")
            ftp = ftplib.FTP(timeout=self._timeout)
            try:
                ftp.connect(self.host, self.port)
                with error_context(
                    error_types=(ftplib.error_perm,),
                    default_message=f"FTP login to {self.host} failed",
                    wrap_as=RemoteStoreError,
                ):
                    ftp.login(self._user, self._password)
            except Exception:
                ftp.close()
                raise
            self._ftp = ftp
        return self._ftp

    @contextmanager
    def _session(self) -> Iterator[ftplib.FTP]:
        """Yield a live connection; drop it after a transient failure."""
        try:
            yield self._connect()
        except TRANSIENT_ERRORS:
            self.close()
            raise

    @retry_network_operation(max_retries=settings.ftp_max_retries, base_delay=settings.ftp_retry_base_delay)
    def check(self) -> str:
        """Log in and return the working directory."""
        with self._session() as ftp:
            return ftp.pwd()

    @retry_network_operation(max_retries=settings.ftp_max_retries, base_delay=settings.ftp_retry_base_delay)
    def list_names(self, directory: str) -> list[str]:
        with self._session() as ftp:
            try:
                entries = ftp.nlst(directory)
            except ftplib.error_perm as e:
                # Many servers answer NLST on an empty or missing directory with 550
                if str(e).startswith("550"):
                    logger.debug(f"No entries in {directory}: {e}")
                    return []
                raise RemoteStoreError(f"Failed to list {directory}: {e}") from e
        return sorted(PurePosixPath(entry).name for entry in entries if entry not in (".", ".."))

    @retry_network_operation(max_retries=settings.ftp_max_retries, base_delay=settings.ftp_retry_base_delay)
    def size(self, path: str) -> int | None:
        """Size of a remote file in bytes, or None if there is no such file."""
        with self._session() as ftp:
            return _file_size(ftp, path)

    @retry_network_operation(max_retries=settings.ftp_max_retries, base_delay=settings.ftp_retry_base_delay)
    def rename(self, source: str, target: str) -> None:
        """Rename ``source`` to ``target``.

        A reply of 550 when the source is already gone and the target exists
        means an earlier attempt went through before its connection dropped;
        that counts as success.
        """
        with self._session() as ftp:
            try:
                ftp.rename(source, target)
            except ftplib.error_perm as e:
                already_moved = (
                    str(e).startswith("550")
                    and _file_size(ftp, source) is None
                    and _file_size(ftp, target) is not None
                )
                if already_moved:
                    logger.info(f"{target} already in place; an earlier rename attempt went through")
                    return
                logger.error(f"FTP rename failed: {e}")
                raise RemoteStoreError(f"FTP rename failed: {e}") from e
        logger.debug(f"Renamed {source} -> {target}")

    def upload(
        self,
        local_path: Path,
        remote_path: str,
        progress: Callable[[int], None] | None = None,
    ) -> None:
        """Store a local file at ``remote_path``, creating missing directories.

        ``progress`` receives the running byte count. A retried upload starts
        again from the first byte.
        """
        if not Path(local_path).is_file():
            raise FileNotFoundError(f"No such file: {local_path}")
        self._store(Path(local_path), remote_path, progress)

    @retry_network_operation(max_retries=settings.ftp_max_retries, base_delay=settings.ftp_retry_base_delay)
    @handle_errors(
        error_types=(ftplib.error_perm,),
        default_message="FTP upload failed",
        wrap_as=RemoteStoreError,
    )
    def _store(self, local_path: Path, remote_path: str, progress: Callable[[int], None] | None) -> None:
        remote = PurePosixPath(remote_path)
        sent = 0

        def on_block(block: bytes) -> None:
            nonlocal sent
            sent += len(block)
            if progress is not None:
                progress(sent)

        with self._session() as ftp:
            _make_directories(ftp, remote.parent)
            with open(local_path, "rb") as fh:
                ftp.storbinary(f"STOR {remote}", fh, blocksize=UPLOAD_BLOCK_SIZE, callback=on_block)
        logger.debug(f"Uploaded {local_path} -> {remote} ({sent} bytes)")

    def close(self) -> None:
        if self._ftp is None:
            return
        ftp, self._ftp = self._ftp, None
        try:
            ftp.quit()
        except (*TRANSIENT_ERRORS, ftplib.Error):
            ftp.close()

    def __enter__(self) -> "FtpFileStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def _file_size(ftp: ftplib.FTP, path: str) -> int | None:
    try:
        ftp.voidcmd("TYPE I")
        return ftp.size(path)
    except ftplib.error_perm:
        return None


def _make_directories(ftp: ftplib.FTP, directory: PurePosixPath) -> None:
    """MKD every missing component of ``directory``."""
    for depth in range(1, len(directory.parts) + 1):
        path = str(PurePosixPath(*directory.parts[:depth]))
        if path in ("/", "."):
            continue
        try:
            ftp.mkd(path)
        except ftplib.error_perm as e:
            # 550/521: already exists
            if not str(e).startswith(("550", "521")):
                raise
