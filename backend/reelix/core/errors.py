"""Error handling framework for Reelix.

Provides custom exception types and helpers for standardized error handling
across the application. Every error carries a stable ``code`` and can render
itself as a dict so the API layer can surface it as structured state.
"""

import inspect
import logging
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)


# Custom Exception Hierarchy
class ReelixError(Exception):
    """Base exception for all Reelix-specific errors."""

    code = "reelix_error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class ConfigurationError(ReelixError):
    """Configuration validation failed.

    Raised when user configuration is invalid or incomplete.
    """

    code = "configuration_error"


class UnknownTitleError(ReelixError):
    """The requested disk or title is not in the catalog."""

    code = "unknown_title"

    def __init__(self, disk_id: int, title_index: int | None = None):
        self.disk_id = disk_id
        self.title_index = title_index
        if title_index is None:
            super().__init__(f"Disk {disk_id} is not in the catalog")
        else:
            super().__init__(f"Title {title_index} not found on disk {disk_id}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "disk_id": self.disk_id, "title_index": self.title_index}


class DuplicateJobError(ReelixError):
    """A non-terminal job already exists for the title."""

    code = "duplicate_job"

    def __init__(self, disk_id: int, title_index: int, existing_job_id: int):
        self.disk_id = disk_id
        self.title_index = title_index
        self.existing_job_id = existing_job_id
        super().__init__(
            f"Title {title_index} on disk {disk_id} is already attached to job {existing_job_id}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "existing_job_id": self.existing_job_id}


class JobNotFoundError(ReelixError):
    code = "job_not_found"

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class ProcessSpawnFailure(ReelixError):
    """The ripping tool could not be started."""

    code = "process_spawn_failure"


class ProcessExitFailure(ReelixError):
    """The ripping tool exited with a non-zero status."""

    code = "process_exit_failure"


class ToolReportedFalseSuccess(ReelixError):
    """The ripping tool exited 0 but produced no usable output file."""

    code = "tool_reported_false_success"


class CancellationTimeout(ReelixError):
    """The ripping tool ignored termination and had to be killed."""

    code = "cancellation_timeout"


class OutputMoveFailure(ReelixError):
    """The ripped file could not be moved from staging to its output path."""

    code = "output_move_failure"


class AssignmentConflictError(ReelixError):
    """An assignment would break the one-title-per-identity rules."""

    code = "assignment_conflict"


class InvalidPartLabelError(ReelixError):
    """A part label is not a whole number from 1 to 65535."""

    code = "invalid_part_label"


class AssignmentLockedError(ReelixError):
    """The title is being ripped and its assignment cannot change."""

    code = "assignment_locked"


class InvalidPermutationError(ReelixError):
    """A reorder request does not describe a permutation of existing episodes."""

    code = "invalid_permutation"


class UploadNotFoundError(ReelixError):
    code = "upload_not_found"

    def __init__(self, upload_id: int):
        self.upload_id = upload_id
        super().__init__(f"Upload {upload_id} not found")


class RemoteStoreError(ReelixError):
    """A remote file store operation failed permanently."""

    code = "remote_store_error"


class TransientNetworkError(RemoteStoreError):
    """A network operation kept failing after all retries."""

    code = "transient_network_error"


class PartialReorderFailure(ReelixError):
    """A reorder failed midway; carries what could not be put back."""

    code = "partial_reorder_failure"

    def __init__(
        self,
        message: str,
        *,
        failed_step: tuple[str, str] | None = None,
        applied: list[tuple[str, str]] | None = None,
        unrestored: list[str] | None = None,
    ):
        self.failed_step = failed_step
        self.applied = applied or []
        self.unrestored = unrestored or []
        super().__init__(message)

    @property
    def rolled_back(self) -> bool:
        return not self.unrestored

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "failed_step": list(self.failed_step) if self.failed_step else None,
            "applied": [list(step) for step in self.applied],
            "unrestored": list(self.unrestored),
            "rolled_back": self.rolled_back,
        }


# Error Handling Decorator
def handle_errors(
    *,
    error_types: tuple[type[Exception], ...],
    default_message: str,
    log_level: str = "error",
    reraise: bool = True,
    wrap_as: type[ReelixError] | None = None,
):
    """Decorator for standardized error handling.

    Args:
        error_types: Tuple of exception types to catch
        default_message: Message to log when error occurs
        log_level: Logging level (error, warning, info, debug)
        reraise: Whether to re-raise the exception after logging
        wrap_as: Optionally wrap the caught exception in a ReelixError subclass

    Example:
        @handle_errors(
            error_types=(ftplib.error_perm,),
            default_message="FTP rename failed",
            wrap_as=RemoteStoreError
        )
        def rename(self, source, target):
            # ... operation ...
    """

    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except error_types as e:
                log_func = getattr(logger, log_level)
                log_func(
                    f"{default_message}: {e}",
                    exc_info=(log_level == "error"),
                )
                if wrap_as:
                    raise wrap_as(f"{default_message}: {e}") from e
                if reraise:
                    raise

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except error_types as e:
                log_func = getattr(logger, log_level)
                log_func(
                    f"{default_message}: {e}",
                    exc_info=(log_level == "error"),
                )
                if wrap_as:
                    raise wrap_as(f"{default_message}: {e}") from e
                if reraise:
                    raise

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


# Context Manager for Error Handling
class error_context:
    """Context manager for error handling in specific code blocks.

    Example:
        with error_context(
            error_types=(ftplib.error_perm,),
            default_message="Failed to list season directory",
            wrap_as=RemoteStoreError
        ):
            # ... code that might raise errors ...
    """

    def __init__(
        self,
        *,
        error_types: tuple[type[Exception], ...],
        default_message: str,
        log_level: str = "error",
        wrap_as: type[ReelixError] | None = None,
    ):
        self.error_types = error_types
        self.default_message = default_message
        self.log_level = log_level
        self.wrap_as = wrap_as

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and issubclass(exc_type, self.error_types):
            log_func = getattr(logger, self.log_level)
            log_func(
                f"{self.default_message}: {exc_val}",
                exc_info=(self.log_level == "error"),
            )
            if self.wrap_as:
                raise self.wrap_as(f"{self.default_message}: {exc_val}") from exc_val
            return False
        return False
