import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Union

logger = logging.getLogger("fileshare.storage")

# Constants for file operations
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
STAGING_PREFIX = ".fileshare-upload-"
STAGING_SUFFIX = ".part"

PathLike = Union[str, Path]


class StorageError(OSError):
    """Raised when a filesystem operation on the storage directory fails."""

    def __init__(self, operation: str, path: PathLike, error: OSError) -> None:
        super().__init__(error.errno, f"{operation} failed for {path}: {error.strerror or error}")
        self.operation = operation
        self.path = Path(path)
        self.original = error


def is_staging_name(name: str) -> bool:
    return name.startswith(STAGING_PREFIX) and name.endswith(STAGING_SUFFIX)


def list_stored_files(directory: PathLike) -> List[str]:
    """Return the entry names of *directory* sorted by name.

    In-flight upload staging files are left out.
    """

    try:
        names = os.listdir(directory)
    except OSError as error:
        raise StorageError("list", directory, error) from error
    return sorted(name for name in names if not is_staging_name(name))


def join_storage_path(directory: PathLike, filename: str) -> Path:
    """Join *filename* onto *directory*, keeping absolute names underneath it."""

    return Path(os.path.normpath(os.path.join(str(directory), filename.lstrip(os.sep))))


def _discard_staging_file(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as error:
        logger.warning("staging_cleanup_failed path=%s error=%s", path, error)


def store_upload(
    directory: PathLike,
    filename: str,
    stream: BinaryIO,
    chunk_size: int = CHUNK_SIZE_BYTES,
) -> Path:
    """Persist *stream* as *filename* inside *directory*.

    The bytes are written to a staging file in the same directory first and
    then moved over the target with :func:`os.replace`, so an existing file of
    the same name is overwritten in one step. The name is not sanitized, but an
    absolute name is still placed under *directory*.
    """

    directory = Path(directory)
    target = join_storage_path(directory, filename)
    try:
        fd, staging_path = tempfile.mkstemp(
            prefix=STAGING_PREFIX, suffix=STAGING_SUFFIX, dir=directory
        )
    except OSError as error:
        raise StorageError("stage", directory, error) from error

    try:
        with os.fdopen(fd, "wb") as staging:
            shutil.copyfileobj(stream, staging, chunk_size)
    except OSError as error:
        _discard_staging_file(staging_path)
        raise StorageError("write", staging_path, error) from error

    try:
        os.replace(staging_path, target)
    except OSError as error:
        _discard_staging_file(staging_path)
        raise StorageError("move", target, error) from error

    logger.debug("upload_stored path=%s", target)
    return target


def resolve_download_path(root: PathLike, filename: str) -> Optional[Path]:
    """Return the path of *filename* under *root*, or ``None`` if it is not a file."""

    candidate = Path(root) / filename
    if candidate.is_file():
        return candidate
    return None


def get_storage_status(directory: PathLike) -> Dict[str, object]:
    """Summarise whether *directory* can currently serve and accept files."""

    path = Path(directory)
    status: Dict[str, object] = {
        "path": str(path),
        "exists": path.is_dir(),
        "writable": path.is_dir() and os.access(path, os.W_OK | os.X_OK),
    }
    if status["exists"]:
        try:
            usage = shutil.disk_usage(path)
        except OSError as error:
            logger.warning("disk_usage_failed path=%s error=%s", path, error)
        else:
            status["free_bytes"] = usage.free
    return status
