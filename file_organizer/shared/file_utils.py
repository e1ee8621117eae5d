"""
File utilities shared by the engine components.

Blocking helpers live here; async callers run them through
``asyncio.to_thread``.
"""

import errno
import hashlib
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


def compute_checksum(
    file_path: Path, algorithm: str = "sha256", chunk_size: int = DEFAULT_CHUNK_SIZE
) -> str:
    """
    Compute cryptographic checksum of a file.

    Reads in chunks so large files are never loaded whole.

    Args:
        file_path: Path to the file
        algorithm: Hash algorithm (sha256, md5, etc.)
        chunk_size: Bytes per read

    Returns:
        Hexadecimal checksum string

    Raises:
        OSError: If the file cannot be read
    """
    hash_obj = hashlib.new(algorithm)

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            hash_obj.update(chunk)

    return hash_obj.hexdigest()


def checksum_handle(
    handle, algorithm: str = "sha256", chunk_size: int = DEFAULT_CHUNK_SIZE
) -> str:
    """Checksum an already-open binary handle from its start."""
    hash_obj = hashlib.new(algorithm)
    handle.seek(0)
    for chunk in iter(lambda: handle.read(chunk_size), b""):
        hash_obj.update(chunk)
    return hash_obj.hexdigest()


def format_bytes(size_bytes: int) -> str:
    """
    Format bytes in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "2.50 GB")
    """
    if size_bytes == 0:
        return "0 B"

    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    unit_index = 0
    size = float(size_bytes)

    while size >= 1024.0 and unit_index < len(units) - 1:
        size /= 1024.0
        unit_index += 1

    return f"{size:.2f} {units[unit_index]}"


def is_hidden(name: str) -> bool:
    return name.startswith(".")


def path_exists(path: Path) -> bool:
    """True if anything (including a dangling symlink) occupies the path."""
    return os.path.lexists(path)


def _copy_exclusive(source: Path, destination: Path) -> None:
    # "xb" fails with FileExistsError instead of truncating an existing file
    with open(source, "rb") as src, open(destination, "xb") as dst:
        shutil.copyfileobj(src, dst)
    shutil.copystat(source, destination)


def move_no_clobber(source: Path, destination: Path) -> None:
    """
    Move a file without ever replacing an existing destination.

    Hard-links the file into place and unlinks the source, which fails
    atomically with ``FileExistsError`` if the destination is taken. Where
    links are unavailable (other device, unsupported filesystem) the content
    is copied into an exclusively created file instead.

    Raises:
        FileExistsError: If the destination already exists
        OSError: For any other filesystem failure
    """
    try:
        os.link(source, destination)
        linked = True
    except FileExistsError:
        raise
    except OSError as e:
        if e.errno not in (errno.EXDEV, errno.EPERM, errno.ENOTSUP, errno.EMLINK):
            raise
        linked = False

    if not linked:
        _copy_exclusive(source, destination)

    try:
        os.unlink(source)
    except OSError:
        # Leave the source in place; remove the partial destination so the
        # file exists exactly once.
        try:
            os.unlink(destination)
        except OSError as cleanup_error:
            logger.error(
                f"Failed to clean up {destination} after source unlink failure: "
                f"{cleanup_error}"
            )
        raise


def move_no_clobber_or_recase(source: Path, destination: Path) -> None:
    """
    Like ``move_no_clobber``, but allow a case-only rename.

    On case-insensitive filesystems ``Notes.txt`` and ``notes.txt`` name the
    same file, so the destination "exists"; that one case is renamed in place.
    """
    if (
        source != destination
        and str(source).casefold() == str(destination).casefold()
        and path_exists(destination)
        and os.path.samefile(source, destination)
    ):
        os.rename(source, destination)
        return
    move_no_clobber(source, destination)


def nearest_existing_ancestor(path: Path) -> Optional[Path]:
    """Walk up from ``path`` to the first component that exists."""
    candidate = path
    while not os.path.lexists(candidate):
        if candidate.parent == candidate:
            return None
        candidate = candidate.parent
    return candidate
