"""
Directory scanner.

Enumerates regular files under a validated root, bounded by the configured
depth and file-count ceilings. Symlinked files and directories are never
followed.
"""

import asyncio
import errno
import logging
import os
from pathlib import Path
from typing import List, Optional, Set, Tuple

from ..config import SKIP_DIRECTORIES, Settings
from ..config import settings as default_settings
from ..core.types import FileEntry, ScanError, ScanResult
from ..security.path_validator import ValidatedPath
from ..shared.file_utils import is_hidden

logger = logging.getLogger(__name__)

# (name, is_dir, is_file, is_symlink)
DirEntry = Tuple[str, bool, bool, bool]


class _FileLimitReached(Exception):
    pass


class FileScanner:
    """Scan directories for files."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        skip_directories: Optional[List[str]] = None,
    ):
        self.settings = settings or default_settings
        self.skip_directories = set(
            skip_directories if skip_directories is not None else SKIP_DIRECTORIES
        )

    async def scan(
        self,
        root: ValidatedPath,
        recursive: bool = False,
        max_depth: Optional[int] = None,
    ) -> ScanResult:
        """
        Scan a directory.

        Args:
            root: Validated directory to scan
            recursive: Descend into subdirectories
            max_depth: Depth limit for this call; never exceeds the configured
                ``max_scan_depth``

        Returns:
            ScanResult with files, per-entry errors and whether the file-count
            ceiling stopped the scan early
        """
        if not isinstance(root, ValidatedPath):
            raise TypeError("scan() requires a ValidatedPath")

        depth_limit = self.settings.max_scan_depth
        if max_depth is not None:
            depth_limit = min(max_depth, depth_limit)

        result = ScanResult(root=root.path)
        visited: Set[str] = set()

        try:
            await self._scan_dir(root.path, 0, recursive, depth_limit, visited, result)
        except _FileLimitReached:
            result.limit_reached = True
            logger.warning(
                f"Maximum file limit ({self.settings.max_files_per_operation}) "
                f"reached while scanning {root.path}",
                extra={"context": {"root": str(root.path)}},
            )

        logger.info(
            f"Found {len(result.files)} files in {root.path}",
            extra={
                "context": {
                    "root": str(root.path),
                    "files": len(result.files),
                    "errors": len(result.errors),
                }
            },
        )
        return result

    async def _scan_dir(
        self,
        directory: Path,
        depth: int,
        recursive: bool,
        depth_limit: int,
        visited: Set[str],
        result: ScanResult,
    ) -> None:
        if depth > depth_limit:
            logger.warning(f"Max depth {depth_limit} reached at {directory}")
            return

        real_dir = await asyncio.to_thread(os.path.realpath, directory)
        if real_dir in visited:
            logger.warning(f"Directory cycle detected at {directory}, skipping")
            return
        visited.add(real_dir)

        try:
            entries = await asyncio.to_thread(self._list_dir, directory)
        except FileNotFoundError:
            return
        except PermissionError as e:
            logger.warning(f"Permission denied at {directory}, skipping")
            result.errors.append(ScanError(path=str(directory), error=str(e)))
            return

        for name, is_dir, is_file, is_symlink in entries:
            if is_hidden(name) or is_symlink:
                continue

            full_path = directory / name

            if is_file:
                if len(result.files) >= self.settings.max_files_per_operation:
                    raise _FileLimitReached()
                try:
                    entry = await asyncio.to_thread(self._stat_nofollow, full_path)
                except OSError as e:
                    if e.errno in (errno.ENOENT, errno.ELOOP):
                        continue
                    result.errors.append(ScanError(path=str(full_path), error=str(e)))
                    continue
                result.files.append(entry)

            elif is_dir and recursive and name not in self.skip_directories:
                await self._scan_dir(
                    full_path, depth + 1, recursive, depth_limit, visited, result
                )

    @staticmethod
    def _list_dir(directory: Path) -> List[DirEntry]:
        entries: List[DirEntry] = []
        with os.scandir(directory) as it:
            for entry in it:
                try:
                    entries.append(
                        (
                            entry.name,
                            entry.is_dir(follow_symlinks=False),
                            entry.is_file(follow_symlinks=False),
                            entry.is_symlink(),
                        )
                    )
                except OSError as e:
                    logger.debug(f"Could not inspect {entry.path}: {e}")
        entries.sort()
        return entries

    @staticmethod
    def _stat_nofollow(path: Path) -> FileEntry:
        flags = (
            os.O_RDONLY
            | getattr(os, "O_NOFOLLOW", 0)
            | getattr(os, "O_NONBLOCK", 0)
            | getattr(os, "O_BINARY", 0)
        )
        fd = os.open(path, flags)
        try:
            stat_result = os.fstat(fd)
        finally:
            os.close(fd)
        return FileEntry.from_stat(path, stat_result)
