"""
Content hashing for duplicate detection.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Union

from ..core.errors import FileTooLargeError
from ..shared.file_utils import DEFAULT_CHUNK_SIZE, checksum_handle, compute_checksum

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024


class ContentHasher:
    """Compute SHA-256 digests of file content, streaming in chunks."""

    def __init__(
        self,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        algorithm: str = "sha256",
    ):
        self.max_file_size = max_file_size
        self.chunk_size = chunk_size
        self.algorithm = algorithm

    async def hash_file(self, path: Path) -> str:
        """
        Hash one file.

        Raises:
            FileTooLargeError: If the file exceeds ``max_file_size``
            OSError: If the file cannot be read
        """
        return await asyncio.to_thread(self._hash_path, Path(path))

    async def hash_handle(self, handle) -> str:
        """Hash an open binary handle; the caller keeps ownership of it."""
        return await asyncio.to_thread(self._hash_handle, handle)

    async def hash_many(
        self, paths: Iterable[Path], batch_size: int = 8
    ) -> Dict[Path, Union[str, Exception]]:
        """
        Hash several files with bounded concurrency.

        At most ``batch_size`` reads are in flight at a time. Failures are
        returned in place of the digest rather than raised.

        Returns:
            Mapping of path to digest or the exception raised for it
        """
        pending: List[Path] = [Path(p) for p in paths]
        results: Dict[Path, Union[str, Exception]] = {}

        for start in range(0, len(pending), batch_size):
            batch = pending[start : start + batch_size]
            digests = await asyncio.gather(
                *(self.hash_file(p) for p in batch), return_exceptions=True
            )
            for path, digest in zip(batch, digests):
                if isinstance(digest, BaseException) and not isinstance(
                    digest, Exception
                ):
                    raise digest
                results[path] = digest

        return results

    def _hash_path(self, path: Path) -> str:
        size = os.stat(path).st_size
        if size > self.max_file_size:
            raise FileTooLargeError(size, self.max_file_size)
        return compute_checksum(path, self.algorithm, self.chunk_size)

    def _hash_handle(self, handle) -> str:
        size = os.fstat(handle.fileno()).st_size
        if size > self.max_file_size:
            raise FileTooLargeError(size, self.max_file_size)
        return checksum_handle(handle, self.algorithm, self.chunk_size)
