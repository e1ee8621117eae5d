"""
Advisory lock files.

A lock is a marker file created exclusively. It holds the millisecond
timestamp at which it was taken followed by a random owner token
(``<ms>:<token>``). Markers older than ``stale_after`` are treated as left
behind by a crashed process and removed; a holder only ever removes a marker
that still carries its own token.
"""

import asyncio
import errno
import hashlib
import logging
import os
import uuid
from pathlib import Path
from typing import Optional, Tuple

from ..core.errors import ManifestLockError, ManifestWriteError
from .transaction import now_ms

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 300.0


class AdvisoryLock:
    """Exclusive lock backed by a marker file."""

    def __init__(
        self,
        lock_path: Path,
        timeout: float = 5.0,
        poll_interval: float = 0.05,
        retry_delay: float = 1.0,
        stale_after: float = DEFAULT_STALE_AFTER,
    ):
        """
        Initialize the lock.

        Args:
            lock_path: Marker file location
            timeout: Seconds to wait for the lock
            poll_interval: Initial wait between attempts (doubles up to 0.5s)
            retry_delay: Backoff before the single retry after a disk-full
                failure while writing the marker
            stale_after: Age in seconds after which someone else's marker is
                considered abandoned; must outlast the longest operation
        """
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay
        self.stale_after = stale_after
        self._token: Optional[str] = None

    @classmethod
    def for_directory(
        cls,
        storage_dir: Path,
        directory: Path,
        timeout: float = 5.0,
        stale_after: float = DEFAULT_STALE_AFTER,
    ) -> "AdvisoryLock":
        """Lock scoped to one target directory, stored under ``storage_dir``."""
        key = hashlib.sha256(str(directory).encode("utf-8")).hexdigest()[:16]
        return cls(
            Path(storage_dir) / "locks" / f"dir-{key}.lock",
            timeout=timeout,
            stale_after=stale_after,
        )

    @property
    def held(self) -> bool:
        return self._token is not None

    async def acquire(self) -> None:
        """
        Acquire the lock.

        Raises:
            ManifestLockError: If the lock is still held by someone else when
                the timeout expires
            ManifestWriteError: If the marker cannot be written after one retry
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        delay = self.poll_interval
        retried_write = False
        token = uuid.uuid4().hex

        while True:
            try:
                created = await asyncio.to_thread(self._try_create, token)
            except OSError as e:
                if e.errno != errno.ENOSPC:
                    raise
                if retried_write:
                    raise ManifestWriteError(
                        "Could not write lock marker: disk full",
                        suggestion="Free disk space and retry the operation",
                    ) from e
                retried_write = True
                logger.warning("Disk full while writing lock marker, retrying once")
                await asyncio.sleep(self.retry_delay)
                continue

            if created:
                self._token = token
                logger.debug(f"Acquired lock {self.lock_path}")
                return

            if await asyncio.to_thread(self._remove_if_stale):
                continue

            if loop.time() >= deadline:
                raise ManifestLockError(
                    f"Could not acquire lock within {self.timeout}s",
                    suggestion="Another operation is in progress; retry shortly",
                )

            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.5)

    async def release(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        await asyncio.to_thread(self._remove_own_marker, token)

    async def __aenter__(self) -> "AdvisoryLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()

    def _try_create(self, token: str) -> bool:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        try:
            os.write(fd, f"{now_ms()}:{token}".encode("ascii"))
        except OSError:
            os.close(fd)
            os.unlink(self.lock_path)
            raise
        os.close(fd)
        return True

    def _read_marker(self) -> Optional[Tuple[Optional[int], str]]:
        """(timestamp or None if unparsable, token) or None if absent."""
        try:
            with open(self.lock_path, "r", encoding="ascii") as f:
                content = f.read().strip()
        except FileNotFoundError:
            return None
        except UnicodeDecodeError:
            return None, ""

        stamp, _, token = content.partition(":")
        try:
            return int(stamp), token
        except ValueError:
            return None, token

    def _remove_own_marker(self, token: str) -> None:
        marker = self._read_marker()
        if marker is None:
            logger.warning(f"Lock marker {self.lock_path} vanished before release")
            return
        if marker[1] != token:
            logger.warning(
                f"Lock marker {self.lock_path} was taken over by another holder; "
                f"leaving it in place"
            )
            return
        try:
            os.unlink(self.lock_path)
            logger.debug(f"Released lock {self.lock_path}")
        except FileNotFoundError:
            logger.warning(f"Lock marker {self.lock_path} vanished before release")

    def _lock_age_ms(self) -> Optional[int]:
        marker = self._read_marker()
        if marker is None:
            return None
        stamp = marker[0]
        if stamp is None:
            # Unreadable marker: fall back to its mtime
            try:
                stamp = int(os.stat(self.lock_path).st_mtime * 1000)
            except FileNotFoundError:
                return None
        return now_ms() - stamp

    def _remove_if_stale(self) -> bool:
        age = self._lock_age_ms()
        if age is None:
            # Marker disappeared between attempts
            return True
        if age <= self.stale_after * 1000:
            return False

        logger.warning(f"Stale lock detected ({age} ms old), removing {self.lock_path}")
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass
        return True
