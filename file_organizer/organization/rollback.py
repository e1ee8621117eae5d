"""
Rollback manifest storage and undo.

Manifests live in the storage directory as ``<id>.json``. A ``latest`` file
names the manifest ``undo_last`` addresses. Undone manifests are moved to
``undone/`` so they cannot be replayed twice.
"""

import asyncio
import errno
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from ..core.errors import (
    FileOrganizerError,
    ManifestNotFoundError,
    ManifestWriteError,
    PathValidationError,
    TamperDetectedError,
    sanitize_error_message,
)
from ..core.types import UndoResult
from ..security.path_validator import (
    LAYER_CONTAINMENT,
    PathValidator,
    ValidatedPath,
)
from ..shared.file_utils import (
    move_no_clobber,
    move_no_clobber_or_recase,
    path_exists,
)
from .integrity import ManifestIntegrityService
from .locking import DEFAULT_STALE_AFTER, AdvisoryLock
from .transaction import ActionType, RollbackAction, RollbackManifest

logger = logging.getLogger(__name__)

MANIFEST_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

LATEST_POINTER = "latest"
UNDONE_DIR = "undone"


def log_unrecorded_actions(actions: List[RollbackAction], error: Exception) -> str:
    """
    Log applied actions whose manifest could not be written.

    The full action list goes to the log at critical level so an operator
    can put the files back by hand.

    Returns:
        Sanitized reason for the caller's result
    """
    logger.critical(
        f"{len(actions)} applied actions were not recorded for undo: {error}",
        extra={"context": {"actions": [action.canonical() for action in actions]}},
    )
    return f"Undo record not written: {sanitize_error_message(error)}"


class ManifestStore:
    """Persist, load and archive rollback manifests."""

    def __init__(
        self,
        storage_dir: Path,
        integrity: ManifestIntegrityService,
        lock_timeout: float = 5.0,
        retry_delay: float = 1.0,
        lock_stale_after: float = DEFAULT_STALE_AFTER,
    ):
        """
        Initialize the store.

        Args:
            storage_dir: Directory holding manifests and the latest pointer
            integrity: Service used to stamp manifests before they are written
            lock_timeout: Seconds to wait for the store lock
            retry_delay: Backoff before the single retry after a disk-full write
            lock_stale_after: Age after which a store lock marker is abandoned
        """
        self.storage_dir = Path(storage_dir)
        self.integrity = integrity
        self.lock_timeout = lock_timeout
        self.retry_delay = retry_delay
        self.lock_stale_after = lock_stale_after

    @property
    def undone_dir(self) -> Path:
        return self.storage_dir / UNDONE_DIR

    def manifest_path(self, manifest_id: str) -> Path:
        return self.storage_dir / f"{manifest_id}.json"

    def _lock(self) -> AdvisoryLock:
        return AdvisoryLock(
            self.storage_dir / "locks" / "manifests.lock",
            timeout=self.lock_timeout,
            retry_delay=self.retry_delay,
            stale_after=self.lock_stale_after,
        )

    async def create_manifest(
        self, description: str, actions: List[RollbackAction]
    ) -> RollbackManifest:
        """
        Stamp and persist a manifest, then point ``latest`` at it.

        Args:
            description: Human-readable summary of the operation
            actions: Actions in the order they were applied

        Returns:
            The persisted, stamped manifest

        Raises:
            ManifestWriteError: If the disk stays full after one retry
            ManifestLockError: If the store lock cannot be acquired
        """
        manifest = self.integrity.stamp(
            RollbackManifest(description=description, actions=list(actions))
        )

        async with self._lock():
            await self._write_with_retry(
                self.manifest_path(manifest.id), manifest.to_json()
            )
            await self._write_with_retry(
                self.storage_dir / LATEST_POINTER, manifest.id
            )

        logger.info(
            f"Created rollback manifest: {manifest.id} ({len(manifest.actions)} actions)",
            extra={
                "context": {
                    "manifest_id": manifest.id,
                    "actions": len(manifest.actions),
                }
            },
        )
        return manifest

    async def load_manifest(self, manifest_id: str) -> RollbackManifest:
        """
        Load a manifest by id.

        Raises:
            ManifestNotFoundError: If no active manifest has this id
            TamperDetectedError: If the file cannot be parsed as a manifest
        """
        path = self.manifest_path(manifest_id)
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError as e:
            raise ManifestNotFoundError(
                f"Manifest {manifest_id} not found",
                suggestion="List operations to see the available manifests",
            ) from e

        try:
            manifest = RollbackManifest.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            raise TamperDetectedError(
                manifest_id, "manifest could not be parsed"
            ) from e

        if manifest.id != manifest_id:
            raise TamperDetectedError(
                manifest_id, "manifest id does not match its file"
            )
        return manifest

    async def latest_manifest_id(self) -> Optional[str]:
        pointer = self.storage_dir / LATEST_POINTER
        try:
            content = await asyncio.to_thread(pointer.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        return content.strip() or None

    async def latest_manifest(self) -> Optional[RollbackManifest]:
        manifest_id = await self.latest_manifest_id()
        if manifest_id is None:
            return None
        return await self.load_manifest(manifest_id)

    async def list_manifests(self) -> List[RollbackManifest]:
        """
        List active manifests, newest first.

        Files that cannot be parsed are logged and left out.
        """
        manifests = await asyncio.to_thread(self._read_all)
        return sorted(manifests, key=lambda m: m.timestamp, reverse=True)

    async def archive_manifest(self, manifest_id: str) -> None:
        """Move a manifest to ``undone/`` and clear ``latest`` if it named it."""
        async with self._lock():
            await asyncio.to_thread(self._archive, manifest_id)
        logger.info(f"Archived rollback manifest: {manifest_id}")

    def _read_all(self) -> List[RollbackManifest]:
        if not self.storage_dir.is_dir():
            return []

        manifests: List[RollbackManifest] = []
        for path in self.storage_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                manifests.append(RollbackManifest.model_validate(data))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.error(f"Failed to parse rollback manifest {path.name}: {e}")
        return manifests

    def _archive(self, manifest_id: str) -> None:
        self.undone_dir.mkdir(parents=True, exist_ok=True)
        os.replace(
            self.manifest_path(manifest_id), self.undone_dir / f"{manifest_id}.json"
        )

        pointer = self.storage_dir / LATEST_POINTER
        try:
            if pointer.read_text(encoding="utf-8").strip() == manifest_id:
                pointer.unlink()
        except FileNotFoundError:
            pass

    async def _write_with_retry(self, path: Path, content: str) -> None:
        try:
            await asyncio.to_thread(self._atomic_write, path, content)
            return
        except OSError as e:
            if e.errno != errno.ENOSPC:
                raise ManifestWriteError(
                    f"Could not write {path.name}: {sanitize_error_message(e)}"
                ) from e
            logger.warning(f"Disk full while writing {path.name}, retrying once")

        await asyncio.sleep(self.retry_delay)
        try:
            await asyncio.to_thread(self._atomic_write, path, content)
        except OSError as e:
            raise ManifestWriteError(
                f"Could not write {path.name}: {sanitize_error_message(e)}",
                suggestion="Free disk space and retry the operation",
            ) from e

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise


class RollbackService:
    """Verify manifests and replay them in reverse."""

    def __init__(
        self,
        store: ManifestStore,
        integrity: ManifestIntegrityService,
        validator: PathValidator,
        backup_dir: Optional[Path] = None,
    ):
        self.store = store
        self.integrity = integrity
        self.validator = validator
        self.backup_dir = Path(backup_dir) if backup_dir is not None else None

    async def undo_last(self) -> UndoResult:
        manifest_id = await self.store.latest_manifest_id()
        if manifest_id is None:
            raise ManifestNotFoundError(
                "No operation to undo",
                suggestion="Older operations can be undone by id",
            )
        return await self.undo(manifest_id)

    async def undo(self, manifest_id: str) -> UndoResult:
        """
        Reverse one operation.

        The manifest is verified and every recorded path is re-validated
        before anything on disk changes. Individual action failures are
        collected in the result.

        Raises:
            FileOrganizerError: If the id is not a UUID
            ManifestNotFoundError: If the manifest does not exist
            TamperDetectedError: If the manifest fails verification
            PathValidationError: If a recorded path is no longer authorized
        """
        if not isinstance(manifest_id, str) or not MANIFEST_ID_PATTERN.match(
            manifest_id
        ):
            raise FileOrganizerError(
                "Invalid manifest ID format", code="INVALID_MANIFEST_ID"
            )

        manifest = await self.store.load_manifest(manifest_id)
        verification = self.integrity.verify_manifest(manifest)
        if not verification.valid:
            logger.error(
                f"Manifest {manifest_id} failed verification: {verification.error}",
                extra={"context": {"manifest_id": manifest_id}},
            )
            raise TamperDetectedError(manifest_id, verification.error or "invalid")

        resolved = await self._validate_paths(manifest.actions)

        result = UndoResult(manifest_id=manifest_id)
        for action in reversed(manifest.actions):
            try:
                await asyncio.to_thread(self._reverse_action, action, resolved)
                result.restored += 1
            except (OSError, FileOrganizerError) as e:
                result.failed += 1
                result.errors.append(
                    f"Failed to undo {action.type} for "
                    f"{Path(action.original_path).name}: {sanitize_error_message(e)}"
                )

        await self.store.archive_manifest(manifest_id)

        logger.info(
            f"Undo of {manifest_id}: {result.restored} restored, {result.failed} failed",
            extra={
                "context": {
                    "manifest_id": manifest_id,
                    "restored": result.restored,
                    "failed": result.failed,
                }
            },
        )
        return result

    async def _validate_paths(
        self, actions: List[RollbackAction]
    ) -> Dict[str, ValidatedPath]:
        resolved: Dict[str, ValidatedPath] = {}
        for action in actions:
            for raw in (action.original_path, action.current_path):
                if raw and raw not in resolved:
                    resolved[raw] = await self.validator.validate(raw)
            for backup in (action.backup_path, action.overwritten_backup_path):
                if backup:
                    await asyncio.to_thread(self._check_backup_path, backup)
        return resolved

    def _check_backup_path(self, backup: str) -> None:
        if self.backup_dir is None:
            return
        root = Path(os.path.realpath(self.backup_dir))
        if not self.validator.is_within(root, Path(os.path.realpath(backup))):
            raise PathValidationError(
                LAYER_CONTAINMENT, "backup path is outside the backup directory"
            )

    def _reverse_action(
        self, action: RollbackAction, resolved: Dict[str, ValidatedPath]
    ) -> None:
        original = resolved[action.original_path].path

        if action.type == ActionType.MOVE:
            if not action.current_path:
                raise FileOrganizerError("Move action has no current path recorded")
            current = resolved[action.current_path].path
            if not path_exists(current):
                raise FileNotFoundError(errno.ENOENT, "Current file not found")
            original.parent.mkdir(parents=True, exist_ok=True)
            move_no_clobber_or_recase(current, original)
            if action.overwritten_backup_path:
                move_no_clobber(Path(action.overwritten_backup_path), current)

        elif action.type == ActionType.COPY:
            if not action.current_path:
                raise FileOrganizerError("Copy action has no current path recorded")
            os.unlink(resolved[action.current_path].path)

        elif action.type == ActionType.DELETE:
            if not action.backup_path:
                raise FileOrganizerError(
                    "Cannot restore deleted file: no backup path recorded"
                )
            original.parent.mkdir(parents=True, exist_ok=True)
            move_no_clobber(Path(action.backup_path), original)
