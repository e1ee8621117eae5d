"""
Duplicate detection and safe deletion.

Files are grouped by byte size first; only sizes shared by two or more
non-empty files are hashed. Groups are then formed from files with equal size
and equal SHA-256 digest, and each member is scored to recommend which copy
to keep.
"""

import asyncio
import logging
import os
import re
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

from ..core.errors import (
    FileAccessDeniedError,
    FileOrganizerError,
    ManifestLockError,
    ManifestWriteError,
    sanitize_error_message,
)
from ..core.types import (
    DeletionResult,
    DuplicateGroup,
    FailedPath,
    FileEntry,
    RetentionStrategy,
    ScoredFile,
)
from ..organization.rollback import ManifestStore, log_unrecorded_actions
from ..organization.transaction import ActionType, RollbackAction, now_ms
from ..security.path_validator import PathValidator, ValidatedPath
from ..shared.file_utils import is_hidden, move_no_clobber
from .hashing import ContentHasher

logger = logging.getLogger(__name__)

# Folder names that suggest a throwaway copy
JUNK_LOCATIONS = {"downloads", "temp", "tmp", "cache", "trash"}
# Folder names that suggest the copy somebody curated
ORGANIZED_LOCATIONS = {"documents", "projects", "pictures", "photos", "src", "work"}

JUNK_LOCATION_PENALTY = 50.0
ORGANIZED_LOCATION_BONUS = 20.0
COPY_MARKER_PENALTY = 30.0

COPY_MARKER = re.compile(r"copy|\s\(\d+\)$|_\d+$", re.IGNORECASE)


def score_file(entry: FileEntry, strategy: RetentionStrategy) -> ScoredFile:
    """
    Score one duplicate candidate. Higher scores are better to keep.

    Args:
        entry: Candidate file
        strategy: Retention strategy

    Returns:
        ScoredFile with the score and the reasons behind it
    """
    score = 0.0
    reasons: List[str] = []

    if strategy in (RetentionStrategy.NEWEST, RetentionStrategy.OLDEST):
        modified = entry.modified.timestamp() if entry.modified else 0.0
        if strategy == RetentionStrategy.NEWEST:
            score += modified
            reasons.append("Newest bonus")
        else:
            score -= modified
            reasons.append("Oldest bonus")

    elif strategy == RetentionStrategy.BEST_LOCATION:
        folders = [part.lower() for part in entry.path.parent.parts]
        depth = len(entry.path.parts)
        score -= depth
        reasons.append(f"Path depth: {depth}")
        if JUNK_LOCATIONS.intersection(folders):
            score -= JUNK_LOCATION_PENALTY
            reasons.append("Location penalty (Downloads/Temp)")
        if ORGANIZED_LOCATIONS.intersection(folders):
            score += ORGANIZED_LOCATION_BONUS
            reasons.append("Location bonus (Organized folder)")

    elif strategy == RetentionStrategy.BEST_NAME:
        score -= len(entry.name)
        reasons.append(f"Name length: {len(entry.name)}")
        if COPY_MARKER.search(entry.path.stem):
            score -= COPY_MARKER_PENALTY
            reasons.append("Filename penalty (Copy/Duplicate marker)")

    return ScoredFile(path=entry.path, score=score, reasons=reasons)


class DuplicateFinder:
    """Find duplicate files and delete the redundant copies reversibly."""

    def __init__(
        self,
        hasher: ContentHasher,
        validator: PathValidator,
        store: ManifestStore,
        backup_dir: Path,
        batch_size: int = 8,
    ):
        self.hasher = hasher
        self.validator = validator
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.batch_size = batch_size

    async def find_duplicates(self, files: Sequence[FileEntry]) -> List[DuplicateGroup]:
        """
        Group files by identical size and content.

        Zero-byte files and files with a unique size are never hashed. Files
        that cannot be hashed are logged and left out.

        Returns:
            Groups of two or more files, largest reclaimable space first
        """
        by_size: Dict[int, List[FileEntry]] = defaultdict(list)
        for entry in files:
            if entry.size > 0:
                by_size[entry.size].append(entry)

        candidates = [
            entry for group in by_size.values() if len(group) > 1 for entry in group
        ]
        if not candidates:
            return []

        logger.info(
            f"Hashing {len(candidates)} of {len(files)} files sharing a size",
            extra={"context": {"candidates": len(candidates), "files": len(files)}},
        )
        digests = await self.hasher.hash_many(
            [entry.path for entry in candidates], batch_size=self.batch_size
        )

        by_content: Dict[Tuple[int, str], List[FileEntry]] = defaultdict(list)
        for entry in candidates:
            digest = digests.get(entry.path)
            if isinstance(digest, Exception):
                logger.warning(
                    f"Skipping {entry.name}: {sanitize_error_message(digest)}"
                )
                continue
            if digest is not None:
                by_content[(entry.size, digest)].append(entry)

        groups = [
            DuplicateGroup(
                digest=digest,
                size=size,
                files=sorted(members, key=lambda e: str(e.path)),
            )
            for (size, digest), members in by_content.items()
            if len(members) > 1
        ]
        groups.sort(key=lambda g: (-g.wasted_bytes, g.digest))

        logger.info(
            f"Found {len(groups)} duplicate groups",
            extra={
                "context": {
                    "groups": len(groups),
                    "wasted_bytes": sum(g.wasted_bytes for g in groups),
                }
            },
        )
        return groups

    async def find_with_scoring(
        self,
        files: Sequence[FileEntry],
        strategy: Union[RetentionStrategy, str] = RetentionStrategy.BEST_LOCATION,
    ) -> List[DuplicateGroup]:
        """Find duplicates and recommend which copy of each group to keep."""
        strategy = RetentionStrategy(strategy)
        groups = await self.find_duplicates(files)

        for group in groups:
            scored = [score_file(entry, strategy) for entry in group.files]
            # Ties go to the lexically smallest path
            scored.sort(key=lambda s: (-s.score, str(s.path)))
            group.scored_files = scored
            group.recommended_keep = scored[0].path
            group.recommended_delete = [s.path for s in scored[1:]]

        return groups

    async def delete_files(
        self,
        paths: Sequence[Union[str, os.PathLike]],
        create_backup: bool = True,
        auto_verify: bool = False,
    ) -> DeletionResult:
        """
        Delete files, by default reversibly.

        Each path is re-validated and opened without following symlinks to
        confirm it is still a readable regular file. A failure on one path is
        recorded and the batch continues.

        Args:
            paths: Files to delete
            create_backup: Move files into the backup directory and record a
                rollback manifest; when false, files are unlinked permanently
            auto_verify: Only delete a file if another copy with the same
                content remains in its directory

        Returns:
            DeletionResult with deleted paths, failures and the manifest id
        """
        result = DeletionResult()
        to_process: List[Tuple[ValidatedPath, str]] = []

        for raw in paths:
            try:
                validated, digest = await self._validate_and_hash(raw)
            except (FileOrganizerError, OSError) as e:
                result.failed.append(
                    FailedPath(path=str(raw), error=sanitize_error_message(e))
                )
                continue
            to_process.append((validated, digest))

        if auto_verify and to_process:
            to_process = await self._verify_copies_remain(to_process, result)

        actions: List[RollbackAction] = []
        if create_backup and to_process:
            await asyncio.to_thread(self.backup_dir.mkdir, parents=True, exist_ok=True)

        for validated, _ in to_process:
            try:
                action = await asyncio.to_thread(
                    self._remove_file, validated, create_backup
                )
                if action is not None:
                    actions.append(action)
                result.deleted.append(str(validated.path))
            except (OSError, FileAccessDeniedError) as e:
                logger.warning(f"Failed to delete {validated.name}: {e}")
                result.failed.append(
                    FailedPath(
                        path=str(validated.path), error=sanitize_error_message(e)
                    )
                )

        if actions:
            try:
                manifest = await self.store.create_manifest(
                    f"Deletion of {len(actions)} duplicates", actions
                )
                result.manifest_id = manifest.id
            except (ManifestWriteError, ManifestLockError) as e:
                result.manifest_error = log_unrecorded_actions(actions, e)

        logger.info(
            f"Deleted {len(result.deleted)} files, {len(result.failed)} failed",
            extra={
                "context": {
                    "deleted": len(result.deleted),
                    "failed": len(result.failed),
                    "backup": create_backup,
                }
            },
        )
        return result

    def _remove_file(
        self, validated: ValidatedPath, create_backup: bool
    ) -> Optional[RollbackAction]:
        try:
            if not create_backup:
                os.unlink(validated.path)
                return None
            backup_path = self.backup_dir / (
                f"{now_ms()}_{uuid.uuid4().hex[:9]}_{validated.name}"
            )
            move_no_clobber(validated.path, backup_path)
        except PermissionError as e:
            raise FileAccessDeniedError(
                f"Permission denied deleting {validated.name}",
                details={"errno": e.errno},
                suggestion="Check the permissions of the file and its folder",
            ) from e
        return RollbackAction(
            type=ActionType.DELETE,
            original_path=str(validated.path),
            backup_path=str(backup_path),
        )

    async def _validate_and_hash(
        self, raw: Union[str, os.PathLike]
    ) -> Tuple[ValidatedPath, str]:
        validated, handle = await self.validator.open_validated_file(raw)
        try:
            digest = await self.hasher.hash_handle(handle)
        finally:
            await asyncio.to_thread(handle.close)
        return validated, digest

    async def _verify_copies_remain(
        self,
        to_process: List[Tuple[ValidatedPath, str]],
        result: DeletionResult,
    ) -> List[Tuple[ValidatedPath, str]]:
        doomed: Set[Path] = {validated.path for validated, _ in to_process}
        by_dir: Dict[Path, List[Tuple[ValidatedPath, str]]] = defaultdict(list)
        for item in to_process:
            by_dir[item[0].path.parent].append(item)

        verified: List[Tuple[ValidatedPath, str]] = []
        for directory, items in by_dir.items():
            try:
                siblings = await asyncio.to_thread(
                    self._list_regular_files, directory, doomed
                )
            except OSError as e:
                for validated, _ in items:
                    result.failed.append(
                        FailedPath(
                            path=str(validated.path),
                            error=f"Verification failed: {sanitize_error_message(e)}",
                        )
                    )
                continue

            digests = await self.hasher.hash_many(siblings, batch_size=self.batch_size)
            remaining = {d for d in digests.values() if isinstance(d, str)}

            for validated, digest in items:
                if digest in remaining:
                    verified.append((validated, digest))
                else:
                    result.failed.append(
                        FailedPath(
                            path=str(validated.path),
                            error="Cannot delete: this is the last copy of this file "
                            "(no duplicates found in directory)",
                        )
                    )
        return verified

    @staticmethod
    def _list_regular_files(directory: Path, exclude: Set[Path]) -> List[Path]:
        found: List[Path] = []
        with os.scandir(directory) as it:
            for entry in it:
                if is_hidden(entry.name) or not entry.is_file(follow_symlinks=False):
                    continue
                path = Path(entry.path)
                if path not in exclude:
                    found.append(path)
        return found
