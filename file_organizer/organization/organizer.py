"""
File organizer for sorting files into category folders.

Planning is read-only. Execution moves one file at a time without ever
replacing an existing file implicitly, and records every move so the whole
batch can be undone.
"""

import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence, Set, Union

from ..core.errors import (
    FileAccessDeniedError,
    FileOrganizerError,
    ManifestLockError,
    ManifestWriteError,
    PathValidationError,
    sanitize_error_message,
)
from ..core.platform import PlatformProfile
from ..core.types import (
    ConflictStrategy,
    FileEntry,
    MoveIntent,
    OrganizationPlan,
    OrganizeAction,
    OrganizeResult,
    PlanConflict,
    SkippedFile,
)
from ..security.path_validator import LAYER_SYMLINKS, PathValidator, ValidatedPath
from ..shared.file_utils import is_hidden, move_no_clobber, path_exists
from .categorizer import Categorizer
from .rollback import ManifestStore, log_unrecorded_actions
from .transaction import ActionType, RollbackAction, now_ms

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ERRORS = 10
SECONDS_PER_FILE = 0.05
MAX_RENAME_ATTEMPTS = 10000

_OVERWRITES = (ConflictStrategy.OVERWRITE, ConflictStrategy.OVERWRITE_IF_NEWER)

# Reserved device names are rejected on every platform so organized trees
# stay portable.
_RESERVED_NAMES = PlatformProfile.windows()


class _MoveOutcome(NamedTuple):
    destination: Optional[Path] = None
    overwritten_backup: Optional[Path] = None
    skipped_reason: Optional[str] = None


class Organizer:
    """Organize files in a directory into per-category folders."""

    def __init__(
        self,
        categorizer: Categorizer,
        store: ManifestStore,
        backup_dir: Path,
        profile: Optional[PlatformProfile] = None,
        validator: Optional[PathValidator] = None,
    ):
        """
        Initialize organizer.

        Args:
            categorizer: Maps file names to category folder names
            store: Receives the rollback manifest after each live run
            backup_dir: Where replaced destination files are kept
            profile: Platform rules used to compare paths
            validator: Re-checks each category folder against the security
                mode before anything is moved into it
        """
        self.categorizer = categorizer
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.profile = profile or PlatformProfile.detect()
        self.validator = validator

    async def generate_organization_plan(
        self,
        root: ValidatedPath,
        files: Sequence[FileEntry],
        conflict_strategy: Union[ConflictStrategy, str] = ConflictStrategy.RENAME,
    ) -> OrganizationPlan:
        """
        Plan moves without touching the filesystem.

        Args:
            root: Directory being organized
            files: Files found in it
            conflict_strategy: How to handle destinations that already exist

        Returns:
            OrganizationPlan with moves, conflicts and skipped files
        """
        if not isinstance(root, ValidatedPath):
            raise TypeError("generate_organization_plan() requires a ValidatedPath")
        strategy = ConflictStrategy(conflict_strategy)

        plan = OrganizationPlan(estimated_duration=len(files) * SECONDS_PER_FILE)
        planned: Set[str] = set()
        consecutive_errors = 0

        for index, entry in enumerate(files):
            if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                plan.aborted = True
                plan.warnings.append(
                    f"Aborted after {MAX_CONSECUTIVE_ERRORS} consecutive errors. "
                    f"{len(files) - index} files remaining unprocessed."
                )
                logger.warning(plan.warnings[-1])
                break

            try:
                move = await self._plan_file(root, entry, strategy, planned, plan)
            except (OSError, FileOrganizerError) as e:
                consecutive_errors += 1
                plan.skipped.append(
                    SkippedFile(path=entry.path, reason=sanitize_error_message(e))
                )
                continue

            consecutive_errors = 0
            if move is None:
                continue

            planned.add(self._key(move.destination))
            plan.moves.append(move)
            plan.category_counts[move.category] = (
                plan.category_counts.get(move.category, 0) + 1
            )

        logger.info(
            f"Planned {len(plan.moves)} moves, {len(plan.skipped)} skipped, "
            f"{len(plan.conflicts)} conflicts",
            extra={
                "context": {
                    "root": str(root.path),
                    "moves": len(plan.moves),
                    "skipped": len(plan.skipped),
                    "conflicts": len(plan.conflicts),
                    "strategy": strategy.value,
                }
            },
        )
        return plan

    async def organize(
        self,
        root: ValidatedPath,
        files: Sequence[FileEntry],
        dry_run: bool = False,
        conflict_strategy: Union[ConflictStrategy, str] = ConflictStrategy.RENAME,
    ) -> OrganizeResult:
        """
        Organize files according to the plan.

        Args:
            root: Directory being organized
            files: Files found in it
            dry_run: If True, return the planned moves without executing them
            conflict_strategy: How to handle destinations that already exist

        Returns:
            OrganizeResult with statistics, performed moves and errors
        """
        logger.info(f"Starting organization ({'DRY RUN' if dry_run else 'LIVE'})")
        strategy = ConflictStrategy(conflict_strategy)
        plan = await self.generate_organization_plan(root, files, strategy)

        result = OrganizeResult(
            dry_run=dry_run,
            aborted=plan.aborted,
            skipped=list(plan.skipped),
            warnings=list(plan.warnings),
        )

        if dry_run:
            result.statistics = dict(plan.category_counts)
            result.actions = [
                OrganizeAction(
                    file=m.source.name,
                    source=m.source,
                    destination=m.destination,
                    category=m.category,
                )
                for m in plan.moves
            ]
            return result

        rollback_actions: List[RollbackAction] = []
        statistics: Dict[str, int] = {}

        for move in plan.moves:
            name = move.source.name
            if _RESERVED_NAMES.is_reserved_name(move.destination.name):
                message = f"Skipped reserved filename in destination: {name}"
                logger.warning(message)
                result.errors.append(message)
                continue

            try:
                # The folder may have changed since planning
                await self._check_destination(root, move.destination.parent)
                outcome = await asyncio.to_thread(self._execute_move, move)
            except (OSError, FileOrganizerError) as e:
                logger.error(f"Error moving {name}: {e}")
                result.errors.append(f"{name}: {sanitize_error_message(e)}")
                continue

            if outcome.skipped_reason:
                result.skipped.append(
                    SkippedFile(path=move.source, reason=outcome.skipped_reason)
                )
                continue

            destination = outcome.destination
            rollback_actions.append(
                RollbackAction(
                    type=ActionType.MOVE,
                    original_path=str(move.source),
                    current_path=str(destination),
                    overwritten_backup_path=(
                        str(outcome.overwritten_backup)
                        if outcome.overwritten_backup
                        else None
                    ),
                )
            )
            result.actions.append(
                OrganizeAction(
                    file=name,
                    source=move.source,
                    destination=destination,
                    category=move.category,
                )
            )
            statistics[move.category] = statistics.get(move.category, 0) + 1
            logger.debug(f"Moved {name} → {move.category}/{destination.name}")

        result.statistics = statistics

        if rollback_actions:
            try:
                manifest = await self.store.create_manifest(
                    f"Organized {len(rollback_actions)} files in {root.name}",
                    rollback_actions,
                )
                result.manifest_id = manifest.id
            except (ManifestWriteError, ManifestLockError) as e:
                result.manifest_error = log_unrecorded_actions(rollback_actions, e)

        logger.info(
            f"Organized {result.success_count} files, {result.error_count} errors",
            extra={
                "context": {
                    "root": str(root.path),
                    "moved": result.success_count,
                    "errors": result.error_count,
                    "manifest_id": result.manifest_id,
                }
            },
        )
        return result

    async def _plan_file(
        self,
        root: ValidatedPath,
        entry: FileEntry,
        strategy: ConflictStrategy,
        planned: Set[str],
        plan: OrganizationPlan,
    ) -> Optional[MoveIntent]:
        if is_hidden(entry.name):
            plan.skipped.append(SkippedFile(path=entry.path, reason="Hidden file"))
            return None

        category = self.categorizer.get_category(entry.name)
        destination = root.path / category / entry.name

        if self._key(entry.path) == self._key(destination):
            plan.skipped.append(
                SkippedFile(path=entry.path, reason="Already in its category folder")
            )
            return None

        await self._check_destination(root, destination.parent)

        on_disk = await asyncio.to_thread(path_exists, destination)
        in_plan = self._key(destination) in planned
        if not (on_disk or in_plan):
            return MoveIntent(
                source=entry.path,
                destination=destination,
                category=category,
                resolution=strategy,
            )

        if strategy == ConflictStrategy.SKIP:
            plan.conflicts.append(
                PlanConflict(
                    file=entry.path, destination=destination, resolution=strategy
                )
            )
            plan.skipped.append(
                SkippedFile(path=entry.path, reason="Destination already exists")
            )
            return None

        if strategy == ConflictStrategy.RENAME or in_plan:
            # Two sources never overwrite each other within one batch
            destination = await asyncio.to_thread(
                self._free_name, destination, planned
            )
        elif strategy == ConflictStrategy.OVERWRITE_IF_NEWER:
            newer = await asyncio.to_thread(_is_newer, entry.path, destination)
            if not newer:
                plan.conflicts.append(
                    PlanConflict(
                        file=entry.path, destination=destination, resolution=strategy
                    )
                )
                plan.skipped.append(
                    SkippedFile(path=entry.path, reason="Destination is newer")
                )
                return None

        plan.conflicts.append(
            PlanConflict(file=entry.path, destination=destination, resolution=strategy)
        )
        return MoveIntent(
            source=entry.path,
            destination=destination,
            category=category,
            has_conflict=True,
            resolution=strategy,
        )

    async def _check_destination(self, root: ValidatedPath, folder: Path) -> None:
        """Refuse a category folder that is a symlink or leaves the allowed roots."""
        if await asyncio.to_thread(os.path.islink, folder):
            raise _symlinked_folder()
        if self.validator is not None:
            await self.validator.validate(folder, root.mode)

    def _execute_move(self, move: MoveIntent) -> _MoveOutcome:
        folder = move.destination.parent
        try:
            if os.path.islink(folder):
                raise _symlinked_folder()
            folder.mkdir(exist_ok=True)
            if os.path.islink(folder):
                raise _symlinked_folder()
            return self._move_into_place(move)
        except PermissionError as e:
            raise FileAccessDeniedError(
                f"Permission denied moving {move.source.name}",
                details={"errno": e.errno},
                suggestion="Check the permissions of the file and its "
                "category folder",
            ) from e

    def _move_into_place(self, move: MoveIntent) -> _MoveOutcome:
        source = move.source
        destination = move.destination

        for _ in range(MAX_RENAME_ATTEMPTS):
            if move.resolution in _OVERWRITES and path_exists(destination):
                if move.resolution == ConflictStrategy.OVERWRITE_IF_NEWER and not (
                    _is_newer(source, destination)
                ):
                    return _MoveOutcome(skipped_reason="Destination is newer")
                backup = self._replace(source, destination)
                return _MoveOutcome(destination=destination, overwritten_backup=backup)

            try:
                move_no_clobber(source, destination)
                return _MoveOutcome(destination=destination)
            except FileExistsError:
                # Destination appeared after planning
                if move.resolution == ConflictStrategy.SKIP:
                    return _MoveOutcome(skipped_reason="Destination already exists")
                if move.resolution == ConflictStrategy.RENAME:
                    destination = self._free_name(
                        destination.parent / source.name, set()
                    )

        raise FileOrganizerError(f"No free destination name for {source.name}")

    def _replace(self, source: Path, destination: Path) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        backup = self.backup_dir / (
            f"{now_ms()}_{uuid.uuid4().hex[:9]}_overwrite_{destination.name}"
        )
        move_no_clobber(destination, backup)
        try:
            move_no_clobber(source, destination)
        except OSError:
            try:
                move_no_clobber(backup, destination)
            except OSError as restore_error:
                logger.critical(
                    f"Failed to restore backup for {destination.name}; "
                    f"the replaced file remains at {backup}: {restore_error}"
                )
            raise
        return backup

    def _free_name(self, destination: Path, planned: Set[str]) -> Path:
        """First ``name (n).ext`` not present on disk or in the plan."""
        stem, suffix = destination.stem, destination.suffix
        for counter in range(1, MAX_RENAME_ATTEMPTS + 1):
            candidate = destination.with_name(f"{stem} ({counter}){suffix}")
            if self._key(candidate) not in planned and not path_exists(candidate):
                return candidate
        raise FileOrganizerError(f"No free destination name for {destination.name}")

    def _key(self, path: Path) -> str:
        return self.profile.normalize_case(os.path.normpath(str(path)))


def _is_newer(source: Path, destination: Path) -> bool:
    return os.stat(source).st_mtime > os.stat(destination).st_mtime


def _symlinked_folder() -> PathValidationError:
    return PathValidationError(
        LAYER_SYMLINKS,
        "category folder is a symlink",
        suggestion="Replace the link with a real folder before organizing",
    )
