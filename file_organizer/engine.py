"""
Secure file operations engine.

Wires the validator, scanner, duplicate finder, organizer and rollback
components together. Every operation takes plain values from the caller and
re-validates paths itself.
"""

import asyncio
import logging
import os
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .analysis.duplicate_finder import DuplicateFinder
from .analysis.hashing import ContentHasher
from .analysis.scanner import FileScanner
from .config import Settings
from .config import settings as default_settings
from .core.errors import FileOrganizerError, PathValidationError, TamperDetectedError
from .core.types import (
    CategoryStats,
    ConflictStrategy,
    DeletionResult,
    DuplicateGroup,
    OrganizationPlan,
    OrganizeResult,
    RenamePreview,
    RenameResult,
    RetentionStrategy,
    ScanResult,
    SecurityMode,
    UndoResult,
)
from .organization.categorizer import Categorizer
from .organization.integrity import (
    KeyProvider,
    MachineKeyProvider,
    ManifestIntegrityService,
    VerificationResult,
)
from .organization.locking import AdvisoryLock
from .organization.organizer import Organizer
from .organization.renamer import Renamer
from .organization.rollback import ManifestStore, RollbackService
from .organization.transaction import RollbackManifest
from .security.path_validator import LAYER_ACCESS, PathValidator, ValidatedPath

logger = logging.getLogger(__name__)

PathInput = Union[str, os.PathLike]


class FileOrganizerEngine:
    """Caller-facing operations of the file organizer."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        key_provider: Optional[KeyProvider] = None,
        base_path: Optional[Path] = None,
    ):
        """
        Initialize the engine.

        Args:
            settings: Engine settings; the global settings by default
            key_provider: Supplies the manifest signing key; derived from the
                host by default
            base_path: Directory relative paths resolve against (and the
                authorized root in STRICT mode); the working directory by
                default
        """
        self.settings = settings or default_settings
        self.validator = PathValidator(self.settings, base_path=base_path)
        self.scanner = FileScanner(self.settings)
        self.hasher = ContentHasher(
            max_file_size=self.settings.max_file_size,
            chunk_size=self.settings.hash_chunk_size,
        )
        self.integrity = ManifestIntegrityService(key_provider or MachineKeyProvider())
        self.store = ManifestStore(
            self.settings.rollback_dir,
            self.integrity,
            lock_timeout=self.settings.lock_timeout_seconds,
            retry_delay=self.settings.write_retry_delay_seconds,
            lock_stale_after=self.settings.lock_stale_seconds,
        )
        self.categorizer = Categorizer(self.settings.custom_rules)
        self.duplicate_finder = DuplicateFinder(
            self.hasher,
            self.validator,
            self.store,
            self.settings.backup_dir,
            batch_size=self.settings.hash_batch_size,
        )
        self.organizer = Organizer(
            self.categorizer,
            self.store,
            self.settings.backup_dir,
            profile=self.validator.profile,
            validator=self.validator,
        )
        self.renamer = Renamer(self.validator, self.store, self.validator.profile)
        self.rollback = RollbackService(
            self.store,
            self.integrity,
            self.validator,
            backup_dir=self.settings.backup_dir,
        )

    async def validate_path(
        self, path: PathInput, mode: Optional[Union[SecurityMode, str]] = None
    ) -> ValidatedPath:
        return await self.validator.validate(path, mode)

    async def scan_directory(
        self,
        directory: PathInput,
        recursive: bool = False,
        max_depth: Optional[int] = None,
    ) -> ScanResult:
        root = await self._validate_directory(directory)
        return await self.scanner.scan(root, recursive=recursive, max_depth=max_depth)

    async def find_duplicates(
        self,
        directory: PathInput,
        strategy: Union[RetentionStrategy, str] = RetentionStrategy.BEST_LOCATION,
        recursive: bool = True,
    ) -> List[DuplicateGroup]:
        """
        Find duplicate files under a directory and score each group.

        Returns:
            Duplicate groups with keep/delete recommendations
        """
        scan = await self.scan_directory(directory, recursive=recursive)
        return await self.duplicate_finder.find_with_scoring(scan.files, strategy)

    async def delete_duplicates(
        self,
        paths: Iterable[PathInput],
        create_backup: bool = True,
        auto_verify: bool = False,
    ) -> DeletionResult:
        """
        Delete files (normally duplicates), recording a rollback manifest.

        Each directory touched is locked for the duration of the batch.
        """
        paths = list(paths)
        directories = set()
        for raw in paths:
            try:
                validated = await self.validator.validate(raw)
            except PathValidationError:
                # Reported per path by the duplicate finder
                continue
            directories.add(validated.path.parent)

        async with AsyncExitStack() as stack:
            for directory in sorted(directories):
                await stack.enter_async_context(self._directory_lock(directory))
            return await self.duplicate_finder.delete_files(
                paths, create_backup=create_backup, auto_verify=auto_verify
            )

    async def categorize_directory(
        self, directory: PathInput, recursive: bool = False
    ) -> Dict[str, CategoryStats]:
        scan = await self.scan_directory(directory, recursive=recursive)
        return self.categorizer.categorize(scan.files)

    async def preview_organization(
        self,
        directory: PathInput,
        conflict_strategy: Optional[Union[ConflictStrategy, str]] = None,
    ) -> OrganizationPlan:
        strategy = conflict_strategy or self.settings.default_conflict_strategy
        root = await self._validate_directory(directory)
        scan = await self.scanner.scan(root)
        return await self.organizer.generate_organization_plan(
            root, scan.files, strategy
        )

    async def organize_directory(
        self,
        directory: PathInput,
        dry_run: bool = False,
        conflict_strategy: Optional[Union[ConflictStrategy, str]] = None,
    ) -> OrganizeResult:
        """
        Move the files directly inside a directory into category folders.

        Args:
            directory: Directory to organize
            dry_run: Report the moves without performing them
            conflict_strategy: rename, skip, overwrite or overwrite_if_newer;
                the configured default when omitted

        Returns:
            OrganizeResult; ``manifest_id`` identifies the undo record
        """
        strategy = conflict_strategy or self.settings.default_conflict_strategy
        root = await self._validate_directory(directory, check_write=not dry_run)
        scan = await self.scanner.scan(root)

        if dry_run:
            return await self.organizer.organize(
                root, scan.files, dry_run=True, conflict_strategy=strategy
            )

        async with self._directory_lock(root.path):
            return await self.organizer.organize(
                root, scan.files, dry_run=False, conflict_strategy=strategy
            )

    async def preview_rename(
        self,
        rules: Sequence[Any],
        files: Optional[Iterable[PathInput]] = None,
        directory: Optional[PathInput] = None,
    ) -> List[RenamePreview]:
        """
        Show the names rules would give to files, without renaming anything.

        Args:
            rules: Rename rules (models or plain dicts), applied in order
            files: Files to rename, in numbering order
            directory: Rename the files directly inside this directory instead

        Returns:
            One preview per file, flagging conflicts and invalid names
        """
        targets = await self._rename_targets(files, directory)
        return await self.renamer.preview(targets, rules)

    async def rename_files(
        self,
        rules: Sequence[Any],
        files: Optional[Iterable[PathInput]] = None,
        directory: Optional[PathInput] = None,
        dry_run: bool = False,
    ) -> RenameResult:
        """
        Rename files by rules, recording a rollback manifest.

        Every directory touched is locked while the batch is previewed and
        executed.

        Returns:
            RenameResult; ``manifest_id`` identifies the undo record
        """
        targets = await self._rename_targets(files, directory)
        if dry_run:
            previews = await self.renamer.preview(targets, rules)
            return await self.renamer.execute(previews, dry_run=True)

        async with AsyncExitStack() as stack:
            for folder in sorted({target.path.parent for target in targets}):
                await stack.enter_async_context(self._directory_lock(folder))
            previews = await self.renamer.preview(targets, rules)
            return await self.renamer.execute(previews)

    async def undo_last_operation(self) -> UndoResult:
        return await self.rollback.undo_last()

    async def undo_operation(self, manifest_id: str) -> UndoResult:
        return await self.rollback.undo(manifest_id)

    async def list_operations(self) -> List[RollbackManifest]:
        return await self.store.list_manifests()

    async def verify_operation(self, manifest_id: str) -> VerificationResult:
        try:
            manifest = await self.store.load_manifest(manifest_id)
        except TamperDetectedError as e:
            return VerificationResult(valid=False, error=e.reason)
        return self.integrity.verify_manifest(manifest)

    async def _validate_directory(
        self, directory: PathInput, check_write: bool = False
    ) -> ValidatedPath:
        root = await self.validator.validate(
            directory, require_exists=True, check_write=check_write
        )
        if not await asyncio.to_thread(os.path.isdir, root.path):
            raise PathValidationError(LAYER_ACCESS, "path is not a directory")
        return root

    def _directory_lock(self, directory: Path) -> AdvisoryLock:
        return AdvisoryLock.for_directory(
            self.settings.rollback_dir,
            directory,
            timeout=self.settings.lock_timeout_seconds,
            stale_after=self.settings.lock_stale_seconds,
        )

    async def _rename_targets(
        self,
        files: Optional[Iterable[PathInput]],
        directory: Optional[PathInput],
    ) -> List[ValidatedPath]:
        if files:
            targets = []
            for raw in files:
                target = await self.validator.validate(
                    raw, require_exists=True, allow_symlinks=False
                )
                if not await asyncio.to_thread(os.path.isfile, target.path):
                    raise PathValidationError(
                        LAYER_ACCESS, "path is not a regular file"
                    )
                targets.append(target)
            return targets

        if directory is not None:
            root = await self._validate_directory(directory)
            scan = await self.scanner.scan(root)
            return [
                await self.validator.validate(entry.path, root.mode)
                for entry in scan.files
            ]

        raise FileOrganizerError(
            "Either files or a directory must be given", code="INVALID_INPUT"
        )
