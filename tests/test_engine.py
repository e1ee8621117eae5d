"""
End-to-end tests for the engine: each operation from raw paths to disk.
"""

import json
import os
from pathlib import Path

import pytest

from file_organizer.config import Settings
from file_organizer.core.errors import (
    FileOrganizerError,
    ManifestLockError,
    ManifestNotFoundError,
    PathValidationError,
    TamperDetectedError,
)
from file_organizer.engine import FileOrganizerEngine
from file_organizer.security.path_validator import LAYER_ACCESS, LAYER_CONTAINMENT


def _snapshot(directory: Path) -> dict:
    return {
        str(p.relative_to(directory)): (p.stat().st_size, p.stat().st_mtime_ns)
        for p in sorted(directory.rglob("*"))
        if p.is_file()
    }


class TestDuplicateWorkflow:
    """Find, delete and restore duplicates."""

    @pytest.mark.asyncio
    async def test_find_delete_undo(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test the a/b/c scenario end to end."""
        make_file(workspace / "a.txt", "hi")
        make_file(workspace / "b.txt", "hi")
        make_file(workspace / "c.txt", "bye")

        groups = await engine.find_duplicates(str(workspace), strategy="best_name")

        assert len(groups) == 1
        names = sorted(f.name for f in groups[0].files)
        assert names == ["a.txt", "b.txt"]
        assert groups[0].recommended_keep.name == "a.txt"
        assert groups[0].wasted_bytes == 2

        deleted = await engine.delete_duplicates([str(workspace / "b.txt")])

        assert not (workspace / "b.txt").exists()
        assert deleted.manifest_id

        operations = await engine.list_operations()
        assert [m.id for m in operations] == [deleted.manifest_id]
        assert (await engine.verify_operation(deleted.manifest_id)).valid

        undo = await engine.undo_last_operation()

        assert undo.restored == 1
        assert (workspace / "b.txt").read_text() == "hi"
        assert await engine.list_operations() == []

    @pytest.mark.asyncio
    async def test_tampered_manifest_refused(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test one changed byte makes undo refuse without touching files."""
        make_file(workspace / "a.txt", "hi")
        make_file(workspace / "b.txt", "hi")
        deleted = await engine.delete_duplicates([workspace / "b.txt"])

        path = engine.store.manifest_path(deleted.manifest_id)
        data = json.loads(path.read_text())
        data["actions"][0]["timestamp"] += 1
        path.write_text(json.dumps(data, indent=2))
        backups = list(engine.settings.backup_dir.iterdir())

        with pytest.raises(TamperDetectedError):
            await engine.undo_operation(deleted.manifest_id)

        assert not (workspace / "b.txt").exists()
        assert list(engine.settings.backup_dir.iterdir()) == backups
        result = await engine.verify_operation(deleted.manifest_id)
        assert not result.valid
        assert "hash mismatch" in result.error

    @pytest.mark.asyncio
    async def test_verify_unparsable(
        self, engine: FileOrganizerEngine, settings: Settings
    ) -> None:
        """Test verification reports a corrupt manifest as invalid."""
        manifest_id = "33333333-3333-3333-3333-333333333333"
        settings.rollback_dir.mkdir(parents=True)
        (settings.rollback_dir / f"{manifest_id}.json").write_text("garbage")

        result = await engine.verify_operation(manifest_id)

        assert not result.valid

    @pytest.mark.asyncio
    async def test_nothing_to_undo(self, engine: FileOrganizerEngine) -> None:
        """Test undo with an empty history."""
        with pytest.raises(ManifestNotFoundError):
            await engine.undo_last_operation()


class TestOrganizeWorkflow:
    """Organize a directory and put it back."""

    @pytest.mark.asyncio
    async def test_dry_run_leaves_disk_untouched(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test sizes and mtimes are identical after a dry run."""
        make_file(workspace / "photo.jpg", "jpg")
        make_file(workspace / "notes.txt", "txt")
        make_file(workspace / "Documents" / "notes.txt", "existing")
        before = _snapshot(workspace)

        result = await engine.organize_directory(str(workspace), dry_run=True)

        assert result.dry_run
        assert result.statistics == {"Images": 1, "Documents": 1}
        assert _snapshot(workspace) == before
        assert not engine.settings.rollback_dir.exists()

    @pytest.mark.asyncio
    async def test_organize_and_undo(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test a live run followed by undo restores the original layout."""
        make_file(workspace / "photo.jpg", "jpg")
        make_file(workspace / "song.mp3", "mp3")
        make_file(workspace / "sub" / "nested.txt", "nested")
        before = _snapshot(workspace)

        result = await engine.organize_directory(workspace)

        assert result.statistics == {"Images": 1, "Audio": 1}
        assert (workspace / "Images" / "photo.jpg").exists()
        assert (workspace / "sub" / "nested.txt").exists()

        undo = await engine.undo_operation(result.manifest_id)

        assert undo.restored == 2
        assert {k: v[0] for k, v in _snapshot(workspace).items()} == {
            k: v[0] for k, v in before.items()
        }

    @pytest.mark.asyncio
    async def test_preview(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test the plan lists every move with its category."""
        make_file(workspace / "a.pdf")
        make_file(workspace / "b.zip")

        plan = await engine.preview_organization(workspace)

        assert sorted(m.category for m in plan.moves) == ["Archives", "Documents"]
        assert (workspace / "a.pdf").exists()

    @pytest.mark.asyncio
    async def test_directory_locked(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test a concurrent holder of the directory lock blocks organize."""
        make_file(workspace / "photo.jpg")
        lock = engine._directory_lock(workspace.resolve())
        lock.lock_path.parent.mkdir(parents=True)
        # Future stamp so the marker never looks stale
        lock.lock_path.write_text(str(10**15))

        with pytest.raises(ManifestLockError):
            await engine.organize_directory(workspace)

        assert (workspace / "photo.jpg").exists()

    @pytest.mark.asyncio
    async def test_symlinked_category_folder_refused(
        self, engine: FileOrganizerEngine, workspace: Path, tmp_path: Path, make_file
    ) -> None:
        """Test nothing is moved through a category folder that links outside."""
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, workspace / "Documents")
        make_file(workspace / "notes.txt", "txt")

        result = await engine.organize_directory(workspace)

        assert result.success_count == 0
        assert [s.path.name for s in result.skipped] == ["notes.txt"]
        assert (workspace / "notes.txt").read_text() == "txt"
        assert list(outside.iterdir()) == []


class TestRenameWorkflow:
    """Rename files by rules and put the names back."""

    @pytest.mark.asyncio
    async def test_rename_directory_and_undo(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test files in a directory are renamed in name order and restored."""
        make_file(workspace / "b.jpg", "b")
        make_file(workspace / "a.jpg", "a")
        rules = [{"type": "numbering", "format": "(%n)"}]

        result = await engine.rename_files(rules, directory=workspace)

        assert result.renamed_count == 2
        assert (workspace / "a (1).jpg").read_text() == "a"
        assert (workspace / "b (2).jpg").read_text() == "b"

        undo = await engine.undo_last_operation()

        assert undo.restored == 2
        assert sorted(p.name for p in workspace.iterdir()) == ["a.jpg", "b.jpg"]

    @pytest.mark.asyncio
    async def test_preview_rename_files(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test explicit files are previewed without being renamed."""
        notes = make_file(workspace / "My Notes.txt")

        previews = await engine.preview_rename(
            [{"type": "case", "conversion": "snake_case"}], files=[str(notes)]
        )

        assert [p.new.name for p in previews] == ["my_notes.txt"]
        assert notes.exists()

    @pytest.mark.asyncio
    async def test_rename_dry_run(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test a dry run leaves names and history untouched."""
        notes = make_file(workspace / "notes.txt")

        result = await engine.rename_files(
            [{"type": "add_text", "text": "old_", "position": "start"}],
            files=[notes],
            dry_run=True,
        )

        assert [r.new.name for r in result.renamed] == ["old_notes.txt"]
        assert notes.exists()
        assert await engine.list_operations() == []

    @pytest.mark.asyncio
    async def test_rename_outside_root_refused(
        self, engine: FileOrganizerEngine, tmp_path: Path, make_file
    ) -> None:
        """Test files outside the allowed roots are refused before renaming."""
        outside = make_file(tmp_path / "outside.txt")

        with pytest.raises(PathValidationError) as exc_info:
            await engine.rename_files([{"type": "trim"}], files=[outside])

        assert exc_info.value.layer == LAYER_CONTAINMENT
        assert outside.exists()

    @pytest.mark.asyncio
    async def test_rename_needs_targets(self, engine: FileOrganizerEngine) -> None:
        """Test either files or a directory must be given."""
        with pytest.raises(FileOrganizerError) as exc_info:
            await engine.preview_rename([{"type": "trim"}])

        assert exc_info.value.code == "INVALID_INPUT"


class TestValidationAtTheBoundary:
    """Engine operations reject bad input before touching disk."""

    @pytest.mark.asyncio
    async def test_outside_root(
        self, engine: FileOrganizerEngine, tmp_path: Path
    ) -> None:
        """Test directories outside the allow-list."""
        with pytest.raises(PathValidationError) as exc_info:
            await engine.scan_directory(tmp_path)
        assert exc_info.value.layer == LAYER_CONTAINMENT

    @pytest.mark.asyncio
    async def test_file_is_not_a_directory(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test organize on a file."""
        target = make_file(workspace / "a.txt")
        with pytest.raises(PathValidationError) as exc_info:
            await engine.organize_directory(target)
        assert exc_info.value.layer == LAYER_ACCESS

    @pytest.mark.asyncio
    async def test_missing_directory(
        self, engine: FileOrganizerEngine, workspace: Path
    ) -> None:
        """Test scanning a directory that does not exist."""
        with pytest.raises(PathValidationError) as exc_info:
            await engine.scan_directory(workspace / "missing")
        assert exc_info.value.layer == LAYER_ACCESS

    @pytest.mark.asyncio
    async def test_validate_path(
        self, engine: FileOrganizerEngine, workspace: Path
    ) -> None:
        """Test validation on its own."""
        validated = await engine.validate_path(str(workspace / "x.txt"))
        assert os.fspath(validated) == str(workspace.resolve() / "x.txt")

    @pytest.mark.asyncio
    async def test_categorize_directory(
        self, engine: FileOrganizerEngine, workspace: Path, make_file
    ) -> None:
        """Test category statistics for a directory."""
        make_file(workspace / "a.jpg", "12")
        make_file(workspace / "b.jpg", "345")

        stats = await engine.categorize_directory(workspace)

        assert stats["Images"].count == 2
        assert stats["Images"].total_size == 5
