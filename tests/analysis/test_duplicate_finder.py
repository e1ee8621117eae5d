"""
Tests for duplicate detection, scoring and deletion.
"""

import os
from datetime import datetime
from pathlib import Path
from typing import List
from unittest.mock import patch

import pytest

from file_organizer.analysis.duplicate_finder import DuplicateFinder, score_file
from file_organizer.analysis.hashing import ContentHasher
from file_organizer.config import Settings
from file_organizer.core.errors import ManifestLockError
from file_organizer.core.types import FileEntry, RetentionStrategy
from file_organizer.organization.rollback import ManifestStore
from file_organizer.security.path_validator import PathValidator


def _entries(*paths: Path) -> List[FileEntry]:
    return [FileEntry.from_stat(p, os.stat(p)) for p in paths]


@pytest.fixture
def finder(
    validator: PathValidator, store: ManifestStore, settings: Settings
) -> DuplicateFinder:
    return DuplicateFinder(ContentHasher(), validator, store, settings.backup_dir)


class TestFindDuplicates:
    """Tests for grouping."""

    @pytest.mark.asyncio
    async def test_groups_identical_content(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test two identical files form one group; a distinct file does not."""
        a = make_file(workspace / "a.txt", "hello")
        b = make_file(workspace / "b.txt", "hello")
        c = make_file(workspace / "c.txt", "world")

        groups = await finder.find_duplicates(_entries(a, b, c))

        assert len(groups) == 1
        group = groups[0]
        assert [f.path for f in group.files] == [a, b]
        assert group.size == 5
        assert group.file_count == 2
        assert group.wasted_bytes == 5

    @pytest.mark.asyncio
    async def test_zero_byte_files_never_grouped(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test empty files are ignored."""
        a = make_file(workspace / "a.txt", "")
        b = make_file(workspace / "b.txt", "")

        assert await finder.find_duplicates(_entries(a, b)) == []

    @pytest.mark.asyncio
    async def test_same_size_different_content(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test equal sizes alone do not make duplicates."""
        a = make_file(workspace / "a.txt", "aaaa")
        b = make_file(workspace / "b.txt", "bbbb")

        assert await finder.find_duplicates(_entries(a, b)) == []

    @pytest.mark.asyncio
    async def test_unreadable_file_left_out(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test a file that vanished before hashing is skipped."""
        a = make_file(workspace / "a.txt", "same")
        b = make_file(workspace / "b.txt", "same")
        c = make_file(workspace / "c.txt", "same")
        entries = _entries(a, b, c)
        c.unlink()

        groups = await finder.find_duplicates(entries)

        assert len(groups) == 1
        assert [f.path for f in groups[0].files] == [a, b]

    @pytest.mark.asyncio
    async def test_groups_ordered_by_wasted_bytes(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test the largest reclaimable group comes first."""
        small = [make_file(workspace / f"s{i}.txt", "x") for i in range(2)]
        large = [make_file(workspace / f"l{i}.txt", "y" * 100) for i in range(2)]

        groups = await finder.find_duplicates(_entries(*small, *large))

        assert [g.size for g in groups] == [100, 1]


class TestScoring:
    """Tests for retention scoring."""

    @pytest.mark.asyncio
    async def test_best_name_keeps_plain_name(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test copy markers lose to the original name."""
        original = make_file(workspace / "report.txt", "data")
        copy = make_file(workspace / "report copy.txt", "data")
        numbered = make_file(workspace / "report (1).txt", "data")

        groups = await finder.find_with_scoring(
            _entries(original, copy, numbered), RetentionStrategy.BEST_NAME
        )

        assert groups[0].recommended_keep == original
        assert set(groups[0].recommended_delete) == {copy, numbered}

    def test_copy_marker_penalty(self, workspace: Path, make_file) -> None:
        """Test the penalty beats a shorter name."""
        marked = make_file(workspace / "a_1.txt", "data")
        plain = make_file(workspace / "longer.txt", "data")
        marked_entry, plain_entry = _entries(marked, plain)

        marked_score = score_file(marked_entry, RetentionStrategy.BEST_NAME)
        plain_score = score_file(plain_entry, RetentionStrategy.BEST_NAME)

        assert plain_score.score > marked_score.score
        assert any("Copy" in r for r in marked_score.reasons)

    @pytest.mark.asyncio
    async def test_best_location_prefers_organized_folder(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test Downloads loses to Documents."""
        downloaded = make_file(workspace / "Downloads" / "paper.pdf", "pdf")
        filed = make_file(workspace / "Documents" / "paper.pdf", "pdf")

        groups = await finder.find_with_scoring(
            _entries(downloaded, filed), RetentionStrategy.BEST_LOCATION
        )

        assert groups[0].recommended_keep == filed
        assert groups[0].recommended_delete == [downloaded]

    @pytest.mark.asyncio
    async def test_newest_and_oldest(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test modification-time strategies."""
        old = make_file(workspace / "old.txt", "same", mtime=1_000_000)
        new = make_file(workspace / "new.txt", "same", mtime=2_000_000)
        entries = _entries(old, new)

        newest = await finder.find_with_scoring(entries, "newest")
        oldest = await finder.find_with_scoring(entries, "oldest")

        assert newest[0].recommended_keep == new
        assert oldest[0].recommended_keep == old

    @pytest.mark.asyncio
    async def test_ties_keep_smallest_path(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test equal scores break on path order."""
        a = make_file(workspace / "a.txt", "same", mtime=1_000_000)
        b = make_file(workspace / "b.txt", "same", mtime=1_000_000)

        groups = await finder.find_with_scoring(_entries(b, a), "newest")

        assert groups[0].recommended_keep == a

    def test_missing_mtime_scores_zero(self) -> None:
        """Test an entry without a modification time."""
        entry = FileEntry(name="x.txt", path=Path("/data/x.txt"), size=1)
        assert score_file(entry, RetentionStrategy.NEWEST).score == 0.0

    def test_modified_timestamp_used(self) -> None:
        """Test newest score equals the timestamp."""
        when = datetime(2024, 1, 1)
        entry = FileEntry(name="x.txt", path=Path("/x.txt"), size=1, modified=when)
        assert score_file(entry, RetentionStrategy.NEWEST).score == when.timestamp()


class TestDeleteFiles:
    """Tests for reversible deletion."""

    @pytest.mark.asyncio
    async def test_delete_with_backup(
        self,
        finder: DuplicateFinder,
        store: ManifestStore,
        settings: Settings,
        workspace: Path,
        make_file,
    ) -> None:
        """Test the file moves to the backup directory and a manifest is written."""
        make_file(workspace / "a.txt", "hi")
        b = make_file(workspace / "b.txt", "hi")

        result = await finder.delete_files([str(b)])

        assert result.deleted == [str(b.resolve())]
        assert result.failed == []
        assert not b.exists()
        backups = list(settings.backup_dir.iterdir())
        assert len(backups) == 1
        assert backups[0].name.endswith("_b.txt")
        assert backups[0].read_text() == "hi"

        manifest = await store.load_manifest(result.manifest_id)
        assert manifest.description == "Deletion of 1 duplicates"
        assert manifest.actions[0].type == "delete"
        assert manifest.actions[0].backup_path == str(backups[0])

    @pytest.mark.asyncio
    async def test_delete_without_backup(
        self, finder: DuplicateFinder, settings: Settings, workspace: Path, make_file
    ) -> None:
        """Test permanent deletion records no manifest."""
        b = make_file(workspace / "b.txt", "hi")

        result = await finder.delete_files([b], create_backup=False)

        assert not b.exists()
        assert result.manifest_id is None
        assert not settings.backup_dir.exists()

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_batch(
        self, finder: DuplicateFinder, workspace: Path, tmp_path: Path, make_file
    ) -> None:
        """Test missing and unauthorized paths are reported per path."""
        good = make_file(workspace / "good.txt")
        outside = make_file(tmp_path / "outside.txt")

        result = await finder.delete_files(
            [str(workspace / "missing.txt"), str(outside), str(good)]
        )

        assert result.deleted == [str(good.resolve())]
        assert len(result.failed) == 2
        assert outside.exists()
        for failure in result.failed:
            assert str(tmp_path) not in failure.error

    @pytest.mark.asyncio
    async def test_auto_verify_protects_last_copy(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test only files with a surviving copy are deleted."""
        a = make_file(workspace / "a.txt", "dup")
        b = make_file(workspace / "b.txt", "dup")
        unique = make_file(workspace / "unique.txt", "only")

        result = await finder.delete_files([b, unique], auto_verify=True)

        assert result.deleted == [str(b.resolve())]
        assert a.exists()
        assert unique.exists()
        assert len(result.failed) == 1
        assert "last copy" in result.failed[0].error

    @pytest.mark.asyncio
    async def test_auto_verify_refuses_deleting_every_copy(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test deleting all copies at once is refused."""
        a = make_file(workspace / "a.txt", "dup")
        b = make_file(workspace / "b.txt", "dup")

        result = await finder.delete_files([a, b], auto_verify=True)

        assert result.deleted == []
        assert len(result.failed) == 2
        assert a.exists() and b.exists()

    @pytest.mark.asyncio
    async def test_symlink_refused(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test a symlink is never deleted through."""
        target = make_file(workspace / "target.txt")
        link = workspace / "link.txt"
        link.symlink_to(target)

        result = await finder.delete_files([link])

        assert result.deleted == []
        assert link.is_symlink()
        assert target.exists()

    @pytest.mark.asyncio
    async def test_permission_denied_reported(
        self, finder: DuplicateFinder, workspace: Path, make_file
    ) -> None:
        """Test a refused unlink is reported as access denied."""
        b = make_file(workspace / "b.txt", "hi")

        with patch(
            "file_organizer.analysis.duplicate_finder.os.unlink",
            side_effect=PermissionError(13, "Permission denied"),
        ):
            result = await finder.delete_files([b], create_backup=False)

        assert result.deleted == []
        assert [f.error for f in result.failed] == [
            "Permission denied deleting b.txt"
        ]
        assert b.exists()

    @pytest.mark.asyncio
    async def test_manifest_failure_reported(
        self,
        finder: DuplicateFinder,
        store: ManifestStore,
        settings: Settings,
        workspace: Path,
        make_file,
    ) -> None:
        """Test deleted files stay listed when the manifest cannot be saved."""
        b = make_file(workspace / "b.txt", "hi")

        with patch.object(
            store,
            "create_manifest",
            side_effect=ManifestLockError("Could not acquire lock within 0.5s"),
        ):
            result = await finder.delete_files([b])

        assert result.deleted == [str(b.resolve())]
        assert not b.exists()
        assert len(list(settings.backup_dir.iterdir())) == 1
        assert result.manifest_id is None
        assert result.manifest_error == (
            "Undo record not written: Could not acquire lock within 0.5s"
        )
