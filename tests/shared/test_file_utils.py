"""
Tests for file utility functions.
"""

import errno
import hashlib
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from file_organizer.shared.file_utils import (
    compute_checksum,
    format_bytes,
    is_hidden,
    move_no_clobber,
    nearest_existing_ancestor,
    path_exists,
)


class TestComputeChecksum:
    """Tests for compute_checksum."""

    def test_sha256(self, tmp_path: Path) -> None:
        """Test the default algorithm."""
        path = tmp_path / "test.txt"
        path.write_bytes(b"Hello, World!")

        assert compute_checksum(path) == hashlib.sha256(b"Hello, World!").hexdigest()

    def test_md5(self, tmp_path: Path) -> None:
        """Test an alternative algorithm."""
        path = tmp_path / "test.txt"
        path.write_bytes(b"Hello, World!")

        expected = hashlib.md5(b"Hello, World!").hexdigest()
        assert compute_checksum(path, "md5") == expected

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file raises."""
        with pytest.raises(FileNotFoundError):
            compute_checksum(tmp_path / "missing.txt")


class TestFormatBytes:
    """Tests for format_bytes."""

    @pytest.mark.parametrize(
        "size,expected",
        [
            (0, "0 B"),
            (512, "512.00 B"),
            (1024, "1.00 KB"),
            (1536, "1.50 KB"),
            (1024**3, "1.00 GB"),
        ],
    )
    def test_format(self, size: int, expected: str) -> None:
        """Test unit selection."""
        assert format_bytes(size) == expected


class TestMoveNoClobber:
    """Tests for move_no_clobber."""

    def test_moves(self, tmp_path: Path) -> None:
        """Test the file ends up at the destination only."""
        source = tmp_path / "a.txt"
        source.write_text("data")
        destination = tmp_path / "b.txt"

        move_no_clobber(source, destination)

        assert not source.exists()
        assert destination.read_text() == "data"

    def test_refuses_existing_destination(self, tmp_path: Path) -> None:
        """Test an existing destination is never replaced."""
        source = tmp_path / "a.txt"
        source.write_text("new")
        destination = tmp_path / "b.txt"
        destination.write_text("old")

        with pytest.raises(FileExistsError):
            move_no_clobber(source, destination)

        assert source.read_text() == "new"
        assert destination.read_text() == "old"

    def test_copy_fallback_across_devices(self, tmp_path: Path) -> None:
        """Test the exclusive-copy path when hard links are unavailable."""
        source = tmp_path / "a.txt"
        source.write_text("data")
        destination = tmp_path / "b.txt"

        with patch(
            "file_organizer.shared.file_utils.os.link",
            side_effect=OSError(errno.EXDEV, "Invalid cross-device link"),
        ):
            move_no_clobber(source, destination)

        assert not source.exists()
        assert destination.read_text() == "data"

    def test_other_link_errors_propagate(self, tmp_path: Path) -> None:
        """Test unexpected link failures are not masked."""
        source = tmp_path / "a.txt"
        source.write_text("data")

        with patch(
            "file_organizer.shared.file_utils.os.link",
            side_effect=OSError(errno.EACCES, "Permission denied"),
        ):
            with pytest.raises(OSError):
                move_no_clobber(source, tmp_path / "b.txt")

        assert source.exists()


class TestPathHelpers:
    """Tests for small path helpers."""

    def test_is_hidden(self) -> None:
        """Test dotfiles are hidden."""
        assert is_hidden(".env")
        assert not is_hidden("env")

    def test_path_exists_sees_dangling_symlink(self, tmp_path: Path) -> None:
        """Test a dangling link still occupies its path."""
        link = tmp_path / "link"
        os.symlink(tmp_path / "nowhere", link)

        assert path_exists(link)
        assert not link.exists()

    def test_nearest_existing_ancestor(self, tmp_path: Path) -> None:
        """Test walking up to an existing directory."""
        assert nearest_existing_ancestor(tmp_path / "a" / "b" / "c") == tmp_path
        assert nearest_existing_ancestor(tmp_path) == tmp_path
