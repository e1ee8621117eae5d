"""Tests for logging configuration."""

import json
import logging
import sys

import pytest
from rich.logging import RichHandler

from file_organizer.shared.logging_utils import StructuredFormatter, setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestStructuredFormatter:
    """Tests for StructuredFormatter."""

    def test_format_with_context(self) -> None:
        """Test the record becomes a JSON object with its context."""
        record = logging.LogRecord(
            "file_organizer.engine",
            logging.INFO,
            __file__,
            1,
            "Moved %d files",
            (3,),
            None,
        )
        record.context = {"manifest_id": "abc"}

        data = json.loads(StructuredFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["logger"] == "file_organizer.engine"
        assert data["message"] == "Moved 3 files"
        assert data["context"] == {"manifest_id": "abc"}
        assert "timestamp" in data

    def test_format_without_context(self) -> None:
        """Test records logged without extra fields."""
        record = logging.LogRecord("x", logging.WARNING, __file__, 1, "hi", (), None)

        data = json.loads(StructuredFormatter().format(record))

        assert data["context"] == {}

    def test_exception_included(self) -> None:
        """Test exception text is captured."""
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        data = json.loads(StructuredFormatter().format(record))

        assert "ValueError: boom" in data["exception"]


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.mark.parametrize(
        "kwargs,level",
        [
            ({}, logging.INFO),
            ({"verbose": True}, logging.DEBUG),
            ({"quiet": True}, logging.WARNING),
            ({"verbose": True, "quiet": True}, logging.WARNING),
        ],
    )
    def test_levels(self, kwargs: dict, level: int) -> None:
        """Test verbosity flags."""
        setup_logging(**kwargs)
        assert logging.getLogger().level == level

    def test_rich_handler_by_default(self) -> None:
        """Test human-readable output uses rich."""
        setup_logging()
        assert isinstance(logging.getLogger().handlers[0], RichHandler)

    def test_json_format(self) -> None:
        """Test structured output."""
        setup_logging(json_format=True)
        handler = logging.getLogger().handlers[0]
        assert isinstance(handler.formatter, StructuredFormatter)
