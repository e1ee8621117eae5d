"""Tests for rollback manifest models."""

import json

from file_organizer.organization.transaction import (
    MANIFEST_VERSION,
    ActionType,
    RollbackAction,
    RollbackManifest,
    canonical_json,
    now_ms,
)


class TestRollbackAction:
    """Tests for RollbackAction."""

    def test_defaults(self) -> None:
        """Test timestamp defaults to now and enums serialize as values."""
        before = now_ms()
        action = RollbackAction(
            type=ActionType.MOVE, original_path="/a", current_path="/b"
        )

        assert action.type == "move"
        assert before <= action.timestamp <= now_ms()

    def test_canonical_drops_unset_paths(self) -> None:
        """Test canonical form omits empty optional fields."""
        action = RollbackAction(
            type="delete", original_path="/a", backup_path="/bk", timestamp=5
        )

        assert action.canonical() == {
            "type": "delete",
            "original_path": "/a",
            "backup_path": "/bk",
            "timestamp": 5,
        }


class TestRollbackManifest:
    """Tests for RollbackManifest."""

    def test_new_manifest(self) -> None:
        """Test ids are unique and the version is current."""
        first, second = RollbackManifest(), RollbackManifest()

        assert first.id != second.id
        assert first.version == MANIFEST_VERSION
        assert first.hash is None and first.signature is None

    def test_statistics(self) -> None:
        """Test action counts by type."""
        manifest = RollbackManifest(
            actions=[
                RollbackAction(type="move", original_path="/a", current_path="/b"),
                RollbackAction(type="move", original_path="/c", current_path="/d"),
                RollbackAction(type="delete", original_path="/e", backup_path="/f"),
            ]
        )

        assert manifest.get_statistics() == {
            "total": 3,
            "move": 2,
            "copy": 0,
            "delete": 1,
        }

    def test_json_round_trip(self) -> None:
        """Test the persisted form loads back unchanged."""
        manifest = RollbackManifest(
            description="Organized 1 files in work",
            actions=[
                RollbackAction(type="copy", original_path="/a", current_path="/b")
            ],
        )

        loaded = RollbackManifest.model_validate(json.loads(manifest.to_json()))

        assert loaded == manifest


def test_canonical_json_is_stable() -> None:
    """Test key order and whitespace do not affect the encoding."""
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
    reordered = canonical_json({"a": [1, 2], "b": 1})
    assert reordered == canonical_json({"b": 1, "a": [1, 2]})
