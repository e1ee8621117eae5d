"""
Rollback manifest models.

A manifest records the filesystem mutations one operation performed, in the
order they were applied, so the operation can be reversed.
"""

import json
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

MANIFEST_VERSION = "1.0"


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


class ActionType(str, Enum):
    """Kind of mutation recorded in a manifest."""

    MOVE = "move"
    COPY = "copy"
    DELETE = "delete"


class RollbackAction(BaseModel):
    """A single applied mutation."""

    type: ActionType = Field(description="Mutation kind")
    original_path: str = Field(description="Where the file was before the action")
    current_path: Optional[str] = Field(
        default=None, description="Where the action left the file (move/copy)"
    )
    backup_path: Optional[str] = Field(
        default=None, description="Backup of a deleted file"
    )
    overwritten_backup_path: Optional[str] = Field(
        default=None,
        description="Backup of a destination file the move replaced",
    )
    timestamp: int = Field(default_factory=now_ms, description="Epoch milliseconds")

    model_config = ConfigDict(use_enum_values=True)

    def canonical(self) -> Dict[str, Any]:
        """Representation used for hashing and signing."""
        return self.model_dump(mode="json", exclude_none=True)


class RollbackManifest(BaseModel):
    """Signed, hashed record of one operation's actions."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = Field(default_factory=now_ms)
    description: str = ""
    actions: List[RollbackAction] = Field(default_factory=list)
    version: str = MANIFEST_VERSION
    hash: Optional[str] = None
    signature: Optional[str] = None

    def canonical_actions(self) -> List[Dict[str, Any]]:
        return [action.canonical() for action in self.actions]

    def get_statistics(self) -> Dict[str, int]:
        """
        Get action counts by type.

        Returns:
            Dictionary with total and per-type counts
        """
        stats = {"total": len(self.actions)}
        for action_type in ActionType:
            stats[action_type.value] = 0
        for action in self.actions:
            stats[action.type] = stats.get(action.type, 0) + 1
        return stats

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2)


def canonical_json(data: Any) -> str:
    """Stable JSON encoding for digests: sorted keys, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
