"""
Type definitions shared by the scanner, duplicate finder and organizer.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class SecurityMode(str, Enum):
    """How far outside the working directory the engine may reach."""

    STRICT = "strict"
    SANDBOXED = "sandboxed"
    UNRESTRICTED = "unrestricted"


class ConflictStrategy(str, Enum):
    """What to do when a planned destination already exists."""

    RENAME = "rename"
    SKIP = "skip"
    OVERWRITE = "overwrite"
    OVERWRITE_IF_NEWER = "overwrite_if_newer"


class RetentionStrategy(str, Enum):
    """How to pick the copy to keep within a duplicate group."""

    NEWEST = "newest"
    OLDEST = "oldest"
    BEST_LOCATION = "best_location"
    BEST_NAME = "best_name"


class FileEntry(BaseModel):
    """Snapshot of a file taken at scan time."""

    name: str
    path: Path
    size: int
    extension: str = ""
    created: Optional[datetime] = None
    modified: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_stat(cls, path: Path, stat_result) -> "FileEntry":
        """Build an entry from an ``os.stat_result``."""
        created_ts = getattr(stat_result, "st_birthtime", stat_result.st_ctime)
        return cls(
            name=path.name,
            path=path,
            size=stat_result.st_size,
            extension=path.suffix.lower(),
            created=datetime.fromtimestamp(created_ts),
            modified=datetime.fromtimestamp(stat_result.st_mtime),
        )


class ScanError(BaseModel):
    """A path the scanner could not read."""

    path: str
    error: str


class ScanResult(BaseModel):
    """Files found under a validated root."""

    root: Path
    files: List[FileEntry] = Field(default_factory=list)
    errors: List[ScanError] = Field(default_factory=list)
    limit_reached: bool = False

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)


class ScoredFile(BaseModel):
    """A duplicate candidate with its retention score."""

    path: Path
    score: float
    reasons: List[str] = Field(default_factory=list)


class DuplicateGroup(BaseModel):
    """Files that share identical size and content digest."""

    digest: str
    size: int
    files: List[FileEntry]
    scored_files: List[ScoredFile] = Field(default_factory=list)
    recommended_keep: Optional[Path] = None
    recommended_delete: List[Path] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def file_count(self) -> int:
        return len(self.files)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def wasted_bytes(self) -> int:
        """Bytes reclaimed by keeping only one copy."""
        return self.size * max(len(self.files) - 1, 0)


class FailedPath(BaseModel):
    """A path that could not be processed in a batch."""

    path: str
    error: str


class DeletionResult(BaseModel):
    """Outcome of a duplicate deletion batch."""

    deleted: List[str] = Field(default_factory=list)
    failed: List[FailedPath] = Field(default_factory=list)
    manifest_id: Optional[str] = None
    # Set when files were removed but the undo record could not be written
    manifest_error: Optional[str] = None


class CategoryStats(BaseModel):
    """File count and total size for one category."""

    count: int = 0
    total_size: int = 0


class MoveIntent(BaseModel):
    """One planned move from a source to its category folder."""

    source: Path
    destination: Path
    category: str
    has_conflict: bool = False
    resolution: ConflictStrategy = ConflictStrategy.RENAME


class SkippedFile(BaseModel):
    """A file left where it is, with the reason."""

    path: Path
    reason: str


class PlanConflict(BaseModel):
    """A destination collision found while planning."""

    file: Path
    destination: Path
    resolution: ConflictStrategy


class OrganizationPlan(BaseModel):
    """Moves that organizing a directory would perform."""

    moves: List[MoveIntent] = Field(default_factory=list)
    conflicts: List[PlanConflict] = Field(default_factory=list)
    skipped: List[SkippedFile] = Field(default_factory=list)
    category_counts: Dict[str, int] = Field(default_factory=dict)
    estimated_duration: float = 0.0
    warnings: List[str] = Field(default_factory=list)
    aborted: bool = False


class OrganizeAction(BaseModel):
    """A move that was performed (or would be, in a dry run)."""

    file: str
    source: Path
    destination: Path
    category: str


class OrganizeResult(BaseModel):
    """Result of an organize call."""

    statistics: Dict[str, int] = Field(default_factory=dict)
    actions: List[OrganizeAction] = Field(default_factory=list)
    skipped: List[SkippedFile] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    dry_run: bool = False
    aborted: bool = False
    manifest_id: Optional[str] = None
    manifest_error: Optional[str] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_count(self) -> int:
        return len(self.actions)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def error_count(self) -> int:
        return len(self.errors)


class UndoResult(BaseModel):
    """Result of replaying a manifest in reverse."""

    manifest_id: str
    restored: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class RenamePreview(BaseModel):
    """The name a file would get from a set of rename rules."""

    original: Path
    new: Path
    will_change: bool
    conflict: bool = False
    error: Optional[str] = None


class RenamedFile(BaseModel):
    original: Path
    new: Path


class RenameResult(BaseModel):
    """Outcome of executing a rename preview."""

    total: int = 0
    renamed: List[RenamedFile] = Field(default_factory=list)
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    dry_run: bool = False
    manifest_id: Optional[str] = None
    manifest_error: Optional[str] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def renamed_count(self) -> int:
        return len(self.renamed)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failed_count(self) -> int:
        return len(self.errors)
