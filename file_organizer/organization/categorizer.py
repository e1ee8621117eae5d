"""
File categorization by extension and custom rules.
"""

import logging
import re
from pathlib import Path
from typing import (
    Annotated,
    Any,
    Dict,
    Iterable,
    List,
    Literal,
    Mapping,
    Sequence,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from ..core.platform import PlatformProfile
from ..core.types import CategoryStats, FileEntry

logger = logging.getLogger(__name__)

FALLBACK_CATEGORY = "Others"
MAX_PATTERN_LENGTH = 50

# Checked in order; the first table containing the extension wins
CATEGORIES: Dict[str, List[str]] = {
    "Executables": [".exe", ".msi", ".cmd", ".com", ".app"],
    "Videos": [".mp4", ".avi", ".mkv", ".mov", ".wmv", ".flv", ".webm", ".m4v"],
    "Documents": [".pdf", ".doc", ".docx", ".txt", ".rtf", ".odt", ".md", ".tex"],
    "Presentations": [".ppt", ".pptx", ".odp", ".key"],
    "Spreadsheets": [".xls", ".xlsx", ".csv", ".ods"],
    "Images": [
        ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".svg", ".ico", ".webp", ".tiff",
        ".heic",
    ],
    "Audio": [".mp3", ".flac", ".aac", ".ogg", ".wma", ".m4a", ".wav"],
    "Archives": [".zip", ".rar", ".7z", ".tar", ".gz", ".bz2", ".xz"],
    "Code": [
        ".py", ".js", ".ts", ".java", ".cpp", ".c", ".h", ".html", ".css", ".php",
        ".rb", ".go", ".rs", ".json",
    ],
    "Installers": [".dmg", ".pkg", ".deb", ".rpm", ".apk"],
    "Ebooks": [".epub", ".mobi", ".azw", ".azw3"],
    "Fonts": [".ttf", ".otf", ".woff", ".woff2"],
    "Logs": [".log"],
    "Scripts": [".sh", ".bat", ".ps1"],
    FALLBACK_CATEGORY: [],
}

_HTML_OR_SCRIPT = re.compile(r"<[^>]*>|javascript:", re.IGNORECASE)
_SHELL_CHARACTERS = re.compile(r"[$`|&;]")
_PATH_CHARACTERS = re.compile(r"[/\\:]")
_CONTROL_CHARACTERS = re.compile(r"[\x00-\x1f\x7f]")

_PROFILE = PlatformProfile.windows()


def validate_category_name(name: str) -> str:
    """
    Check that a category name is safe to use as a folder name.

    Raises:
        ValueError: If the name is empty or contains HTML/JS, shell
            metacharacters, path separators, control characters, or is a
            reserved device name
    """
    if not name or not name.strip():
        raise ValueError("Category name is empty")
    if _HTML_OR_SCRIPT.search(name):
        raise ValueError("Category name contains HTML/JS patterns")
    if _SHELL_CHARACTERS.search(name):
        raise ValueError("Category name contains shell injection characters")
    if _PATH_CHARACTERS.search(name):
        raise ValueError("Category name contains path separators")
    if _CONTROL_CHARACTERS.search(name):
        raise ValueError("Category name contains control characters")
    if set(name.strip()) == {"."}:
        raise ValueError("Category name cannot be a relative directory reference")
    if _PROFILE.is_reserved_name(name):
        raise ValueError("Category name is a reserved Windows filename")
    return name


class _RuleBase(BaseModel):
    category: str
    priority: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("category")
    @classmethod
    def _check_category(cls, value: str) -> str:
        return validate_category_name(value)


class ExtensionRule(_RuleBase):
    """Assign files with any of the listed extensions to a category."""

    kind: Literal["extension"] = "extension"
    extensions: List[str] = Field(min_length=1)

    @field_validator("extensions")
    @classmethod
    def _normalize_extensions(cls, value: List[str]) -> List[str]:
        normalized = []
        for ext in value:
            ext = ext.strip().lower()
            if not ext:
                raise ValueError("Extension is empty")
            normalized.append(ext if ext.startswith(".") else f".{ext}")
        return normalized

    def matches(self, name: str) -> bool:
        return Path(name).suffix.lower() in self.extensions


class PatternRule(_RuleBase):
    """Assign files whose name matches a regular expression to a category."""

    kind: Literal["pattern"] = "pattern"
    filename_pattern: str = Field(alias="filenamePattern")

    @field_validator("filename_pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        if len(value) > MAX_PATTERN_LENGTH:
            raise ValueError(
                f"Filename pattern exceeds {MAX_PATTERN_LENGTH} characters"
            )
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"Filename pattern does not compile: {e}") from e
        return value

    def matches(self, name: str) -> bool:
        return re.search(self.filename_pattern, name, re.IGNORECASE) is not None


CustomRule = Annotated[Union[ExtensionRule, PatternRule], Field(discriminator="kind")]

_rule_adapter: TypeAdapter = TypeAdapter(CustomRule)


def parse_rule(
    raw: Union[Mapping[str, Any], ExtensionRule, PatternRule],
) -> Union[ExtensionRule, PatternRule]:
    """
    Parse one rule.

    Rules without a ``kind`` are read as extension rules when they list
    extensions and as pattern rules otherwise.

    Raises:
        ValidationError: If the rule is invalid
    """
    if isinstance(raw, (ExtensionRule, PatternRule)):
        return raw
    data = dict(raw)
    if "kind" not in data:
        data["kind"] = "extension" if data.get("extensions") else "pattern"
    return _rule_adapter.validate_python(data)


class Categorizer:
    """Map file names to category folders."""

    def __init__(self, rules: Sequence[Any] = ()):
        self.rules: List[Union[ExtensionRule, PatternRule]] = []
        self._extension_map = {
            ext: category
            for category, extensions in reversed(list(CATEGORIES.items()))
            for ext in extensions
        }
        if rules:
            self.set_custom_rules(rules)

    def set_custom_rules(self, rules: Iterable[Any]) -> int:
        """
        Replace the custom rules.

        Invalid rules are logged and dropped.

        Returns:
            Number of rules accepted
        """
        valid: List[Union[ExtensionRule, PatternRule]] = []
        for raw in rules:
            try:
                valid.append(parse_rule(raw))
            except (TypeError, ValueError) as e:
                category = raw.get("category") if isinstance(raw, Mapping) else None
                reason = e.errors()[0]["msg"] if isinstance(e, ValidationError) else e
                logger.error(
                    f"Skipping invalid rule for category '{category}': {reason}"
                )

        # Stable sort keeps declaration order among equal priorities
        self.rules = sorted(valid, key=lambda r: r.priority, reverse=True)
        logger.debug(f"Loaded {len(self.rules)} custom rules")
        return len(self.rules)

    def get_category(self, name: str) -> str:
        for rule in self.rules:
            if rule.matches(name):
                return rule.category
        return self._extension_map.get(Path(name).suffix.lower(), FALLBACK_CATEGORY)

    def categorize(self, files: Iterable[FileEntry]) -> Dict[str, CategoryStats]:
        """Count files and bytes per category."""
        stats: Dict[str, CategoryStats] = {}
        for entry in files:
            category = self.get_category(entry.name)
            bucket = stats.setdefault(category, CategoryStats())
            bucket.count += 1
            bucket.total_size += entry.size
        return stats
