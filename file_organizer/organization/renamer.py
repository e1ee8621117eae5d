"""
Batch renaming by rules.

A preview applies the rules to every file in order and flags names that
collide with each other or with files already on disk. Executing a preview
renames each file in place (same directory) without ever replacing an
existing file, and records the batch so it can be undone.
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import (
    Annotated,
    Any,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from ..core.errors import (
    FileAccessDeniedError,
    FileOrganizerError,
    ManifestLockError,
    ManifestWriteError,
    sanitize_error_message,
)
from ..core.platform import PlatformProfile
from ..core.types import RenamedFile, RenamePreview, RenameResult
from ..security.path_validator import PathValidator, ValidatedPath
from ..shared.file_utils import move_no_clobber_or_recase, path_exists
from .categorizer import MAX_PATTERN_LENGTH
from .rollback import ManifestStore, log_unrecorded_actions
from .transaction import ActionType, RollbackAction

logger = logging.getLogger(__name__)

CaseConversion = Literal[
    "lowercase",
    "uppercase",
    "camelCase",
    "PascalCase",
    "snake_case",
    "kebab-case",
    "Title Case",
]

_WORD_START = re.compile(r"(?:^\w|[A-Z]|\b\w)")
_WORDS = re.compile(
    r"[A-Z]{2,}(?=[A-Z][a-z]+[0-9]*|\b)|[A-Z]?[a-z]+[0-9]*|[A-Z]|[0-9]+"
)
_TITLE_WORD = re.compile(r"\w\S*")
_WHITESPACE = re.compile(r"\s+")
_SEPARATORS = re.compile(r"[/\\\x00]")

_RESERVED_NAMES = PlatformProfile.windows()


def to_camel_case(text: str) -> str:
    converted = _WORD_START.sub(
        lambda m: m.group().lower() if m.start() == 0 else m.group().upper(), text
    )
    return _WHITESPACE.sub("", converted)


def to_pascal_case(text: str) -> str:
    return _WHITESPACE.sub("", _WORD_START.sub(lambda m: m.group().upper(), text))


def _join_words(text: str, separator: str) -> str:
    words = _WORDS.findall(text)
    if not words:
        return text
    return separator.join(word.lower() for word in words)


def to_title_case(text: str) -> str:
    return _TITLE_WORD.sub(lambda m: m.group()[0].upper() + m.group()[1:].lower(), text)


class _RenameRuleBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class FindReplaceRule(_RenameRuleBase):
    """Replace text in the name (the extension is left alone).

    With ``use_regex`` the replacement may reference groups as ``\\1`` or
    ``\\g<name>``.
    """

    type: Literal["find_replace"] = "find_replace"
    find: str = Field(min_length=1)
    replace: str = ""
    use_regex: bool = False
    case_sensitive: bool = False
    replace_all: bool = Field(default=True, alias="global")

    @model_validator(mode="after")
    def _check_pattern(self) -> "FindReplaceRule":
        if self.use_regex:
            _compile_find(self.find, 0)
        return self

    def apply(self, stem: str, suffix: str, index: int) -> Tuple[str, str]:
        flags = 0 if self.case_sensitive else re.IGNORECASE
        count = 0 if self.replace_all else 1
        if self.use_regex:
            pattern = _compile_find(self.find, flags)
            return pattern.sub(self.replace, stem, count=count), suffix
        pattern = re.compile(re.escape(self.find), flags)
        return pattern.sub(lambda _: self.replace, stem, count=count), suffix


def _compile_find(value: str, flags: int) -> "re.Pattern":
    if len(value) > MAX_PATTERN_LENGTH:
        raise ValueError(f"Find pattern exceeds {MAX_PATTERN_LENGTH} characters")
    try:
        return re.compile(value, flags)
    except re.error as e:
        raise ValueError(f"Find pattern does not compile: {e}") from e


class CaseRule(_RenameRuleBase):
    """Change the case of the name; lowercase and uppercase include the extension."""

    type: Literal["case"] = "case"
    conversion: CaseConversion

    def apply(self, stem: str, suffix: str, index: int) -> Tuple[str, str]:
        if self.conversion == "lowercase":
            return stem.lower(), suffix.lower()
        if self.conversion == "uppercase":
            return stem.upper(), suffix.upper()
        if self.conversion == "camelCase":
            return to_camel_case(stem), suffix
        if self.conversion == "PascalCase":
            return to_pascal_case(stem), suffix
        if self.conversion == "snake_case":
            return _join_words(stem, "_"), suffix
        if self.conversion == "kebab-case":
            return _join_words(stem, "-"), suffix
        return to_title_case(stem), suffix


class AddTextRule(_RenameRuleBase):
    type: Literal["add_text"] = "add_text"
    text: str = Field(min_length=1)
    position: Literal["start", "end"]

    def apply(self, stem: str, suffix: str, index: int) -> Tuple[str, str]:
        if self.position == "start":
            return self.text + stem, suffix
        return stem + self.text, suffix


class NumberingRule(_RenameRuleBase):
    """Number files in the order given.

    ``format`` is either ``search_index`` (the bare number) or a template in
    which ``%n`` stands for the number.
    """

    type: Literal["numbering"] = "numbering"
    start_at: int = Field(default=1, ge=0, le=99999)
    increment_by: int = Field(default=1, ge=1, le=1000)
    format: str = "search_index"
    separator: str = " "
    location: Literal["start", "end"] = "end"

    def apply(self, stem: str, suffix: str, index: int) -> Tuple[str, str]:
        number = str(self.start_at + index * self.increment_by)
        if self.format == "search_index":
            text = number
        else:
            text = self.format.replace("%n", number)
        if self.location == "start":
            return f"{text}{self.separator}{stem}", suffix
        return f"{stem}{self.separator}{text}", suffix


class TrimRule(_RenameRuleBase):
    """Strip ``chars`` (whitespace by default) from the ends of the name."""

    type: Literal["trim"] = "trim"
    chars: Optional[str] = None
    position: Literal["start", "end", "both"] = "both"

    def apply(self, stem: str, suffix: str, index: int) -> Tuple[str, str]:
        if self.position == "start":
            return stem.lstrip(self.chars), suffix
        if self.position == "end":
            return stem.rstrip(self.chars), suffix
        return stem.strip(self.chars), suffix


RenameRule = Annotated[
    Union[FindReplaceRule, CaseRule, AddTextRule, NumberingRule, TrimRule],
    Field(discriminator="type"),
]

_rules_adapter: TypeAdapter = TypeAdapter(List[RenameRule])


def parse_rename_rules(
    raw: Sequence[Union[Mapping[str, Any], BaseModel]],
) -> List[Any]:
    """
    Parse rename rules, keeping their order.

    Raises:
        ValueError: If no rules are given or one is invalid (pydantic's
            ValidationError is a ValueError)
    """
    if not raw:
        raise ValueError("At least one renaming rule is required")
    data = [
        rule.model_dump(by_alias=True) if isinstance(rule, BaseModel) else rule
        for rule in raw
    ]
    return _rules_adapter.validate_python(data)


class Renamer:
    """Preview and execute rule-based renames within each file's directory."""

    def __init__(
        self,
        validator: PathValidator,
        store: ManifestStore,
        profile: Optional[PlatformProfile] = None,
    ):
        """
        Initialize renamer.

        Args:
            validator: Checks every new name and re-checks both paths before
                each rename
            store: Receives the rollback manifest after each live run
            profile: Platform rules used to compare paths
        """
        self.validator = validator
        self.store = store
        self.profile = profile or validator.profile

    async def preview(
        self, files: Sequence[ValidatedPath], rules: Sequence[Any]
    ) -> List[RenamePreview]:
        """
        Compute new names without touching the filesystem.

        Args:
            files: Files to rename, in numbering order
            rules: Rename rules, applied in order

        Returns:
            One preview per file
        """
        parsed = parse_rename_rules(rules)
        previews: List[RenamePreview] = []
        used: Set[str] = set()

        for index, file in enumerate(files):
            if not isinstance(file, ValidatedPath):
                raise TypeError("preview() requires ValidatedPath files")
            original = file.path
            try:
                new_path = await self._new_path(file, parsed, index)
            except (re.error, FileOrganizerError) as e:
                used.add(self._key(original))
                previews.append(
                    RenamePreview(
                        original=original,
                        new=original,
                        will_change=False,
                        error=sanitize_error_message(e),
                    )
                )
                continue

            will_change = new_path != original
            key = self._key(new_path)
            conflict = will_change and key in used
            used.add(key)
            if will_change and not conflict:
                conflict = await asyncio.to_thread(
                    self._taken_on_disk, original, new_path
                )

            previews.append(
                RenamePreview(
                    original=original,
                    new=new_path,
                    will_change=will_change,
                    conflict=conflict,
                )
            )

        logger.info(
            f"Previewed {len(previews)} renames, "
            f"{sum(p.will_change for p in previews)} changing, "
            f"{sum(p.conflict for p in previews)} conflicts"
        )
        return previews

    async def execute(
        self, previews: Sequence[RenamePreview], dry_run: bool = False
    ) -> RenameResult:
        """
        Rename the files of a preview.

        Conflicting and failed entries are reported and the rest of the batch
        continues. Each rename re-validates both paths and never replaces an
        existing file.

        Args:
            previews: Output of ``preview``
            dry_run: Report what would be renamed without renaming

        Returns:
            RenameResult with renamed files, errors and the manifest id
        """
        result = RenameResult(total=len(previews), dry_run=dry_run)
        actions: List[RollbackAction] = []

        for item in previews:
            name = item.original.name
            if item.error:
                result.errors.append(f"Skipped {name}: {item.error}")
                continue
            if not item.will_change:
                result.skipped += 1
                continue
            if item.conflict:
                result.errors.append(
                    f"Skipped {name} due to conflict with {item.new.name}"
                )
                continue
            if dry_run:
                result.renamed.append(RenamedFile(original=item.original, new=item.new))
                continue

            try:
                source, destination = await self._revalidate(item)
                await asyncio.to_thread(self._rename, source, destination)
            except (OSError, FileOrganizerError) as e:
                message = f"Failed to rename {name}: {sanitize_error_message(e)}"
                logger.error(message)
                result.errors.append(message)
                continue

            actions.append(
                RollbackAction(
                    type=ActionType.MOVE,
                    original_path=str(source),
                    current_path=str(destination),
                )
            )
            result.renamed.append(RenamedFile(original=source, new=destination))

        if actions:
            try:
                manifest = await self.store.create_manifest(
                    f"Batch rename of {len(actions)} files", actions
                )
                result.manifest_id = manifest.id
            except (ManifestWriteError, ManifestLockError) as e:
                result.manifest_error = log_unrecorded_actions(actions, e)

        logger.info(
            f"Renamed {result.renamed_count} files, {result.failed_count} failed, "
            f"{result.skipped} unchanged",
            extra={
                "context": {
                    "renamed": result.renamed_count,
                    "failed": result.failed_count,
                    "skipped": result.skipped,
                    "dry_run": dry_run,
                    "manifest_id": result.manifest_id,
                }
            },
        )
        return result

    async def _new_path(
        self, file: ValidatedPath, rules: Sequence[Any], index: int
    ) -> Path:
        original = file.path
        stem, suffix = original.stem, original.suffix
        for rule in rules:
            stem, suffix = rule.apply(stem, suffix, index)

        new_name = stem + suffix
        if not new_name.strip():
            raise FileOrganizerError("New name is empty", code="INVALID_NAME")
        if _SEPARATORS.search(new_name) or new_name in (".", ".."):
            raise FileOrganizerError(
                "New name must stay in the same directory", code="INVALID_NAME"
            )
        if _RESERVED_NAMES.is_reserved_name(new_name):
            raise FileOrganizerError(
                "New name is a reserved filename", code="INVALID_NAME"
            )

        new_path = original.parent / new_name
        await self.validator.validate(new_path, file.mode)
        return new_path

    def _taken_on_disk(self, original: Path, new_path: Path) -> bool:
        if not path_exists(new_path):
            return False
        # A case-only rename on a case-insensitive filesystem finds itself
        try:
            if os.path.samefile(original, new_path):
                return False
        except OSError:
            pass
        return str(original).casefold() != str(new_path).casefold()

    async def _revalidate(self, item: RenamePreview) -> Tuple[Path, Path]:
        source = await self.validator.validate(
            item.original, require_exists=True, allow_symlinks=False
        )
        target = await self.validator.validate(item.new, check_write=True)
        return source.path, target.path.parent / item.new.name

    def _rename(self, source: Path, destination: Path) -> None:
        try:
            move_no_clobber_or_recase(source, destination)
        except FileExistsError as e:
            raise FileOrganizerError(
                "Destination file exists", code="DESTINATION_EXISTS"
            ) from e
        except PermissionError as e:
            raise FileAccessDeniedError(
                f"Permission denied renaming {source.name}",
                details={"errno": e.errno},
                suggestion="Check the permissions of the file and its folder",
            ) from e

    def _key(self, path: Path) -> str:
        return self.profile.normalize_case(os.path.normpath(str(path)))
