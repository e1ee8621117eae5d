"""
Platform capabilities used by path checks.

Reserved device names, illegal characters and case sensitivity differ between
operating systems. Checks consult a PlatformProfile instead of sniffing the
running OS themselves, so tests can exercise Windows rules on any host.
"""

import os
import re
import sys
from dataclasses import dataclass, field
from typing import FrozenSet, Tuple

WINDOWS_RESERVED_NAMES: FrozenSet[str] = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)

# Characters that no supported filesystem accepts in a path component
ILLEGAL_PATH_CHARACTERS = '<>:"|?*'

_CONTROL_CHARACTERS = re.compile(r"[\x00-\x1f]")
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:(?=[\\/]|$)")


@dataclass(frozen=True)
class PlatformProfile:
    """Filesystem rules for one platform."""

    name: str
    separator: str = "/"
    alternate_separators: Tuple[str, ...] = ("\\",)
    reserved_names: FrozenSet[str] = field(default=WINDOWS_RESERVED_NAMES)
    case_insensitive_paths: bool = False
    allows_drive_prefix: bool = False

    @classmethod
    def posix(cls) -> "PlatformProfile":
        # Reserved Windows names are still refused on POSIX hosts so organized
        # trees stay portable to Windows machines and synced volumes.
        return cls(name="posix")

    @classmethod
    def windows(cls) -> "PlatformProfile":
        return cls(
            name="windows",
            separator="\\",
            alternate_separators=("/",),
            case_insensitive_paths=True,
            allows_drive_prefix=True,
        )

    @classmethod
    def detect(cls) -> "PlatformProfile":
        """Build the profile for the running interpreter."""
        if sys.platform == "win32" or os.name == "nt":
            return cls.windows()
        return cls.posix()

    def strip_drive(self, raw_path: str) -> Tuple[str, str]:
        """
        Split a leading drive designator off a path.

        Returns:
            Tuple of (drive, remainder). Drive is empty when the profile does
            not support drives or none is present.
        """
        if self.allows_drive_prefix:
            match = _DRIVE_PREFIX.match(raw_path)
            if match:
                return match.group(0), raw_path[match.end() :]
        return "", raw_path

    def has_control_characters(self, value: str) -> bool:
        return bool(_CONTROL_CHARACTERS.search(value))

    def illegal_characters(self, value: str) -> str:
        """Return the illegal characters found in a path (drive prefix excluded)."""
        _, remainder = self.strip_drive(value)
        return "".join(sorted({c for c in remainder if c in ILLEGAL_PATH_CHARACTERS}))

    def split_segments(self, value: str) -> list:
        """Split a path on every separator this profile recognizes."""
        normalized = value
        for sep in self.alternate_separators:
            normalized = normalized.replace(sep, "/")
        normalized = normalized.replace(self.separator, "/")
        return [segment for segment in normalized.split("/") if segment]

    def is_reserved_name(self, segment: str) -> bool:
        """
        Check a single path segment against the reserved device names.

        Both the exact segment and its stem before the first dot are checked,
        so "CON" and "con.txt" are reserved while "CONNECT" is not.
        """
        upper = segment.upper().rstrip(" .")
        if not upper:
            return False
        stem = upper.split(".", 1)[0]
        return upper in self.reserved_names or stem in self.reserved_names

    def normalize_case(self, value: str) -> str:
        return value.casefold() if self.case_insensitive_paths else value
