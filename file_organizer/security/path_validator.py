"""
Layered path validation.

Every path a caller hands to the engine passes through PathValidator before
anything reads or writes it. The layers run in order and each fails fast:

1. Syntax: control characters, illegal characters, length
2. Normalization: percent-decoding, Unicode NFKC, ``~`` and ``$VAR``
   expansion, traversal segments, absolute resolution
3. Reserved names: platform device names such as ``CON`` or ``LPT1``
4. Symlink resolution: real path of the target or its nearest existing
   ancestor
5. Containment: the real path must sit under an authorized root
6. Access: existence and write permission, when requested

The result is a ValidatedPath, which only this module can construct.
"""

import asyncio
import errno
import logging
import os
import stat
import unicodedata
from pathlib import Path, PurePath
from typing import BinaryIO, List, Optional, Tuple, Union
from urllib.parse import unquote

from ..config import Settings
from ..config import settings as default_settings
from ..core.errors import PathValidationError
from ..core.platform import PlatformProfile
from ..core.types import SecurityMode
from ..shared.file_utils import nearest_existing_ancestor

logger = logging.getLogger(__name__)

LAYER_SYNTAX = 1
LAYER_NORMALIZATION = 2
LAYER_RESERVED_NAMES = 3
LAYER_SYMLINKS = 4
LAYER_CONTAINMENT = 5
LAYER_ACCESS = 6

# Bounds iterative percent-decoding (%252e -> %2e -> .)
MAX_DECODE_ROUNDS = 3

_ISSUER = object()


class ValidatedPath:
    """
    A canonical, absolute path that passed every validation layer.

    Instances are produced by PathValidator only; downstream components accept
    this type instead of raw strings.
    """

    __slots__ = ("_path", "_mode")

    def __init__(self, path: Path, mode: SecurityMode, _issuer: object = None):
        if _issuer is not _ISSUER:
            raise TypeError("ValidatedPath instances are created by PathValidator")
        self._path = Path(path)
        self._mode = mode

    @property
    def path(self) -> Path:
        return self._path

    @property
    def mode(self) -> SecurityMode:
        return self._mode

    @property
    def name(self) -> str:
        return self._path.name

    def __fspath__(self) -> str:
        return str(self._path)

    def __str__(self) -> str:
        return str(self._path)

    def __repr__(self) -> str:
        return f"ValidatedPath({str(self._path)!r}, mode={self._mode.value})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ValidatedPath):
            return self._path == other._path
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._path)


class PathValidator:
    """Authorize caller-supplied paths against the configured security mode."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        profile: Optional[PlatformProfile] = None,
        base_path: Optional[Path] = None,
    ):
        """
        Initialize the validator.

        Args:
            settings: Engine settings (mode, allow-list, blocked paths, limits)
            profile: Platform rules; detected from the running OS by default
            base_path: Directory relative paths resolve against, and the
                authorized root in STRICT mode. Defaults to the working
                directory at call time.
        """
        self.settings = settings or default_settings
        self.profile = profile or PlatformProfile.detect()
        self.base_path = Path(base_path) if base_path is not None else None

    async def validate(
        self,
        raw_path: Union[str, os.PathLike],
        mode: Optional[Union[SecurityMode, str]] = None,
        *,
        require_exists: bool = False,
        check_write: bool = False,
        allow_symlinks: bool = True,
    ) -> ValidatedPath:
        """
        Run every validation layer over a path.

        Args:
            raw_path: Path exactly as the caller supplied it
            mode: Security mode; defaults to the configured mode
            require_exists: Fail if the path does not exist
            check_write: Fail if the path (or where it would be created) is
                not writable
            allow_symlinks: Fail if the final component is a symlink

        Returns:
            ValidatedPath holding the real, absolute path

        Raises:
            PathValidationError: With the number of the failing layer
        """
        mode = SecurityMode(mode) if mode is not None else self.settings.security_mode

        text = self.check_syntax(raw_path)
        absolute = self.normalize(text)
        self.check_reserved_names(absolute)
        real_path = await asyncio.to_thread(
            self.resolve_real_path, absolute, allow_symlinks
        )

        if mode != SecurityMode.UNRESTRICTED:
            roots = await asyncio.to_thread(self.authorized_roots, mode)
            blocked = await asyncio.to_thread(self.blocked_roots)
            self.check_containment(real_path, roots, blocked, mode)

        if require_exists or check_write:
            await asyncio.to_thread(
                self.check_access, real_path, require_exists, check_write
            )

        return ValidatedPath(real_path, mode, _issuer=_ISSUER)

    async def is_path_allowed(
        self, raw_path: Union[str, os.PathLike], mode: Optional[SecurityMode] = None
    ) -> bool:
        """Validate without raising."""
        try:
            await self.validate(raw_path, mode)
        except PathValidationError as e:
            logger.debug(
                f"Path rejected: {e.reason}", extra={"context": {"layer": e.layer}}
            )
            return False
        return True

    async def open_validated_file(
        self, raw_path: Union[str, os.PathLike]
    ) -> Tuple[ValidatedPath, BinaryIO]:
        """
        Validate a path and open it for reading without following symlinks.

        The file is opened with ``O_NOFOLLOW`` and checked to be a regular
        file through the open descriptor, so the object read is the one that
        was validated. The caller owns the returned handle.

        Returns:
            Tuple of (ValidatedPath, binary file handle)
        """
        validated = await self.validate(
            raw_path, require_exists=True, allow_symlinks=False
        )
        handle = await asyncio.to_thread(self._open_nofollow, validated.path)
        return validated, handle

    # Layer 1
    def check_syntax(self, raw_path: Union[str, os.PathLike]) -> str:
        if isinstance(raw_path, os.PathLike):
            raw_path = os.fspath(raw_path)
        if not isinstance(raw_path, str):
            raise PathValidationError(LAYER_SYNTAX, "path must be a string")
        if not raw_path.strip():
            raise PathValidationError(LAYER_SYNTAX, "path is empty")
        if "\x00" in raw_path:
            raise PathValidationError(LAYER_SYNTAX, "path contains a null byte")
        if self.profile.has_control_characters(raw_path):
            raise PathValidationError(LAYER_SYNTAX, "path contains control characters")
        illegal = self.profile.illegal_characters(raw_path)
        if illegal:
            raise PathValidationError(
                LAYER_SYNTAX,
                f"path contains illegal characters: {illegal}",
                suggestion='Remove any of <>:"|?* from the path',
            )
        if len(raw_path) > self.settings.max_path_length:
            raise PathValidationError(
                LAYER_SYNTAX,
                f"path exceeds maximum length ({self.settings.max_path_length})",
            )
        return raw_path

    # Layer 2
    def normalize(self, text: str) -> Path:
        decoded = text
        for _ in range(MAX_DECODE_ROUNDS):
            next_value = unquote(decoded)
            if next_value == decoded:
                break
            decoded = next_value

        decoded = unicodedata.normalize("NFKC", decoded)
        expanded = os.path.expandvars(os.path.expanduser(decoded))

        if "\x00" in expanded or self.profile.has_control_characters(expanded):
            raise PathValidationError(
                LAYER_NORMALIZATION, "path contains control characters after decoding"
            )
        illegal = self.profile.illegal_characters(expanded)
        if illegal:
            raise PathValidationError(
                LAYER_NORMALIZATION,
                f"path contains illegal characters after decoding: {illegal}",
            )
        if len(expanded) > self.settings.max_path_length:
            raise PathValidationError(
                LAYER_NORMALIZATION,
                f"expanded path exceeds maximum length ({self.settings.max_path_length})",
            )

        drive, remainder = self.profile.strip_drive(expanded)
        segments = self.profile.split_segments(remainder)
        if ".." in segments:
            raise PathValidationError(
                LAYER_NORMALIZATION,
                "path contains a parent-directory traversal segment",
                suggestion="Pass a path without '..' segments",
            )

        joined = os.sep.join(segment for segment in segments if segment != ".")
        is_absolute = bool(drive) or remainder[:1] in ("/", "\\")
        if drive:
            candidate = drive + os.sep + joined
        elif is_absolute:
            candidate = os.sep + joined
        else:
            candidate = os.path.join(self._base(), joined)

        return Path(os.path.normpath(candidate))

    # Layer 3
    def check_reserved_names(self, absolute: Path) -> None:
        _, remainder = self.profile.strip_drive(str(absolute))
        for segment in self.profile.split_segments(remainder):
            if self.profile.is_reserved_name(segment):
                raise PathValidationError(
                    LAYER_RESERVED_NAMES,
                    "path contains a reserved device name",
                    suggestion="Rename the file or folder; names like CON, NUL "
                    "or COM1 are reserved on Windows",
                )

    # Layer 4
    def resolve_real_path(self, absolute: Path, allow_symlinks: bool = True) -> Path:
        if not allow_symlinks and os.path.islink(absolute):
            raise PathValidationError(
                LAYER_SYMLINKS, "symlinks are not allowed for this operation"
            )

        try:
            if os.path.lexists(absolute):
                return Path(os.path.realpath(absolute, strict=True))

            ancestor = nearest_existing_ancestor(absolute)
            if ancestor is None:
                return absolute
            real_ancestor = Path(os.path.realpath(ancestor, strict=True))
            return real_ancestor / absolute.relative_to(ancestor)
        except OSError as e:
            if e.errno == errno.ELOOP:
                raise PathValidationError(
                    LAYER_SYMLINKS, "circular symlink detected"
                ) from e
            if e.errno == errno.ENOENT:
                # Dangling symlink: judge it by where it points
                return Path(os.path.realpath(absolute))
            raise PathValidationError(
                LAYER_SYMLINKS, "path could not be resolved"
            ) from e

    def authorized_roots(self, mode: SecurityMode) -> List[Path]:
        if mode == SecurityMode.STRICT:
            return [Path(os.path.realpath(self._base()))]
        roots = []
        for allowed in self.settings.allowed_directories:
            expanded = os.path.expandvars(os.path.expanduser(str(allowed)))
            roots.append(Path(os.path.realpath(expanded)))
        return roots

    def blocked_roots(self) -> List[Path]:
        return [Path(os.path.realpath(p)) for p in self.settings.blocked_paths]

    # Layer 5
    def check_containment(
        self,
        real_path: Path,
        roots: List[Path],
        blocked: List[Path],
        mode: SecurityMode,
    ) -> None:
        if any(self.is_within(b, real_path) for b in blocked):
            raise PathValidationError(
                LAYER_CONTAINMENT,
                "path is inside a protected system location",
            )

        if any(self.is_within(root, real_path) for root in roots):
            return

        if mode == SecurityMode.STRICT:
            suggestion = (
                "STRICT mode only allows the current working directory; use "
                "SANDBOXED mode and add the directory to allowed_directories"
            )
        elif not roots:
            suggestion = "SANDBOXED mode needs at least one allowed directory"
        else:
            suggestion = "Add the directory to allowed_directories"
        raise PathValidationError(
            LAYER_CONTAINMENT,
            "path is outside the allowed directories",
            suggestion=suggestion,
        )

    def is_within(self, root: Path, path: Path) -> bool:
        """True if ``path`` equals ``root`` or is a descendant of it."""
        root_parts = PurePath(self.profile.normalize_case(str(root))).parts
        path_parts = PurePath(self.profile.normalize_case(str(path))).parts
        return path_parts[: len(root_parts)] == root_parts

    # Layer 6
    def check_access(
        self, real_path: Path, require_exists: bool, check_write: bool
    ) -> None:
        exists = os.path.exists(real_path)
        if require_exists and not exists:
            raise PathValidationError(LAYER_ACCESS, "path does not exist")
        if exists and not os.access(real_path, os.R_OK):
            raise PathValidationError(LAYER_ACCESS, "path is not readable")
        if check_write:
            target = real_path if exists else nearest_existing_ancestor(real_path)
            if target is None or not os.access(target, os.W_OK):
                raise PathValidationError(LAYER_ACCESS, "path is not writable")

    def _base(self) -> str:
        return str(self.base_path) if self.base_path is not None else os.getcwd()

    @staticmethod
    def _open_nofollow(path: Path) -> BinaryIO:
        flags = os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_BINARY", 0)
        try:
            fd = os.open(path, flags)
        except OSError as e:
            if e.errno == errno.ELOOP:
                raise PathValidationError(
                    LAYER_SYMLINKS, "symlink at final path component"
                ) from e
            raise

        try:
            if not stat.S_ISREG(os.fstat(fd).st_mode):
                raise PathValidationError(LAYER_ACCESS, "path is not a regular file")
            return os.fdopen(fd, "rb")
        except BaseException:
            os.close(fd)
            raise
