"""
Exception types raised by the file operations engine.

Messages are safe to hand back to a caller: they never embed the raw path that
was rejected, and most carry a remediation suggestion.
"""

import re
from typing import Any, Dict, Optional

_WINDOWS_PATH = re.compile(r"[a-zA-Z]:\\[\w\s\-\.\(\)\\$]+")
_QUOTED_UNIX_PATH = re.compile(r"(['\"])/[^'\"\n]*\1")
# Spaces are only part of a directory name, i.e. when another "/" follows
_UNIX_PATH = re.compile(
    r"(^|[\s(])/(?=[\w\-.()~])(?:[\w\-.()~]+(?: +[\w\-.()~]+)*/)*[\w\-.()~]*"
)


def sanitize_error_message(message: Any) -> str:
    """
    Remove absolute paths from an error message.

    Args:
        message: Exception or text

    Returns:
        Message with paths replaced by ``[PATH]``
    """
    text = str(message)
    text = _WINDOWS_PATH.sub("[PATH]", text)
    text = _QUOTED_UNIX_PATH.sub(r"\1[PATH]\1", text)
    return _UNIX_PATH.sub(r"\1[PATH]", text)


class FileOrganizerError(Exception):
    """Base class for engine errors."""

    code = "FILE_ORGANIZER_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        """Plain data for response formatters."""
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        if self.suggestion:
            data["suggestion"] = self.suggestion
        return data


class PathValidationError(FileOrganizerError):
    """A path failed one of the validation layers."""

    code = "PATH_VALIDATION_ERROR"

    def __init__(
        self, layer: int, reason: str, suggestion: Optional[str] = None
    ) -> None:
        super().__init__(
            f"Path validation failed at layer {layer}: {reason}",
            details={"layer": layer},
            suggestion=suggestion,
        )
        self.layer = layer
        self.reason = reason


class FileAccessDeniedError(FileOrganizerError):
    """The engine is not permitted to touch a path."""

    code = "ACCESS_DENIED"


class FileTooLargeError(FileOrganizerError):
    """A file exceeds the configured size ceiling."""

    code = "FILE_TOO_LARGE"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"File size {size} exceeds the maximum of {limit} bytes",
            details={"size": size, "limit": limit},
            suggestion="Raise max_file_size or exclude large files from the batch",
        )
        self.size = size
        self.limit = limit


class RateLimitError(FileOrganizerError):
    """Raised by the request layer; re-exported so callers catch one family."""

    code = "RATE_LIMITED"


class TamperDetectedError(FileOrganizerError):
    """A rollback manifest failed its integrity check."""

    code = "TAMPER_DETECTED"

    def __init__(self, manifest_id: str, reason: str) -> None:
        super().__init__(
            f"Manifest {manifest_id} failed verification: {reason}",
            details={"manifest_id": manifest_id},
            suggestion=(
                "The manifest was modified or created on another machine; "
                "restore the affected files manually"
            ),
        )
        self.manifest_id = manifest_id
        self.reason = reason


class ManifestNotFoundError(FileOrganizerError):
    """No manifest exists for the requested id."""

    code = "MANIFEST_NOT_FOUND"


class ManifestLockError(FileOrganizerError):
    """The manifest store lock could not be acquired."""

    code = "LOCK_TIMEOUT"


class ManifestWriteError(FileOrganizerError):
    """A manifest could not be written to durable storage."""

    code = "MANIFEST_WRITE_FAILED"
