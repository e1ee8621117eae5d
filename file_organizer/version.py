"""Version information for file-organizer."""

import subprocess
from importlib import metadata
from pathlib import Path
from typing import Optional

DISTRIBUTION_NAME = "file-organizer"
FALLBACK_VERSION = "1.0.0"

SOURCE_ROOT = Path(__file__).resolve().parent.parent


def _installed_version() -> str:
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        # Running from a source tree that was never installed
        return FALLBACK_VERSION


__version__ = _installed_version()


def get_git_hash(repo_dir: Optional[Path] = None) -> Optional[str]:
    """Short commit hash of the checkout the package runs from, if any."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short=7", "HEAD"],
            cwd=repo_dir or SOURCE_ROOT,
            capture_output=True,
            text=True,
            check=True,
            timeout=2,
        )
    except (
        subprocess.CalledProcessError,
        subprocess.TimeoutExpired,
        FileNotFoundError,
    ):
        return None
    return result.stdout.strip() or None


def get_version_string() -> str:
    """Version for ``--version``, e.g. ``1.0.0 (git:abc1234)``."""
    git_hash = get_git_hash()
    if git_hash:
        return f"{__version__} (git:{git_hash})"
    return __version__
