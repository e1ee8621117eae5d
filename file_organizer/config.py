"""Engine configuration."""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.types import ConflictStrategy, SecurityMode

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR_NAME = ".file-organizer-rollbacks"

# Directory names never descended into by the scanner
SKIP_DIRECTORIES = ["node_modules", ".git", "__pycache__", ".venv"]


def _default_blocked_paths() -> List[str]:
    if sys.platform == "win32":
        return [
            "C:\\Windows",
            "C:\\Program Files",
            "C:\\Program Files (x86)",
            "C:\\ProgramData",
        ]
    if sys.platform == "darwin":
        return ["/System", "/Library", "/Applications", "/usr", "/bin", "/sbin"]
    return ["/etc", "/usr", "/bin", "/sbin", "/sys", "/proc", "/boot", "/dev"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Path access control
    security_mode: SecurityMode = SecurityMode.STRICT
    allowed_directories: List[Path] = Field(default_factory=list)
    blocked_paths: List[Path] = Field(default_factory=_default_blocked_paths)
    max_path_length: int = 4096

    # Resource ceilings
    max_scan_depth: int = 10
    max_files_per_operation: int = 10000
    max_file_size: int = 100 * 1024 * 1024

    # Hashing
    hash_batch_size: int = 8
    hash_chunk_size: int = 64 * 1024

    # Rollback storage
    storage_dir: Optional[Path] = None
    backup_dir_name: str = "backups"
    lock_timeout_seconds: float = 5.0
    # Must outlast the longest organize or delete batch
    lock_stale_seconds: float = 300.0
    write_retry_delay_seconds: float = 1.0

    default_conflict_strategy: ConflictStrategy = ConflictStrategy.RENAME
    custom_rules: List[Dict[str, Any]] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="FILE_ORGANIZER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("hash_batch_size", "max_scan_depth", "max_files_per_operation")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def rollback_dir(self) -> Path:
        """Directory holding manifests, backups and lock markers."""
        if self.storage_dir is not None:
            return Path(self.storage_dir).expanduser()
        return Path.cwd() / DEFAULT_STORAGE_DIR_NAME

    @property
    def backup_dir(self) -> Path:
        return self.rollback_dir / self.backup_dir_name


def load_settings(config_file: Optional[Path] = None, **overrides: Any) -> Settings:
    """
    Build settings from the environment, a JSON user config file and overrides.

    The user config file uses the camelCase keys of the desktop configuration
    (``customAllowedDirectories``, ``conflictStrategy``, ``rules`` and a
    ``settings`` block with ``maxScanDepth``).

    Args:
        config_file: Optional path to a JSON config file
        **overrides: Explicit field values, applied last

    Returns:
        Settings instance
    """
    values: Dict[str, Any] = {}

    if config_file is not None:
        config_path = Path(config_file).expanduser()
        with open(config_path, "r", encoding="utf-8") as f:
            user_config = json.load(f)

        allowed = user_config.get("customAllowedDirectories") or []
        if allowed:
            values["allowed_directories"] = [Path(p) for p in allowed]
            values["security_mode"] = SecurityMode.SANDBOXED
        if user_config.get("conflictStrategy"):
            values["default_conflict_strategy"] = user_config["conflictStrategy"]
        if user_config.get("rules"):
            values["custom_rules"] = user_config["rules"]

        user_settings = user_config.get("settings") or {}
        if "maxScanDepth" in user_settings:
            values["max_scan_depth"] = user_settings["maxScanDepth"]
        if "maxFilesPerOperation" in user_settings:
            values["max_files_per_operation"] = user_settings["maxFilesPerOperation"]

        logger.debug(f"Loaded user config from {config_path}")

    values.update(overrides)
    return Settings(**values)


# Global settings instance
settings = Settings()
