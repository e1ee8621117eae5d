"""
Pytest configuration and fixtures for file_organizer tests.

Every test gets its own sandbox: a work directory that is the only allowed
root, and a separate storage directory for manifests, backups and locks.
"""

import os
from pathlib import Path
from typing import Callable, Optional, Union

import pytest

from file_organizer.config import Settings
from file_organizer.core.types import SecurityMode
from file_organizer.engine import FileOrganizerEngine
from file_organizer.organization.integrity import (
    ManifestIntegrityService,
    StaticKeyProvider,
)
from file_organizer.organization.rollback import ManifestStore, RollbackService
from file_organizer.security.path_validator import PathValidator

TEST_KEY = "test-signing-key"


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Directory the engine is allowed to touch."""
    directory = tmp_path / "work"
    directory.mkdir()
    return directory


@pytest.fixture
def storage_dir(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def settings(workspace: Path, storage_dir: Path) -> Settings:
    """Sandboxed settings rooted at the workspace."""
    return Settings(
        _env_file=None,
        security_mode=SecurityMode.SANDBOXED,
        allowed_directories=[workspace],
        storage_dir=storage_dir,
        lock_timeout_seconds=0.5,
        write_retry_delay_seconds=0.01,
    )


@pytest.fixture
def key_provider() -> StaticKeyProvider:
    return StaticKeyProvider(TEST_KEY)


@pytest.fixture
def integrity(key_provider: StaticKeyProvider) -> ManifestIntegrityService:
    return ManifestIntegrityService(key_provider)


@pytest.fixture
def validator(settings: Settings) -> PathValidator:
    return PathValidator(settings)


@pytest.fixture
def store(storage_dir: Path, integrity: ManifestIntegrityService) -> ManifestStore:
    return ManifestStore(storage_dir, integrity, lock_timeout=0.5, retry_delay=0.01)


@pytest.fixture
def rollback_service(
    store: ManifestStore,
    integrity: ManifestIntegrityService,
    validator: PathValidator,
    settings: Settings,
) -> RollbackService:
    return RollbackService(store, integrity, validator, backup_dir=settings.backup_dir)


@pytest.fixture
def engine(settings: Settings, key_provider: StaticKeyProvider) -> FileOrganizerEngine:
    return FileOrganizerEngine(settings, key_provider=key_provider)


@pytest.fixture
def make_file() -> Callable[..., Path]:
    """Factory that writes a file (creating parents) and returns its path."""

    def _make(
        path: Path,
        content: Union[str, bytes] = "content",
        mtime: Optional[float] = None,
    ) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            path.write_text(content)
        else:
            path.write_bytes(content)
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    return _make
