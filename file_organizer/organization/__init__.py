"""
File organization: categorization, moves, renames, rollback manifests and
locking.
"""

from .categorizer import (
    CATEGORIES,
    Categorizer,
    ExtensionRule,
    PatternRule,
    validate_category_name,
)
from .integrity import (
    MachineKeyProvider,
    ManifestIntegrityService,
    StaticKeyProvider,
    VerificationResult,
)
from .locking import AdvisoryLock
from .organizer import Organizer
from .renamer import Renamer, parse_rename_rules
from .rollback import ManifestStore, RollbackService
from .transaction import ActionType, RollbackAction, RollbackManifest

__all__ = [
    "ActionType",
    "AdvisoryLock",
    "CATEGORIES",
    "Categorizer",
    "ExtensionRule",
    "MachineKeyProvider",
    "ManifestIntegrityService",
    "ManifestStore",
    "Organizer",
    "PatternRule",
    "Renamer",
    "RollbackAction",
    "RollbackManifest",
    "RollbackService",
    "StaticKeyProvider",
    "VerificationResult",
    "parse_rename_rules",
    "validate_category_name",
]
