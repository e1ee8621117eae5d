"""
Tamper detection for rollback manifests.

Each manifest carries a SHA-256 digest of its actions and timestamp, and an
HMAC-SHA256 signature over its identifying fields. The signing key is derived
from attributes of the host, so a manifest copied to another machine fails
verification.
"""

import hashlib
import hmac
import logging
import os
import platform
import socket
from typing import List, Optional, Protocol

from pydantic import BaseModel

from .transaction import (
    MANIFEST_VERSION,
    RollbackAction,
    RollbackManifest,
    canonical_json,
)

logger = logging.getLogger(__name__)

SECRET_SEED = "FileOrganizer-manifest-v1"


class KeyProvider(Protocol):
    """Supplies the HMAC key used to sign manifests."""

    def get_key(self) -> bytes: ...


def _total_memory() -> int:
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    except (AttributeError, ValueError, OSError):
        return 0


def _cpu_model() -> str:
    model = platform.processor()
    if model:
        return model
    try:
        with open("/proc/cpuinfo", "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return "unknown"


class MachineKeyProvider:
    """
    Derive a signing key from host identity.

    The key combines hostname, platform, architecture, CPU model and total
    memory with a fixed seed. It is computed on first use and then held by
    this instance.
    """

    def __init__(self, seed: str = SECRET_SEED):
        self.seed = seed
        self._key: Optional[bytes] = None

    def machine_fingerprint(self) -> str:
        return "|".join(
            [
                socket.gethostname(),
                platform.system().lower(),
                platform.machine(),
                _cpu_model(),
                str(_total_memory()),
            ]
        )

    def get_key(self) -> bytes:
        if self._key is None:
            material = (self.seed + self.machine_fingerprint()).encode("utf-8")
            self._key = hashlib.sha256(material).hexdigest().encode("ascii")
            logger.debug("Derived manifest signing key from host identity")
        return self._key


class StaticKeyProvider:
    """Use a fixed key."""

    def __init__(self, key: str | bytes):
        self._key = key.encode("utf-8") if isinstance(key, str) else key

    def get_key(self) -> bytes:
        return self._key


class VerificationResult(BaseModel):
    """Outcome of verifying a manifest."""

    valid: bool
    error: Optional[str] = None


class ManifestIntegrityService:
    """Compute and verify manifest digests and signatures. Never persists."""

    def __init__(self, key_provider: KeyProvider):
        self.key_provider = key_provider

    def compute_hash(self, actions: List[RollbackAction], timestamp: int) -> str:
        payload = canonical_json(
            {"actions": [a.canonical() for a in actions], "timestamp": timestamp}
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def compute_signature(self, manifest: RollbackManifest) -> str:
        payload = canonical_json(
            {
                "id": manifest.id,
                "timestamp": manifest.timestamp,
                "description": manifest.description,
                "actions": manifest.canonical_actions(),
                "version": manifest.version,
                "hash": manifest.hash,
            }
        )
        return hmac.new(
            self.key_provider.get_key(), payload.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def stamp(self, manifest: RollbackManifest) -> RollbackManifest:
        """Return a copy of the manifest with hash and signature set."""
        stamped = manifest.model_copy(
            update={"hash": self.compute_hash(manifest.actions, manifest.timestamp)}
        )
        stamped.signature = self.compute_signature(stamped)
        return stamped

    def verify_manifest(self, manifest: RollbackManifest) -> VerificationResult:
        if manifest.version != MANIFEST_VERSION:
            return VerificationResult(
                valid=False, error="Invalid or missing manifest version"
            )

        if not manifest.hash:
            return VerificationResult(valid=False, error="Missing manifest hash")

        expected_hash = self.compute_hash(manifest.actions, manifest.timestamp)
        if not hmac.compare_digest(expected_hash, manifest.hash):
            return VerificationResult(
                valid=False,
                error="Manifest hash mismatch - possible tampering detected",
            )

        if not manifest.signature:
            return VerificationResult(valid=False, error="Missing manifest signature")

        expected_signature = self.compute_signature(manifest)
        if not hmac.compare_digest(expected_signature, manifest.signature):
            return VerificationResult(
                valid=False,
                error="Manifest signature mismatch - possible tampering detected",
            )

        return VerificationResult(valid=True)
