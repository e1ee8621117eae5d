"""
Secure file organizer.

Scans, deduplicates and categorizes files on the local filesystem. Every
caller-supplied path passes a layered validator first, and every destructive
batch is recorded in a signed rollback manifest so it can be undone.
"""

from .version import __version__

__all__ = ["__version__"]
