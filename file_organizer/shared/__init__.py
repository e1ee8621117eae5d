"""
Shared utilities for the file organizer.
"""

from .file_utils import (
    checksum_handle,
    compute_checksum,
    format_bytes,
    is_hidden,
    move_no_clobber,
    move_no_clobber_or_recase,
    nearest_existing_ancestor,
    path_exists,
)
from .logging_utils import StructuredFormatter, setup_logging

__all__ = [
    "checksum_handle",
    "compute_checksum",
    "format_bytes",
    "is_hidden",
    "move_no_clobber",
    "move_no_clobber_or_recase",
    "nearest_existing_ancestor",
    "path_exists",
    "StructuredFormatter",
    "setup_logging",
]
