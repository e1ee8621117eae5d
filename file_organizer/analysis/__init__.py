"""
File analysis: scanning, hashing and duplicate detection.
"""

from .duplicate_finder import DuplicateFinder, score_file
from .hashing import ContentHasher
from .scanner import FileScanner

__all__ = ["ContentHasher", "DuplicateFinder", "FileScanner", "score_file"]
