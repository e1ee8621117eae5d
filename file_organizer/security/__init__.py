"""
Path security for the file organizer.
"""

from .path_validator import PathValidator, ValidatedPath

__all__ = ["PathValidator", "ValidatedPath"]
