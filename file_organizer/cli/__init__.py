"""
Command line interface for the file organizer.
"""

from .main import cli

__all__ = ["cli"]
