"""Core types, errors and platform rules."""
