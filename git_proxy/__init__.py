"""Guarded remote git operations for automated callers."""

__version__ = "0.1.0"
