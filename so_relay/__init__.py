"""Relay Stack Overflow activity into deduplicated, live-pushed notifications."""

__version__ = "0.1.0"

__all__ = ["__version__"]
