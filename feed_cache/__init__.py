"""Offline, de-duplicated cache of Reddit listings with a rate-limited sync queue."""

__version__ = "0.1.0"
