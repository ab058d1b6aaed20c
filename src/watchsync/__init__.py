"""Catalog synchronization, offline cache and new-season detection engine."""

__version__ = "0.1.0"
