"""Backup and restore engine for the booster club database and file store."""

__version__ = "0.1.0"
