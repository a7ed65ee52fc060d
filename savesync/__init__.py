"""Incremental, content-addressed backups of save directories."""

__version__ = "0.1.0"
