"""Serve a directory of markdown notes as a live, searchable, editable website."""

__version__ = "0.1.0"
