"""Exception hierarchy for the notes index.

Every error carries a human-readable message and, where one applies, the
NotePath it concerns, so HTTP handlers can turn it into a response body.
"""
from typing import Any


class ParaError(Exception):
    """Base class for all errors raised by the notes index."""

    def __init__(self, message: str, path: str | None = None):
        self.message = message
        self.path = path
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.message}


class IoError(ParaError):
    """Filesystem read, write or permission failure."""


class NoteNotFoundError(IoError):
    """The path is not an indexed note."""


class InvalidPathError(ParaError):
    """Path traversal, absolute path, or a path the index refuses to hold."""


class EncodingError(ParaError):
    """File content is not valid UTF-8 text."""


class WatchError(ParaError):
    """Filesystem notifications could not be established or were lost."""


class ConfigError(ParaError):
    """Startup configuration is unusable."""
