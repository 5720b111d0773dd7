"""
Error kinds raised by the MusicMark core.

Collaborators (the JSON API, the CLI) map these to their own responses;
the core never swallows one and carries on with guessed data.
"""

from typing import Any, Optional


class MusicMarkError(Exception):
    """Base class for every error the core raises."""


class ValidationError(MusicMarkError):
    """Malformed input at the boundary. Nothing was mutated."""

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.details = details


class NotFound(MusicMarkError):
    """Referenced user or listen does not exist."""


class DuplicateKey(MusicMarkError):
    """Username collision on creation."""


class Unauthorized(MusicMarkError):
    """Credential mismatch. Deliberately silent about which part was wrong."""

    def __init__(self, message: str = "Invalid username or password") -> None:
        super().__init__(message)


class StorageFailure(MusicMarkError):
    """I/O failure while reading or flushing the document."""


class StorageCorruption(StorageFailure):
    """The data file exists but cannot be parsed; refuse to start."""
