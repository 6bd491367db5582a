"""Exceptions raised by the synchronization engine."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for synchronization failures that abort a whole operation."""


class FlatFileError(SyncError):
    """Raised when a flat file cannot be read before row processing starts."""


class MissingReferenceError(SyncError):
    """Raised inside a row when a mandatory catalog reference cannot be resolved."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        if name:
            message = f"{kind} '{name}' not found"
        else:
            message = f"{kind} is required"
        super().__init__(message)


__all__ = ["FlatFileError", "MissingReferenceError", "SyncError"]
