"""Error taxonomy for the object store, checkout engine, mapping index and builds.

Every error names the offending hash and/or path. Idempotent-write races
are never errors; everything listed here surfaces to the caller unretried.
"""

from __future__ import annotations

from pathlib import Path


class StoreError(RuntimeError):
    """Base class for all store failures.

    Parameters
    ----------
    message:
        Human-readable description naming the violated invariant.
    hash:
        The object hash involved, if any.
    path:
        The filesystem path involved, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        hash: str | None = None,
        path: Path | str | None = None,
    ) -> None:
        super().__init__(message)
        self.hash = hash
        self.path = Path(path) if path is not None else None


class NotFoundError(StoreError):
    """Raised when an object (or store directory) does not exist."""


class CorruptionError(StoreError):
    """Raised when re-hashing stored bytes disagrees with their address."""


class InvalidTreeError(StoreError):
    """Raised for malformed directory encodings (duplicate names, bad entries)."""


class ChecksumMismatchError(StoreError):
    """Raised when a checkout directory disagrees with its package hash."""


class CrossDeviceLinkError(StoreError):
    """Raised when a hard link would cross filesystems and copying is disabled."""


class PathEscapeError(StoreError):
    """Raised when relocation would place a path outside the packages root."""


class MappingConflictError(StoreError):
    """Raised when a mapping symlink exists but points somewhere else."""


class BuildFailureError(StoreError):
    """Raised when a build command exits non-zero, times out, or is cancelled."""

    def __init__(
        self,
        message: str,
        *,
        hash: str | None = None,
        path: Path | str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, hash=hash, path=path)
        self.exit_code = exit_code


class CyclicReferenceError(StoreError):
    """Raised when a closure walk finds a reference cycle."""


class InvalidTransitionError(StoreError):
    """Raised when a build run attempts an illegal state transition."""


class InvalidNameError(ValueError):
    """Raised for malformed package names, platform strings, or hashes."""
