"""Canonical encoding and digest helpers for content addressing.

Every object is addressed by ``sha256(header + payload)`` where the header
is ``"<ext> <flags> <length>\\0"``. Including the kind and flags in the
digest keeps a tree, a plain file and an executable with identical bytes
from ever sharing an address.
"""

from __future__ import annotations

import hashlib
import json
import re
from pathlib import Path
from typing import Any, BinaryIO

from linkstore.errors import InvalidNameError

HASH_LENGTH = 64
ZERO_HASH = "0" * HASH_LENGTH

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")
_CHUNK_SIZE = 64 * 1024


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def blob_flags(*, executable: bool = False, symlink: bool = False) -> str:
    """Return the header flag for a blob: ``x``, ``l`` or ``-``."""
    if symlink:
        return "l"
    return "x" if executable else "-"


def object_header(ext: str, length: int, flags: str = "-") -> bytes:
    return f"{ext} {flags} {length}\0".encode("ascii")


def object_digest(ext: str, payload: bytes, flags: str = "-") -> str:
    """Digest of ``payload`` stored as an object with extension ``ext``."""
    hasher = hashlib.sha256(object_header(ext, len(payload), flags))
    hasher.update(payload)
    return hasher.hexdigest()


def stream_digest(ext: str, stream: BinaryIO, length: int, flags: str = "-") -> str:
    """Digest of ``length`` bytes read from ``stream`` without loading them whole."""
    hasher = hashlib.sha256(object_header(ext, length, flags))
    while chunk := stream.read(_CHUNK_SIZE):
        hasher.update(chunk)
    return hasher.hexdigest()


def file_digest(ext: str, path: Path, flags: str = "-") -> str:
    path = Path(path)
    with path.open("rb") as fh:
        return stream_digest(ext, fh, path.stat().st_size, flags)


def normalize_hash(value: str) -> str:
    """Strip an optional ``sha256:`` prefix and validate the hex digest."""
    digest = value.removeprefix("sha256:").lower()
    if not _HASH_RE.match(digest):
        raise InvalidNameError(f"not a valid object hash: {value!r}")
    return digest


def is_hash(value: str) -> bool:
    return bool(_HASH_RE.match(value))
