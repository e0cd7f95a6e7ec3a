"""File access collaborator: bookmarks, existence checks and stat.

The engine never touches the filesystem directly. Everything goes
through a ``FileAccess`` implementation so that OS-specific bookmark
handling (security-scoped bookmarks on macOS, for instance) can be
plugged in, and tests can swap in an in-memory fake.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from typing import Protocol

from photolib.exceptions import ExternalFailure

logger = logging.getLogger(__name__)


class FileAccess(Protocol):
    """Interface the index uses to reach files on disk.

    Every method may raise ``OSError`` (or ``ExternalFailure``); the
    index treats such failures as missing / unavailable, never fatal.
    """

    def resolve(self, bookmark: bytes) -> tuple[str, bool]:
        """Resolve a bookmark to ``(path, stale)``."""

    def create_bookmark(self, path: str) -> bytes:
        """Create a bookmark that can later be resolved back to *path*."""

    def exists(self, path: str) -> bool:
        """Return True if *path* currently exists."""

    def stat(self, path: str) -> tuple[int, datetime]:
        """Return ``(size_in_bytes, created_at)`` for *path*."""

    def read_prefix(self, path: str, size: int) -> bytes:
        """Return up to *size* bytes from the start of *path*."""


def compute_quick_hash(data: bytes) -> str:
    """Short fingerprint over a file prefix (first 16 hex chars of SHA-256)."""
    return hashlib.sha256(data).hexdigest()[:16]


class LocalFileAccess:
    """Portable ``FileAccess`` backed by ``os``.

    A bookmark is a JSON blob holding the absolute path plus the
    device/inode pair seen at creation time. Resolution succeeds while
    the recorded path exists; it reports ``stale=True`` when the file at
    that path is no longer the same inode.
    """

    def resolve(self, bookmark: bytes) -> tuple[str, bool]:
        try:
            payload = json.loads(bookmark.decode("utf-8"))
            path = payload["path"]
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise ExternalFailure(f"Unreadable bookmark: {e}") from e

        st = os.stat(path)  # FileNotFoundError propagates to the caller
        stale = (st.st_dev, st.st_ino) != (payload.get("dev"), payload.get("ino"))
        return path, stale

    def create_bookmark(self, path: str) -> bytes:
        abs_path = os.path.abspath(path)
        st = os.stat(abs_path)
        payload = {"path": abs_path, "dev": st.st_dev, "ino": st.st_ino}
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def stat(self, path: str) -> tuple[int, datetime]:
        st = os.stat(path)
        # st_birthtime exists on macOS / BSD; elsewhere ctime is the best proxy
        created = getattr(st, "st_birthtime", st.st_ctime)
        return st.st_size, datetime.fromtimestamp(created, tz=timezone.utc)

    def read_prefix(self, path: str, size: int) -> bytes:
        with open(path, "rb") as f:
            return f.read(size)
