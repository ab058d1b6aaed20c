"""Quota-bounded on-device key/value store."""

from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote

import structlog

from watchsync.core.errors import QuotaExceeded

logger = structlog.get_logger()

_SUFFIX = ".entry"


class LocalStore:
    """Stores string values as one file per key under a directory.

    The store is shared by everything running on the device and is
    last-writer-wins; there is no locking. ``set`` enforces a byte quota over
    the sum of all stored values.
    """

    def __init__(self, directory: str, quota_bytes: int = 5 * 1024 * 1024):
        """
        Initialize the store.

        Args:
            directory: Directory holding the entries (created if missing)
            quota_bytes: Maximum total size of all stored values
        """
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        # Keys may hold owner ids with arbitrary characters
        return self.directory / f"{quote(key, safe='')}{_SUFFIX}"

    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None if absent/unreadable."""
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("local_store_read_failed", key=key, error=str(e))
            return None

    def set(self, key: str, value: str) -> None:
        """Store a value.

        Raises:
            QuotaExceeded: if the store would grow beyond its quota
        """
        data = value.encode("utf-8")
        used = self.total_bytes() - self.size_of(key)
        required = used + len(data)
        if required > self.quota_bytes:
            raise QuotaExceeded(key, required, self.quota_bytes)

        path = self._path(key)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)

    def remove(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        try:
            self._path(key).unlink()
            return True
        except FileNotFoundError:
            return False

    def keys(self, prefix: str = "") -> list[str]:
        """List stored keys, optionally restricted to a prefix."""
        found = []
        for path in self.directory.glob(f"*{_SUFFIX}"):
            key = unquote(path.name[: -len(_SUFFIX)])
            if key.startswith(prefix):
                found.append(key)
        return sorted(found)

    def size_of(self, key: str) -> int:
        """Stored size of a key in bytes (0 if absent)."""
        try:
            return self._path(key).stat().st_size
        except FileNotFoundError:
            return 0

    def total_bytes(self, prefix: str = "") -> int:
        """Total stored bytes, optionally restricted to a prefix."""
        return sum(self.size_of(key) for key in self.keys(prefix))
