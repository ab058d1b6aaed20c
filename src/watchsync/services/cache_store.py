"""Owner-namespaced, size-bounded catalog snapshot cache."""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import quote

import structlog
from pydantic import ValidationError

from watchsync.core.config import CacheConfig
from watchsync.core.errors import MalformedCache, QuotaExceeded
from watchsync.models.catalog import CacheFidelity, CacheSnapshot, CatalogItem
from watchsync.services.local_store import LocalStore

logger = structlog.get_logger()

# Fields kept per tier. Reduced snapshots drop episode detail and media metadata.
_FULL_ITEM_FIELDS = {
    "id", "key", "title", "media_type", "seasons", "season_count",
    "watchlist", "rating", "genres", "providers", "poster", "status", "updated_at",
}
_REDUCED_ITEM_FIELDS = {"id", "key", "title", "media_type", "season_count", "watchlist", "poster"}
_EPISODE_FIELDS = {"number", "air_date", "watched", "watch_count"}


@dataclass
class CacheRead:
    """Result of a cache lookup; ``snapshot`` is None on a miss."""

    snapshot: Optional[CacheSnapshot] = None
    age: Optional[timedelta] = None

    @property
    def hit(self) -> bool:
        return self.snapshot is not None


@dataclass
class CacheStats:
    """Namespace usage of the on-device store."""

    entries: int
    bytes_used: int
    quota_bytes: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore:
    """Best-effort snapshot cache for warm starts and offline reads.

    Writes never raise and reads never raise: quota pressure is handled by
    purging the namespace and retrying with a smaller projection, and any
    unreadable entry is treated as a miss.
    """

    def __init__(
        self,
        config: CacheConfig,
        store: Optional[LocalStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.store = store or LocalStore(config.directory, config.quota_bytes)
        self._clock = clock

    @property
    def prefix(self) -> str:
        return f"{self.config.namespace}_"

    def key_for(self, owner_id: str) -> str:
        # Underscores are escaped so no owner key can end in the timestamp suffix
        escaped = quote(owner_id, safe="").replace("_", "%5F")
        return f"{self.config.namespace}_{escaped}"

    def timestamp_key_for(self, owner_id: str) -> str:
        return f"{self.key_for(owner_id)}_timestamp"

    def _serialize(self, owner_id: str, items: list[CatalogItem], fidelity: CacheFidelity, captured_at: datetime) -> str:
        if fidelity == CacheFidelity.FULL:
            include = {
                "items": {
                    "__all__": {
                        **{name: True for name in _FULL_ITEM_FIELDS if name != "seasons"},
                        "seasons": {"__all__": {"number": True, "episodes": {"__all__": _EPISODE_FIELDS}}},
                    }
                }
            }
        else:
            include = {"items": {"__all__": _REDUCED_ITEM_FIELDS}}

        snapshot = CacheSnapshot(
            version=self.config.version,
            owner_id=owner_id,
            captured_at=captured_at,
            fidelity=fidelity,
            items=items,
        )
        include.update({"version": True, "owner_id": True, "captured_at": True, "fidelity": True})
        return snapshot.model_dump_json(include=include, exclude_none=True)

    def _purge_namespace(self) -> int:
        removed = 0
        for key in self.store.keys(self.prefix):
            if self.store.remove(key):
                removed += 1
        return removed

    def write(self, owner_id: str, items: list[CatalogItem]) -> bool:
        """Persist a snapshot of ``items`` for ``owner_id``.

        Returns:
            True if a snapshot (full or reduced) was stored
        """
        try:
            captured_at = self._clock()
            payload = self._serialize(owner_id, items, CacheFidelity.FULL, captured_at)
            size = len(payload.encode("utf-8"))

            if size > self.config.purge_threshold_bytes:
                existing = self.store.keys(self.prefix)
                if existing:
                    removed = self._purge_namespace()
                    logger.info(
                        "cache_namespace_purged",
                        owner_id=owner_id,
                        snapshot_bytes=size,
                        removed=removed,
                    )

            try:
                self._store_snapshot(owner_id, payload, captured_at)
                logger.debug("cache_written", owner_id=owner_id, items=len(items), bytes=size, fidelity="full")
                return True
            except QuotaExceeded as e:
                logger.warning("cache_quota_exceeded", owner_id=owner_id, required=e.required, quota=e.quota)

            reduced = self._serialize(owner_id, items, CacheFidelity.REDUCED, captured_at)
            try:
                self._store_snapshot(owner_id, reduced, captured_at)
                logger.info(
                    "cache_written",
                    owner_id=owner_id,
                    items=len(items),
                    bytes=len(reduced.encode("utf-8")),
                    fidelity="reduced",
                )
                return True
            except QuotaExceeded as e:
                logger.warning("cache_write_abandoned", owner_id=owner_id, required=e.required, quota=e.quota)
                return False

        except Exception as e:
            logger.warning("cache_write_failed", owner_id=owner_id, error=str(e))
            return False

    def _store_snapshot(self, owner_id: str, payload: str, captured_at: datetime) -> None:
        # Drop the previous snapshot first so its bytes do not count twice
        self.store.remove(self.timestamp_key_for(owner_id))
        self.store.set(self.key_for(owner_id), payload)
        self.store.set(self.timestamp_key_for(owner_id), captured_at.isoformat())

    def _decode(self, owner_id: str, raw: str) -> CacheSnapshot:
        try:
            snapshot = CacheSnapshot.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            raise MalformedCache("Snapshot could not be decoded", details={"error": str(e)}) from e

        if snapshot.version != self.config.version:
            raise MalformedCache("Snapshot version mismatch", details={"version": snapshot.version})
        if snapshot.owner_id != owner_id:
            raise MalformedCache("Snapshot belongs to another identity")
        return snapshot

    def read(self, owner_id: str) -> CacheRead:
        """Return the last snapshot for ``owner_id`` and its age, or an empty result."""
        try:
            raw = self.store.get(self.key_for(owner_id))
            if raw is None:
                return CacheRead()

            snapshot = self._decode(owner_id, raw)

            captured_at = snapshot.captured_at
            stamp = self.store.get(self.timestamp_key_for(owner_id))
            if stamp:
                try:
                    captured_at = datetime.fromisoformat(stamp)
                except ValueError:
                    logger.debug("cache_timestamp_unreadable", owner_id=owner_id)
            if captured_at.tzinfo is None:
                captured_at = captured_at.replace(tzinfo=timezone.utc)

            age = max(self._clock() - captured_at, timedelta(0))
            return CacheRead(snapshot=snapshot, age=age)

        except MalformedCache as e:
            logger.warning("cache_entry_malformed", owner_id=owner_id, reason=e.message)
            return CacheRead()
        except Exception as e:
            logger.warning("cache_read_failed", owner_id=owner_id, error=str(e))
            return CacheRead()

    def is_stale(self, age: Optional[timedelta]) -> bool:
        """Whether a snapshot of this age should be flagged as stale."""
        if age is None:
            return False
        return age > timedelta(hours=self.config.stale_after_hours)

    def clear(self, owner_id: str) -> None:
        """Drop the snapshot of one identity."""
        self.store.remove(self.key_for(owner_id))
        self.store.remove(self.timestamp_key_for(owner_id))
        logger.info("cache_cleared", owner_id=owner_id)

    def clear_all(self) -> int:
        """Drop every snapshot in the namespace. Returns the number of keys removed."""
        removed = self._purge_namespace()
        logger.info("cache_namespace_cleared", removed=removed)
        return removed

    def stats(self) -> CacheStats:
        keys = self.store.keys(self.prefix)
        return CacheStats(
            entries=sum(1 for key in keys if not key.endswith("_timestamp")),
            bytes_used=sum(self.store.size_of(key) for key in keys),
            quota_bytes=self.store.quota_bytes,
        )
