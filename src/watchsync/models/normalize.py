"""Normalization of remote catalog payloads.

The remote store has accumulated several spellings for the same fields over
time (``genre.genres`` vs ``genres``, ``poster.poster`` vs ``poster_path``,
seasons stored as lists or as index-keyed objects, and so on). Everything is
converted to the canonical models here so that no consumer has to branch on
wire variants.
"""

from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from watchsync.core.errors import MalformedPayload
from watchsync.models.catalog import (
    CatalogItem,
    Episode,
    MediaType,
    PushEvent,
    Season,
    SeasonBaseline,
)

logger = structlog.get_logger()

# Epoch values above this are milliseconds
_EPOCH_MS_CUTOFF = 10_000_000_000


def _first(raw: dict, *names: str) -> Any:
    """Return the first present, non-None field among ``names``."""
    for name in names:
        value = raw.get(name)
        if value is not None:
            return value
    return None


def _as_list(value: Any) -> list:
    """Firebase-style containers arrive as lists or index-keyed dicts."""
    if value is None:
        return []
    if isinstance(value, list):
        return [v for v in value if v is not None]
    if isinstance(value, dict):
        def order(key: str) -> tuple[int, str]:
            return (int(key), "") if str(key).isdigit() else (1 << 30, str(key))

        return [value[k] for k in sorted(value, key=order) if value[k] is not None]
    return []


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch seconds, epoch milliseconds or ISO-8601 strings."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_CUTOFF else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _names(value: Any, *keys: str) -> list[str]:
    """Flatten provider/genre lists of strings or dicts into names."""
    names = []
    for entry in _as_list(value):
        if isinstance(entry, str):
            name = entry
        elif isinstance(entry, dict):
            name = _first(entry, *keys)
        else:
            name = None
        if name and str(name) not in names:
            names.append(str(name))
    return names


def normalize_episode(raw: Any, position: int) -> Episode:
    """Convert one wire episode; ``position`` is its zero-based index."""
    if not isinstance(raw, dict):
        raise MalformedPayload(f"Episode at position {position} is not an object")

    watch_count = max(_as_int(_first(raw, "watchCount", "watch_count"), 0), 0)
    watched = bool(raw.get("watched", False)) or watch_count > 0
    air_date = _first(raw, "air_date", "airDate", "airstamp")

    return Episode(
        number=_as_int(_first(raw, "episodeNumber", "episode_number", "number"), position + 1),
        name=_first(raw, "name", "episodeName", "title"),
        air_date=str(air_date)[:10] if air_date else None,
        runtime=_as_int(raw.get("runtime")) if raw.get("runtime") is not None else None,
        watched=watched,
        watch_count=watch_count if watch_count or not watched else 1,
        first_watched_at=parse_timestamp(_first(raw, "firstWatchedAt", "first_watched_at")),
    )


def normalize_season(raw: Any, position: int) -> Season:
    """Convert one wire season; ``position`` is its zero-based index."""
    if not isinstance(raw, dict):
        raise MalformedPayload(f"Season at position {position} is not an object")

    episodes = [
        normalize_episode(episode, index)
        for index, episode in enumerate(_as_list(raw.get("episodes")))
    ]
    return Season(
        number=max(_as_int(_first(raw, "seasonNumber", "season_number", "number"), position), 0),
        episodes=episodes,
    )


def normalize_item(raw: Any) -> CatalogItem:
    """Convert one wire catalog entry into a ``CatalogItem``.

    Raises:
        MalformedPayload: if the entry is not an object or has no id/title.
    """
    if not isinstance(raw, dict):
        raise MalformedPayload("Catalog entry is not an object")

    item_id = _first(raw, "id", "itemId", "tmdbId")
    if item_id is None or item_id == "":
        raise MalformedPayload("Catalog entry has no id", details={"keys": sorted(raw)[:20]})

    title = _first(raw, "title", "name", "original_name")
    if not title:
        raise MalformedPayload("Catalog entry has no title", details={"id": str(item_id)})

    seasons = [normalize_season(season, index) for index, season in enumerate(_as_list(raw.get("seasons")))]

    season_count = _first(raw, "seasonCount", "season_count")
    season_count = _as_int(season_count, len(seasons)) if season_count is not None else len(seasons)

    genre = raw.get("genre")
    genres = _names(genre.get("genres") if isinstance(genre, dict) else raw.get("genres"), "name")

    provider = raw.get("provider")
    providers = _names(
        provider.get("provider") if isinstance(provider, dict) else raw.get("providers"),
        "name",
        "provider_name",
    )

    poster = raw.get("poster")
    if isinstance(poster, dict):
        poster = poster.get("poster")
    poster = poster or raw.get("poster_path")

    rating = raw.get("rating")
    if isinstance(rating, dict):
        rating = {str(k): float(v) for k, v in rating.items() if isinstance(v, (int, float)) and not isinstance(v, bool)}
    elif isinstance(rating, (int, float)) and not isinstance(rating, bool):
        rating = {"overall": float(rating)}
    else:
        rating = {}

    media_type = str(_first(raw, "media_type", "mediaType", "type") or "").lower()
    if media_type not in (MediaType.SERIES.value, MediaType.MOVIE.value):
        media_type = MediaType.MOVIE.value if media_type in ("film", "movies") else MediaType.SERIES.value

    key = _first(raw, "nmr", "key", "seq")

    try:
        return CatalogItem(
            id=str(item_id),
            key=_as_int(key) if key is not None else None,
            title=str(title),
            media_type=MediaType(media_type),
            seasons=seasons,
            season_count=max(season_count, 0),
            watchlist=bool(raw.get("watchlist", False)),
            rating=rating,
            genres=genres,
            providers=providers,
            poster=str(poster) if poster else None,
            status=str(raw["status"]) if raw.get("status") is not None else None,
            created_at=parse_timestamp(_first(raw, "createdAt", "created_at", "addedAt")),
            updated_at=parse_timestamp(_first(raw, "updatedAt", "updated_at", "lastModified")),
        )
    except ValidationError as e:
        raise MalformedPayload("Catalog entry failed validation", details={"id": str(item_id), "error": str(e)}) from e


def normalize_catalog(raw: Any) -> list[CatalogItem]:
    """Convert a whole catalog payload, skipping entries that cannot be read.

    The payload may be a list, an id-keyed object, or an envelope with an
    ``items`` field. Catalog order is preserved. ``None`` is an empty catalog.

    Raises:
        MalformedPayload: if the payload is an error envelope, has another
            top-level shape, or holds entries none of which can be read.
    """
    if isinstance(raw, dict) and "items" in raw:
        raw = raw["items"]

    if isinstance(raw, dict):
        if "error" in raw:
            raise MalformedPayload("Catalog payload is an error envelope", details={"error": str(raw["error"])[:200]})
        entries: list[Any] = [entry for entry in raw.values() if entry is not None]
    elif isinstance(raw, list):
        entries = [entry for entry in raw if entry is not None]
    elif raw is None:
        return []
    else:
        raise MalformedPayload("Catalog payload has an unrecognized shape", details={"type": type(raw).__name__})

    items = []
    seen: set[str] = set()
    rejected = 0
    for entry in entries:
        try:
            item = normalize_item(entry)
        except MalformedPayload as e:
            logger.warning("catalog_entry_rejected", reason=e.message, **e.details)
            rejected += 1
            continue
        if item.id in seen:
            logger.warning("catalog_entry_duplicate", item_id=item.id)
            continue
        seen.add(item.id)
        items.append(item)

    if entries and not items:
        raise MalformedPayload("Catalog payload has no readable entry", details={"rejected": rejected})
    return items


def normalize_baselines(raw: Any) -> dict[str, SeasonBaseline]:
    """Convert a stored baseline map keyed by item id."""
    if not isinstance(raw, dict):
        return {}

    baselines = {}
    for item_id, entry in raw.items():
        if not isinstance(entry, dict):
            logger.warning("baseline_entry_rejected", item_id=item_id)
            continue
        previous = _as_int(_first(entry, "previousSeasonCount", "previous_season_count"), -1)
        current = _as_int(_first(entry, "currentSeasonCount", "current_season_count"), previous)
        last_checked = parse_timestamp(_first(entry, "lastCheckedAt", "last_checked_at", "lastChecked"))
        if previous < 0 or last_checked is None:
            logger.warning("baseline_entry_rejected", item_id=item_id)
            continue
        try:
            baselines[str(item_id)] = SeasonBaseline(
                item_id=str(item_id),
                previous_season_count=previous,
                # Older records could carry previous > current
                current_season_count=max(current, previous),
                last_checked_at=last_checked,
                notified=bool(entry.get("notified", False)),
                detected_at=parse_timestamp(_first(entry, "detectedAt", "detected_at")),
            )
        except ValidationError:
            logger.warning("baseline_entry_rejected", item_id=item_id)
    return baselines


def serialize_baseline(baseline: SeasonBaseline) -> dict:
    """Wire form of a baseline record."""
    return {
        "previousSeasonCount": baseline.previous_season_count,
        "currentSeasonCount": baseline.current_season_count,
        "lastCheckedAt": baseline.last_checked_at.isoformat(),
        "notified": baseline.notified,
        "detectedAt": baseline.detected_at.isoformat() if baseline.detected_at else None,
    }


def normalize_push_event(raw: Any) -> Optional[PushEvent]:
    """Convert a push message, or None if it lacks event/owner fields."""
    if not isinstance(raw, dict):
        return None
    event = _first(raw, "event", "type")
    owner_id = _first(raw, "ownerId", "owner_id", "uid")
    if not event or not owner_id:
        return None
    item_id = _first(raw, "itemId", "item_id", "id")
    return PushEvent(event=str(event), item_id=str(item_id) if item_id is not None else None, owner_id=str(owner_id))
