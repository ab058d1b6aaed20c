"""Pydantic models for catalog data, cache snapshots and season baselines."""

from .catalog import (
    CacheFidelity,
    CacheSnapshot,
    CatalogItem,
    CatalogState,
    ChangeEvent,
    Episode,
    Fidelity,
    MediaType,
    PushEvent,
    Season,
    SeasonBaseline,
    StateSource,
)

__all__ = [
    "CacheFidelity",
    "CacheSnapshot",
    "CatalogItem",
    "CatalogState",
    "ChangeEvent",
    "Episode",
    "Fidelity",
    "MediaType",
    "PushEvent",
    "Season",
    "SeasonBaseline",
    "StateSource",
]
