"""Canonical catalog, cache and baseline models."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class MediaType(str, Enum):
    """Kind of catalog item."""

    SERIES = "series"
    MOVIE = "movie"


class Fidelity(str, Enum):
    """Projection tier requested from the remote authority."""

    MINIMAL = "minimal"
    FULL = "full"


class CacheFidelity(str, Enum):
    """Tier of a stored snapshot."""

    FULL = "full"
    REDUCED = "reduced"


class StateSource(str, Enum):
    """Where the currently published catalog came from."""

    EMPTY = "empty"
    CACHED = "cached"
    MINIMAL = "minimal"
    FULL = "full"


class Episode(BaseModel):
    """A single episode and the user's watch state for it."""

    number: int
    name: Optional[str] = None
    air_date: Optional[str] = None  # ISO date, None if unannounced
    runtime: Optional[int] = None  # Minutes
    watched: bool = False
    watch_count: int = Field(default=0, ge=0)
    first_watched_at: Optional[datetime] = None


class Season(BaseModel):
    """A season, numbered from zero."""

    number: int = Field(ge=0)
    episodes: list[Episode] = Field(default_factory=list)

    @property
    def episode_count(self) -> int:
        return len(self.episodes)

    @property
    def watched_count(self) -> int:
        return sum(1 for episode in self.episodes if episode.watched)

    @property
    def is_complete(self) -> bool:
        return bool(self.episodes) and self.watched_count == self.episode_count

    def get_episode(self, number: int) -> Optional[Episode]:
        """Get an episode by its number."""
        for episode in self.episodes:
            if episode.number == number:
                return episode
        return None


class CatalogItem(BaseModel):
    """A tracked series or movie, read-only copy of the remote record."""

    id: str
    key: Optional[int] = None  # Stable local sequence key
    title: str
    media_type: MediaType = MediaType.SERIES
    seasons: list[Season] = Field(default_factory=list)
    season_count: int = Field(default=0, ge=0)
    watchlist: bool = False
    rating: dict[str, float] = Field(default_factory=dict)
    genres: list[str] = Field(default_factory=list)
    providers: list[str] = Field(default_factory=list)
    poster: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_season(self, number: int) -> Optional[Season]:
        """Get a season by its zero-based number."""
        for season in self.seasons:
            if season.number == number:
                return season
        return None


class CacheSnapshot(BaseModel):
    """Best-effort local copy of a user's catalog."""

    version: int
    owner_id: str
    captured_at: datetime
    fidelity: CacheFidelity
    items: list[CatalogItem] = Field(default_factory=list)


class SeasonBaseline(BaseModel):
    """Persisted record of the season count a user was last alerted about."""

    item_id: str
    previous_season_count: int = Field(ge=0)
    current_season_count: int = Field(ge=0)
    last_checked_at: datetime
    notified: bool = False
    detected_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _previous_not_ahead(self) -> "SeasonBaseline":
        if self.previous_season_count > self.current_season_count:
            raise ValueError("previous_season_count cannot exceed current_season_count")
        return self

    @property
    def has_increase(self) -> bool:
        return self.current_season_count > self.previous_season_count

    @property
    def is_eligible(self) -> bool:
        return not self.notified and self.has_increase


class ChangeEvent(BaseModel):
    """An observed season increase, recomputed from baselines on every run."""

    item_id: str
    from_count: int
    to_count: int
    detected_at: Optional[datetime] = None


class PushEvent(BaseModel):
    """Change notification received from the push channel."""

    event: str
    item_id: Optional[str] = None
    owner_id: str


class CatalogState(BaseModel):
    """Catalog as published by the sync controller."""

    owner_id: Optional[str] = None
    items: list[CatalogItem] = Field(default_factory=list)
    source: StateSource = StateSource.EMPTY
    generation: int = 0
    loading: bool = False
    offline: bool = False
    stale: bool = False
    error: Optional[str] = None
    snapshot_age: Optional[timedelta] = None
    updated_at: Optional[datetime] = None

    @property
    def is_full(self) -> bool:
        return self.source == StateSource.FULL
