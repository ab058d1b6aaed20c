"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RemoteConfig(BaseModel):
    """Remote authority connection settings."""

    url: str = "http://localhost:8000"
    api_key: str = ""
    timeout: int = 30
    push_reconnect_delay: float = 5.0  # Seconds before reopening a dropped push stream


class CacheConfig(BaseModel):
    """On-device snapshot cache settings."""

    namespace: str = "seriesCache"
    directory: str = str(Path.home() / ".watchsync" / "cache")
    quota_bytes: int = 5 * 1024 * 1024  # Hard limit of the on-device store
    purge_threshold_bytes: int = 4 * 1024 * 1024  # Purge namespace before writing larger snapshots
    stale_after_hours: int = 24
    version: int = 1


class SyncConfig(BaseModel):
    """Catalog synchronization settings."""

    minimal_phase: bool = True  # Publish a cheap projection before the full one
    refresh_on_reconnect: bool = True
    warm_start: bool = True  # Publish the cached snapshot on activation


class DetectionConfig(BaseModel):
    """New-season detection settings."""

    debounce_ms: int = 200
    cooldown_hours: int = 24  # Minimum gap between last_checked_at refreshes
    include_watchlist: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: Optional[str] = None
    max_size: int = 10
    backup_count: int = 5
    json_output: bool = False


class Settings(BaseSettings):
    """Main settings container."""

    model_config = SettingsConfigDict(
        env_prefix="WATCHSYNC_",
        env_nested_delimiter="__",
    )

    environment: Literal["production", "development", "test"] = "production"
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def cooldown_seconds(self) -> float:
        """Re-check cooldown, disabled outside production."""
        if self.environment != "production":
            return 0.0
        return self.detection.cooldown_hours * 3600.0

    @classmethod
    def from_yaml(cls, path: Path) -> "Settings":
        """Load settings from a YAML file."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f)

        return cls(**data) if data else cls()
