"""Engine services - remote gateway, on-device cache, sync and season detection."""

from .cache_store import CacheRead, CacheStats, CacheStore
from .change_detector import ChangeDetector
from .local_store import LocalStore
from .remote_gateway import RemoteGateway
from .sync_controller import SyncController

__all__ = [
    "CacheRead",
    "CacheStats",
    "CacheStore",
    "ChangeDetector",
    "LocalStore",
    "RemoteGateway",
    "SyncController",
]
