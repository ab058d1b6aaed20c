"""Shared fixtures: an in-memory remote authority, a controllable clock and test settings."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from watchsync.core.config import CacheConfig, DetectionConfig, RemoteConfig, Settings
from watchsync.core.errors import RemoteMutationRejected
from watchsync.models.catalog import (
    CatalogItem,
    Episode,
    Fidelity,
    MediaType,
    PushEvent,
    Season,
    SeasonBaseline,
)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway:
    """In-memory stand-in for RemoteGateway.

    ``gates`` holds events that fetches of a given fidelity wait on, which
    lets tests control the order in which responses arrive.
    """

    def __init__(self):
        self.catalogs: dict[str, list[CatalogItem]] = {}
        self.baselines: dict[str, dict[str, SeasonBaseline]] = {}
        self.gates: dict[Fidelity, asyncio.Event] = {}
        self.failures: dict[Fidelity, Exception] = {}
        self.baseline_gate: Optional[asyncio.Event] = None
        self.baseline_read_error: Optional[Exception] = None
        self.mutation_error: Optional[Exception] = None

        self.fetch_calls: list[tuple[str, Fidelity]] = []
        self.baseline_reads = 0
        self.put_calls: list[list[SeasonBaseline]] = []
        self.delete_calls: list[list[str]] = []
        self.mutations: list[tuple[str, str, dict]] = []
        self.deleted: list[str] = []
        self.concurrent_reads = 0
        self.max_concurrent_reads = 0

        self.events: asyncio.Queue = asyncio.Queue()
        self.online = True
        self.closed = False

    async def fetch_catalog(self, owner_id: str, fidelity: Fidelity = Fidelity.FULL) -> list[CatalogItem]:
        self.fetch_calls.append((owner_id, fidelity))
        gate = self.gates.get(fidelity)
        if gate is not None:
            await gate.wait()
        if fidelity in self.failures:
            raise self.failures[fidelity]
        items = self.catalogs.get(owner_id, [])
        if fidelity == Fidelity.MINIMAL:
            return [item.model_copy(update={"seasons": []}) for item in items]
        return [item.model_copy(deep=True) for item in items]

    async def fetch_item(self, owner_id: str, item_id: str) -> Optional[CatalogItem]:
        for item in self.catalogs.get(owner_id, []):
            if item.id == item_id:
                return item
        return None

    async def create_item(self, owner_id: str, payload: dict) -> CatalogItem:
        if self.mutation_error:
            raise self.mutation_error
        item = CatalogItem(id=str(payload["id"]), title=payload["title"])
        self.catalogs.setdefault(owner_id, []).append(item)
        return item

    async def mutate(self, owner_id: str, item_id: str, patch: dict) -> CatalogItem:
        if self.mutation_error:
            raise self.mutation_error
        self.mutations.append((owner_id, item_id, patch))
        item = await self.fetch_item(owner_id, item_id)
        if item is None:
            raise RemoteMutationRejected(item_id, status_code=404)
        return item

    async def delete_item(self, owner_id: str, item_id: str) -> None:
        if self.mutation_error:
            raise self.mutation_error
        self.deleted.append(item_id)

    async def get_baselines(self, owner_id: str) -> dict[str, SeasonBaseline]:
        self.baseline_reads += 1
        self.concurrent_reads += 1
        self.max_concurrent_reads = max(self.max_concurrent_reads, self.concurrent_reads)
        try:
            if self.baseline_gate is not None:
                await self.baseline_gate.wait()
            if self.baseline_read_error:
                raise self.baseline_read_error
            return dict(self.baselines.get(owner_id, {}))
        finally:
            self.concurrent_reads -= 1

    async def put_baselines(self, owner_id: str, baselines) -> None:
        baselines = list(baselines)
        self.put_calls.append(baselines)
        stored = self.baselines.setdefault(owner_id, {})
        for baseline in baselines:
            stored[baseline.item_id] = baseline

    async def delete_baselines(self, owner_id: str, item_ids) -> None:
        item_ids = list(item_ids)
        self.delete_calls.append(item_ids)
        stored = self.baselines.setdefault(owner_id, {})
        for item_id in item_ids:
            stored.pop(item_id, None)

    async def listen(self, owner_id: str):
        while True:
            event = await self.events.get()
            yield event

    async def push(self, event: PushEvent) -> None:
        await self.events.put(event)

    async def close(self) -> None:
        self.closed = True


def make_item(
    item_id: str,
    season_count: int = 1,
    title: Optional[str] = None,
    watchlist: bool = False,
    media_type: MediaType = MediaType.SERIES,
    episodes_per_season: int = 2,
) -> CatalogItem:
    """Build a catalog item with ``season_count`` seasons."""
    seasons = [
        Season(
            number=number,
            episodes=[
                Episode(number=episode, air_date="2023-01-0%d" % min(episode, 9))
                for episode in range(1, episodes_per_season + 1)
            ],
        )
        for number in range(season_count)
    ]
    return CatalogItem(
        id=item_id,
        key=int(item_id) if item_id.isdigit() else None,
        title=title or f"Series {item_id}",
        media_type=media_type,
        seasons=seasons,
        season_count=season_count,
        watchlist=watchlist,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep developer WATCHSYNC_* variables out of the tests."""
    import os

    for name in list(os.environ):
        if name.startswith("WATCHSYNC_"):
            monkeypatch.delenv(name)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def settings(tmp_path):
    """Test-mode settings with a temporary cache directory and short delays."""
    return Settings(
        environment="test",
        remote=RemoteConfig(push_reconnect_delay=0.01),
        cache=CacheConfig(directory=str(tmp_path / "cache")),
        detection=DetectionConfig(debounce_ms=20),
    )
