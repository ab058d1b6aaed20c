"""Catalog synchronization: two-phase fetch, push invalidation, offline fallback."""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from watchsync.core.config import Settings
from watchsync.core.errors import NetworkUnavailable
from watchsync.models.catalog import CatalogItem, CatalogState, Fidelity, PushEvent, StateSource
from watchsync.services.cache_store import CacheStore
from watchsync.services.remote_gateway import RemoteGateway

logger = structlog.get_logger()

Subscriber = Callable[[CatalogState], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncController:
    """Single source of the current catalog for one identity.

    Every fetch cycle issues a minimal request followed by a full request.
    Each request carries a generation number; a result is published only if
    it belongs to the active cycle and is newer than what is already
    published, so a slow minimal response can never replace a full one.
    Results that arrive after ``stop()`` or an identity change are dropped.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: RemoteGateway,
        cache: CacheStore,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        self.config = settings.sync
        self.gateway = gateway
        self.cache = cache
        self._clock = clock

        self._owner_id: Optional[str] = None
        self._active = False
        self._online = True
        self._cycle = 0
        self._generation = 0
        self._published_generation = 0
        # (cycle, error, offline) of the last failed full phase
        self._full_failure: Optional[tuple[int, str, bool]] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._subscribers: list[Subscriber] = []

        self.state = CatalogState()

    @property
    def owner_id(self) -> Optional[str]:
        return self._owner_id

    @property
    def active(self) -> bool:
        return self._active

    @property
    def online(self) -> bool:
        return self._online

    @property
    def syncing(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every published state. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, state: CatalogState) -> None:
        self.state = state
        for callback in list(self._subscribers):
            try:
                callback(state)
            except Exception as e:
                logger.error("catalog_subscriber_failed", error=str(e))

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _is_current(self, cycle: int, owner_id: str) -> bool:
        return self._active and cycle == self._cycle and owner_id == self._owner_id

    # Lifecycle

    async def start(self, owner_id: str) -> None:
        """Activate for ``owner_id``: warm start from cache, open the push channel, fetch."""
        if self._active:
            if owner_id == self._owner_id:
                return
            await self.stop()

        self._owner_id = owner_id
        self._active = True
        self._cycle += 1
        logger.info("sync_controller_starting", owner_id=owner_id)

        if self.config.warm_start:
            await self._warm_start(self._cycle, owner_id)

        self._listener_task = asyncio.create_task(self._listen_loop(owner_id))
        self.refresh(force=True)

    async def stop(self) -> None:
        """Deactivate. In-flight requests finish but their results are discarded."""
        if not self._active:
            return

        self._active = False
        self._cycle += 1

        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        self._cycle_task = None
        logger.info("sync_controller_stopped", owner_id=self._owner_id)

    async def set_identity(self, owner_id: Optional[str]) -> None:
        """Switch to another identity (or none), clearing all published state."""
        if owner_id == self._owner_id and (owner_id is None or self._active):
            return

        previous = self._owner_id
        await self.stop()
        self._owner_id = owner_id
        self._publish(CatalogState(owner_id=owner_id))
        logger.info("sync_identity_changed", previous=previous, owner_id=owner_id)

        if owner_id is not None:
            await self.start(owner_id)

    # Fetching

    def refresh(self, force: bool = False) -> asyncio.Task:
        """Start a fetch cycle and return its task.

        Without ``force``, a trigger that arrives while a cycle is in flight
        joins that cycle instead of starting another one. A forced refresh
        always starts a new cycle, superseding any in-flight one.
        """
        if not self._active or self._owner_id is None:
            raise RuntimeError("Sync controller is not active")

        if not force and self.syncing:
            logger.debug("sync_refresh_joined", owner_id=self._owner_id, cycle=self._cycle)
            return self._cycle_task

        self._cycle += 1
        self._cycle_task = asyncio.create_task(self._run_cycle(self._cycle, self._owner_id))
        return self._cycle_task

    async def _run_cycle(self, cycle: int, owner_id: str) -> None:
        logger.debug("sync_cycle_started", owner_id=owner_id, cycle=cycle)
        self._publish(self.state.model_copy(update={"loading": True}))

        phases = []
        if self.config.minimal_phase:
            phases.append(
                asyncio.create_task(
                    self._fetch_phase(cycle, owner_id, Fidelity.MINIMAL, self._next_generation())
                )
            )
        phases.append(
            asyncio.create_task(self._fetch_phase(cycle, owner_id, Fidelity.FULL, self._next_generation()))
        )
        await asyncio.gather(*phases)
        logger.debug("sync_cycle_finished", owner_id=owner_id, cycle=cycle)

    async def _fetch_phase(self, cycle: int, owner_id: str, fidelity: Fidelity, generation: int) -> None:
        try:
            items = await self.gateway.fetch_catalog(owner_id, fidelity)
        except NetworkUnavailable as e:
            logger.warning("catalog_fetch_offline", owner_id=owner_id, fidelity=fidelity.value, error=e.message)
            if fidelity == Fidelity.FULL:
                await self._fall_back(cycle, owner_id, generation, offline=True, error=e.message)
            return
        except Exception as e:
            logger.warning("catalog_fetch_failed", owner_id=owner_id, fidelity=fidelity.value, error=str(e))
            if fidelity == Fidelity.FULL:
                await self._fall_back(cycle, owner_id, generation, offline=False, error=str(e))
            return

        source = StateSource.FULL if fidelity == Fidelity.FULL else StateSource.MINIMAL
        if not self._publish_items(cycle, owner_id, generation, items, source):
            return

        if fidelity == Fidelity.FULL:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.cache.write, owner_id, items)

    def _publish_items(
        self,
        cycle: int,
        owner_id: str,
        generation: int,
        items: list[CatalogItem],
        source: StateSource,
    ) -> bool:
        if not self._is_current(cycle, owner_id):
            logger.debug("sync_result_discarded", owner_id=owner_id, source=source.value, reason="superseded_cycle")
            return False
        if generation <= self._published_generation:
            logger.debug(
                "sync_result_discarded",
                owner_id=owner_id,
                source=source.value,
                reason="older_generation",
                generation=generation,
                published=self._published_generation,
            )
            return False

        failure = self._full_failure if self._full_failure and self._full_failure[0] == cycle else None
        self._published_generation = generation
        if failure is None:
            self._online = True
        self._publish(
            CatalogState(
                owner_id=owner_id,
                items=items,
                source=source,
                generation=generation,
                # A minimal result is final once the full phase of its cycle has failed
                loading=source != StateSource.FULL and failure is None,
                offline=failure[2] if failure else False,
                error=failure[1] if failure else None,
                updated_at=self._clock(),
            )
        )
        logger.info("catalog_published", owner_id=owner_id, source=source.value, items=len(items), generation=generation)
        return True

    async def _fall_back(self, cycle: int, owner_id: str, generation: int, offline: bool, error: str) -> None:
        """Serve the cached snapshot after a failed full fetch."""
        if not self._is_current(cycle, owner_id):
            return
        self._full_failure = (cycle, error, offline)
        if offline:
            self._online = False

        current = self.state
        if current.owner_id == owner_id and current.source in (StateSource.MINIMAL, StateSource.FULL):
            # Network data from this session beats any snapshot
            self._publish(current.model_copy(update={"loading": False, "offline": offline, "error": error}))
            return

        loop = asyncio.get_running_loop()
        read = await loop.run_in_executor(None, self.cache.read, owner_id)

        if not self._is_current(cycle, owner_id) or generation <= self._published_generation:
            return

        if read.hit:
            self._published_generation = generation
            stale = self.cache.is_stale(read.age)
            self._publish(
                CatalogState(
                    owner_id=owner_id,
                    items=read.snapshot.items,
                    source=StateSource.CACHED,
                    generation=generation,
                    offline=offline,
                    stale=stale,
                    error=error,
                    snapshot_age=read.age,
                    updated_at=read.snapshot.captured_at,
                )
            )
            logger.info(
                "catalog_served_from_cache",
                owner_id=owner_id,
                items=len(read.snapshot.items),
                age_seconds=int(read.age.total_seconds()),
                stale=stale,
            )
        else:
            self._publish(current.model_copy(update={"loading": False, "offline": offline, "error": error}))
            logger.warning("catalog_unavailable", owner_id=owner_id, offline=offline)

    async def _warm_start(self, cycle: int, owner_id: str) -> None:
        loop = asyncio.get_running_loop()
        read = await loop.run_in_executor(None, self.cache.read, owner_id)
        if not read.hit or not self._is_current(cycle, owner_id):
            return

        generation = self._next_generation()
        self._published_generation = generation
        self._publish(
            CatalogState(
                owner_id=owner_id,
                items=read.snapshot.items,
                source=StateSource.CACHED,
                generation=generation,
                loading=True,
                offline=not self._online,
                stale=self.cache.is_stale(read.age),
                snapshot_age=read.age,
                updated_at=read.snapshot.captured_at,
            )
        )
        logger.info("catalog_warm_start", owner_id=owner_id, items=len(read.snapshot.items))

    # Push channel and connectivity

    def handle_push(self, event: PushEvent) -> Optional[asyncio.Task]:
        """React to a push event; events for other identities are ignored."""
        if not self._active or event.owner_id != self._owner_id:
            logger.debug("push_event_ignored", push_event=event.event, owner_id=event.owner_id)
            return None
        logger.debug("push_event_received", push_event=event.event, item_id=event.item_id)
        return self.refresh()

    async def _listen_loop(self, owner_id: str) -> None:
        """Keep the push channel open while active, reconnecting after failures."""
        while self._active and owner_id == self._owner_id:
            try:
                async for event in self.gateway.listen(owner_id):
                    self.handle_push(event)
                logger.info("push_channel_ended", owner_id=owner_id)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("push_channel_error", owner_id=owner_id, error=str(e))

            try:
                await asyncio.sleep(self.settings.remote.push_reconnect_delay)
            except asyncio.CancelledError:
                break

    def set_online(self, online: bool) -> None:
        """Record a connectivity change reported by the platform."""
        was_online = self._online
        self._online = online

        if online and not was_online:
            logger.info("connectivity_restored", owner_id=self._owner_id)
            stale = self.state.source in (StateSource.EMPTY, StateSource.CACHED) or self.state.offline
            if self._active and self.config.refresh_on_reconnect and stale:
                self.refresh()
        elif not online and was_online:
            logger.warning("connectivity_lost", owner_id=self._owner_id)
            self._publish(self.state.model_copy(update={"offline": True}))

    # Mutations

    def _require_owner(self) -> str:
        if self._owner_id is None:
            raise RuntimeError("No active identity")
        return self._owner_id

    def find_item(self, item_id: str) -> Optional[CatalogItem]:
        """Look up an item in the published catalog."""
        for item in self.state.items:
            if item.id == item_id:
                return item
        return None

    async def add_item(self, payload: dict) -> CatalogItem:
        """Create a catalog item at the remote authority."""
        owner_id = self._require_owner()
        try:
            return await self.gateway.create_item(owner_id, payload)
        except Exception as e:
            logger.error("mutation_failed", operation="add", owner_id=owner_id, error=str(e))
            raise

    async def update_item(self, item_id: str, patch: dict) -> CatalogItem:
        """Apply a path-keyed patch to an item at the remote authority."""
        owner_id = self._require_owner()
        try:
            return await self.gateway.mutate(owner_id, item_id, patch)
        except Exception as e:
            logger.error("mutation_failed", operation="update", owner_id=owner_id, item_id=item_id, error=str(e))
            raise

    async def delete_item(self, item_id: str) -> None:
        """Delete an item at the remote authority."""
        owner_id = self._require_owner()
        try:
            await self.gateway.delete_item(owner_id, item_id)
        except Exception as e:
            logger.error("mutation_failed", operation="delete", owner_id=owner_id, item_id=item_id, error=str(e))
            raise

    def _episode_patch(self, season_number: int, position: int, episode, watched: bool) -> dict:
        prefix = f"seasons/{season_number}/episodes/{position}"
        if not watched:
            return {f"{prefix}/watched": False, f"{prefix}/watchCount": 0}

        count = episode.watch_count + 1 if episode else 1
        first_watched = episode.first_watched_at if episode and episode.first_watched_at else self._clock()
        return {
            f"{prefix}/watched": True,
            f"{prefix}/watchCount": count,
            f"{prefix}/firstWatchedAt": first_watched.isoformat(),
        }

    async def update_episode(
        self,
        item_id: str,
        season_number: int,
        episode_number: int,
        watched: bool = True,
    ) -> CatalogItem:
        """Mark one episode watched (incrementing its watch count) or unwatched."""
        position = episode_number - 1
        episode = None

        item = self.find_item(item_id)
        season = item.get_season(season_number) if item else None
        if season:
            for index, candidate in enumerate(season.episodes):
                if candidate.number == episode_number:
                    position, episode = index, candidate
                    break

        patch = self._episode_patch(season_number, position, episode, watched)
        return await self.update_item(item_id, patch)

    async def update_season(self, item_id: str, season_number: int, watched: bool = True) -> CatalogItem:
        """Mark every episode of a season watched or unwatched."""
        item = self.find_item(item_id)
        season = item.get_season(season_number) if item else None
        if season is None:
            raise KeyError(f"Season {season_number} of item '{item_id}' is not in the catalog")

        patch: dict = {}
        for index, episode in enumerate(season.episodes):
            if watched and episode.watched:
                continue
            patch.update(self._episode_patch(season_number, index, episode, watched))

        if not patch:
            return item
        return await self.update_item(item_id, patch)
