"""New-season detection against persisted per-item baselines."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Union

import structlog

from watchsync.core.config import Settings
from watchsync.models.catalog import (
    CatalogItem,
    CatalogState,
    ChangeEvent,
    MediaType,
    SeasonBaseline,
)
from watchsync.services.remote_gateway import RemoteGateway

logger = structlog.get_logger()

EligibleSubscriber = Callable[[list[CatalogItem]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangeDetector:
    """Decides which series should raise a "new season" alert.

    Each tracked item has a ``SeasonBaseline``. An observed season count
    above ``previous_season_count`` makes the item eligible and keeps it
    eligible across any number of later runs; only ``mark_notified`` (the
    consume transition) advances ``previous_season_count``. A further
    increase after acknowledgement re-arms the alert.

    Detection runs are debounced and serialized: a new trigger restarts the
    debounce timer, and a pass that has started always finishes before the
    next one begins.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: RemoteGateway,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        self.config = settings.detection
        self.gateway = gateway
        self._clock = clock

        self._owner_id: Optional[str] = None
        self._latest_items: list[CatalogItem] = []
        self._last_generation: Optional[int] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._pass_task: Optional[asyncio.Task] = None
        self._pass_lock = asyncio.Lock()
        self._baselines: dict[str, SeasonBaseline] = {}
        self._eligible: list[CatalogItem] = []
        self._subscribers: list[EligibleSubscriber] = []

    @property
    def eligible(self) -> list[CatalogItem]:
        """Items currently due for an alert, in catalog order."""
        return list(self._eligible)

    @property
    def events(self) -> list[ChangeEvent]:
        """Change events for the eligible items."""
        events = []
        for item in self._eligible:
            baseline = self._baselines.get(item.id)
            if baseline is None:
                continue
            events.append(
                ChangeEvent(
                    item_id=item.id,
                    from_count=baseline.previous_season_count,
                    to_count=baseline.current_season_count,
                    detected_at=baseline.detected_at,
                )
            )
        return events

    @property
    def baselines(self) -> dict[str, SeasonBaseline]:
        """Baselines as of the last run or acknowledgement."""
        return dict(self._baselines)

    @property
    def running(self) -> bool:
        return self._pass_lock.locked()

    def subscribe(self, callback: EligibleSubscriber) -> Callable[[], None]:
        """Register a callback receiving the eligible set after every run."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _set_eligible(self, eligible: list[CatalogItem]) -> None:
        self._eligible = eligible
        for callback in list(self._subscribers):
            try:
                callback(self.eligible)
            except Exception as e:
                logger.error("eligible_subscriber_failed", error=str(e))

    # Triggering

    def on_catalog(self, state: CatalogState) -> None:
        """Catalog subscriber: schedule detection after each settled full sync."""
        if state.owner_id != self._owner_id:
            self.reset(state.owner_id)

        if state.owner_id is None or not state.is_full or state.loading:
            return
        if state.generation == self._last_generation:
            return

        self._last_generation = state.generation
        self.schedule(state.owner_id, state.items)

    def schedule(self, owner_id: str, items: Iterable[CatalogItem]) -> asyncio.Task:
        """Run detection after the debounce delay, restarting any pending delay."""
        self._owner_id = owner_id
        self._latest_items = list(items)

        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()

        self._debounce_task = asyncio.create_task(self._debounced())
        return self._debounce_task

    async def _debounced(self) -> None:
        await asyncio.sleep(self.config.debounce_ms / 1000)
        owner_id, items = self._owner_id, self._latest_items
        if owner_id is None:
            return
        # The pass runs in its own task so a later trigger cannot cancel it midway
        self._pass_task = asyncio.create_task(self.run(owner_id, items))
        await asyncio.shield(self._pass_task)

    async def recheck(self) -> list[CatalogItem]:
        """Run detection now against the latest catalog."""
        if self._owner_id is None:
            return []
        return await self.run(self._owner_id, self._latest_items)

    def reset(self, owner_id: Optional[str] = None) -> None:
        """Forget all session state, e.g. after an identity change."""
        self._cancel_debounce()
        self._owner_id = owner_id
        self._latest_items = []
        self._last_generation = None
        self._baselines = {}
        if self._eligible:
            self._set_eligible([])

    def clear(self) -> None:
        """Dismiss the session's eligible set without acknowledging it."""
        self._set_eligible([])

    def _cancel_debounce(self) -> None:
        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    async def stop(self) -> None:
        """Cancel pending detection and wait for a running pass to finish."""
        self._cancel_debounce()
        if self._pass_task and not self._pass_task.done():
            try:
                await self._pass_task
            except Exception as e:
                logger.warning("detection_pass_failed_on_stop", error=str(e))
        self._pass_task = None
        logger.info("change_detector_stopped")

    # Detection

    def _tracks(self, item: CatalogItem) -> bool:
        if item.media_type != MediaType.SERIES:
            return False
        if item.watchlist and not self.config.include_watchlist:
            return False
        return True

    def _observe(self, baseline: Optional[SeasonBaseline], item: CatalogItem, now: datetime) -> SeasonBaseline:
        """Apply one observation to a baseline and return the resulting record."""
        observed = item.season_count

        if baseline is None:
            return SeasonBaseline(
                item_id=item.id,
                previous_season_count=observed,
                current_season_count=observed,
                last_checked_at=now,
            )

        previous = baseline.previous_season_count

        if observed > previous:
            if baseline.notified:
                # A further release after acknowledgement
                return baseline.model_copy(
                    update={
                        "current_season_count": observed,
                        "notified": False,
                        "detected_at": now,
                        "last_checked_at": now,
                    }
                )
            if observed == baseline.current_season_count and baseline.detected_at is not None:
                return baseline
            return baseline.model_copy(
                update={
                    "current_season_count": observed,
                    "detected_at": baseline.detected_at or now,
                    "last_checked_at": now,
                }
            )

        update: dict = {}
        if baseline.current_season_count > previous and not baseline.notified:
            # The increase was retracted remotely
            update.update({"current_season_count": previous, "detected_at": None})

        cooldown = timedelta(seconds=self.settings.cooldown_seconds)
        if now - baseline.last_checked_at >= cooldown:
            update["last_checked_at"] = now

        return baseline.model_copy(update=update) if update else baseline

    async def run(self, owner_id: str, items: Iterable[CatalogItem]) -> list[CatalogItem]:
        """Run one detection pass and return the eligible set.

        Reads the baseline map once, applies every observation, deletes
        baselines of items no longer in the catalog and writes back only
        the entries that changed. On a failed read the previous eligible
        set is kept.
        """
        items = list(items)
        if self._owner_id is None:
            self._owner_id = owner_id
        if owner_id == self._owner_id:
            self._latest_items = items

        async with self._pass_lock:
            try:
                stored = await self.gateway.get_baselines(owner_id)
            except Exception as e:
                logger.warning("baseline_read_failed", owner_id=owner_id, error=str(e))
                return self.eligible

            now = self._clock()
            updated = dict(stored)
            changed: list[SeasonBaseline] = []

            for item in items:
                if not self._tracks(item):
                    continue
                before = stored.get(item.id)
                after = self._observe(before, item, now)
                if after != before:
                    updated[item.id] = after
                    changed.append(after)
                    if before is None:
                        logger.debug("baseline_created", item_id=item.id, seasons=after.current_season_count)
                    elif after.detected_at is not None and after.detected_at != before.detected_at:
                        logger.info(
                            "new_season_detected",
                            item_id=item.id,
                            title=item.title,
                            from_count=after.previous_season_count,
                            to_count=after.current_season_count,
                        )

            live_ids = {item.id for item in items}
            removed = [item_id for item_id in stored if item_id not in live_ids]
            for item_id in removed:
                del updated[item_id]

            try:
                await self.gateway.put_baselines(owner_id, changed)
                await self.gateway.delete_baselines(owner_id, removed)
            except Exception as e:
                # Persisted baselines are untouched or partially written; the next pass reconciles
                logger.warning("baseline_write_failed", owner_id=owner_id, error=str(e))

            if owner_id != self._owner_id:
                logger.debug("detection_result_discarded", owner_id=owner_id)
                return []

            self._baselines = updated
            eligible = [
                item
                for item in items
                if item.id in updated and updated[item.id].is_eligible and self._tracks(item)
            ]
            self._set_eligible(eligible)

            logger.info(
                "detection_pass_finished",
                owner_id=owner_id,
                tracked=sum(1 for item in items if self._tracks(item)),
                changed=len(changed),
                removed=len(removed),
                eligible=len(eligible),
            )
            return self.eligible

    async def mark_notified(self, item_ids: Union[str, Iterable[str]]) -> list[str]:
        """Acknowledge alerts for one or many items.

        Sets ``notified`` and advances ``previous_season_count`` to
        ``current_season_count``. Items without a baseline are skipped.

        Returns:
            Ids whose baselines were changed
        """
        if self._owner_id is None:
            raise RuntimeError("No active identity")
        owner_id = self._owner_id

        ids = [item_ids] if isinstance(item_ids, str) else list(item_ids)

        async with self._pass_lock:
            stored = await self.gateway.get_baselines(owner_id)

            changed: list[SeasonBaseline] = []
            for item_id in ids:
                baseline = stored.get(item_id)
                if baseline is None:
                    logger.debug("mark_notified_unknown_item", item_id=item_id)
                    continue
                consumed = baseline.model_copy(
                    update={
                        "notified": True,
                        "previous_season_count": baseline.current_season_count,
                    }
                )
                if consumed != baseline:
                    stored[item_id] = consumed
                    changed.append(consumed)

            await self.gateway.put_baselines(owner_id, changed)

            self._baselines = stored
            acknowledged = set(ids)
            remaining = [item for item in self._eligible if item.id not in acknowledged]
            if len(remaining) != len(self._eligible):
                self._set_eligible(remaining)

        logger.info("new_seasons_acknowledged", owner_id=owner_id, items=[b.item_id for b in changed])
        return [baseline.item_id for baseline in changed]
