"""Tests for catalog synchronization."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from conftest import make_item, wait_until
from watchsync.core.errors import MalformedPayload, NetworkUnavailable, RemoteError, RemoteMutationRejected
from watchsync.models.catalog import Fidelity, PushEvent, StateSource
from watchsync.services.cache_store import CacheStore
from watchsync.services.sync_controller import SyncController


@pytest.fixture
def cache(settings, clock):
    return CacheStore(settings.cache, clock=clock)


@pytest_asyncio.fixture
async def controller(settings, gateway, cache, clock):
    """Create a controller and stop it after the test."""
    controller = SyncController(settings, gateway, cache, clock=clock)
    yield controller
    await controller.stop()


def full_fetches(gateway, owner_id="u1"):
    return sum(1 for call in gateway.fetch_calls if call == (owner_id, Fidelity.FULL))


@pytest.mark.asyncio
async def test_minimal_then_full(controller, gateway, cache):
    """Test that a cycle publishes the minimal projection, then the full catalog."""
    gateway.catalogs["u1"] = [make_item("1", 2), make_item("2", 1)]
    states = []
    controller.subscribe(states.append)

    await controller.start("u1")
    await controller.refresh()

    assert [state.source for state in states] == [StateSource.EMPTY, StateSource.MINIMAL, StateSource.FULL]
    assert states[1].loading is True
    assert states[1].items[0].seasons == []

    final = controller.state
    assert final.loading is False
    assert final.owner_id == "u1"
    assert [item.id for item in final.items] == ["1", "2"]
    assert len(final.items[0].seasons) == 2
    assert cache.read("u1").hit


@pytest.mark.asyncio
async def test_late_minimal_never_replaces_full(controller, gateway):
    """Test that a minimal response arriving after the full one is discarded."""
    gateway.catalogs["u1"] = [make_item("1", 3)]
    gateway.gates[Fidelity.MINIMAL] = asyncio.Event()
    states = []
    controller.subscribe(states.append)

    await controller.start("u1")
    task = controller.refresh()
    await wait_until(lambda: controller.state.source == StateSource.FULL)

    gateway.gates[Fidelity.MINIMAL].set()
    await task

    assert controller.state.source == StateSource.FULL
    assert len(controller.state.items[0].seasons) == 3
    assert StateSource.MINIMAL not in [state.source for state in states]


@pytest.mark.asyncio
async def test_full_catalog_published_without_minimal_phase(settings, gateway, cache, clock):
    """Test that the minimal phase can be switched off."""
    settings.sync.minimal_phase = False
    gateway.catalogs["u1"] = [make_item("1")]
    controller = SyncController(settings, gateway, cache, clock=clock)

    await controller.start("u1")
    await controller.refresh()
    await controller.stop()

    assert gateway.fetch_calls == [("u1", Fidelity.FULL)]
    assert controller.state.source == StateSource.FULL


@pytest.mark.asyncio
async def test_offline_falls_back_to_stale_cache(controller, gateway, cache, clock):
    """Test that an unreachable remote serves the cached snapshot flagged stale."""
    cache.write("u1", [make_item("1", 3)])
    clock.advance(hours=30)
    gateway.failures[Fidelity.MINIMAL] = NetworkUnavailable()
    gateway.failures[Fidelity.FULL] = NetworkUnavailable()

    await controller.start("u1")
    await controller.refresh()

    state = controller.state
    assert state.source == StateSource.CACHED
    assert state.offline is True
    assert state.stale is True
    assert state.loading is False
    assert state.snapshot_age == timedelta(hours=30)
    assert [item.id for item in state.items] == ["1"]
    assert controller.online is False


@pytest.mark.asyncio
async def test_offline_fresh_cache_not_stale(controller, gateway, cache, clock):
    """Test that a recent snapshot is served without the stale flag."""
    cache.write("u1", [make_item("1")])
    clock.advance(hours=1)
    gateway.failures[Fidelity.FULL] = NetworkUnavailable()
    gateway.failures[Fidelity.MINIMAL] = NetworkUnavailable()

    await controller.start("u1")
    await controller.refresh()

    assert controller.state.source == StateSource.CACHED
    assert controller.state.stale is False


@pytest.mark.asyncio
async def test_offline_without_cache(controller, gateway):
    """Test that an unreachable remote and an empty cache yield an empty offline state."""
    gateway.failures[Fidelity.FULL] = NetworkUnavailable()
    gateway.failures[Fidelity.MINIMAL] = NetworkUnavailable()

    await controller.start("u1")
    await controller.refresh()

    state = controller.state
    assert state.source == StateSource.EMPTY
    assert state.items == []
    assert state.offline is True
    assert state.loading is False


@pytest.mark.asyncio
async def test_remote_error_falls_back_without_offline_flag(controller, gateway, cache):
    """Test that an error status still serves the cache but is not reported as offline."""
    cache.write("u1", [make_item("1")])
    gateway.failures[Fidelity.FULL] = RemoteError("GET failed", status_code=500)
    gateway.failures[Fidelity.MINIMAL] = RemoteError("GET failed", status_code=500)

    await controller.start("u1")
    await controller.refresh()

    assert controller.state.source == StateSource.CACHED
    assert controller.state.offline is False
    assert controller.state.error == "GET failed"


@pytest.mark.asyncio
async def test_full_failure_keeps_minimal_data(controller, gateway, cache):
    """Test that network data from this session is not replaced by an older snapshot."""
    cache.write("u1", [make_item("old")])
    gateway.catalogs["u1"] = [make_item("1"), make_item("2")]
    gateway.failures[Fidelity.FULL] = NetworkUnavailable()

    await controller.start("u1")
    await controller.refresh()

    state = controller.state
    assert state.source == StateSource.MINIMAL
    assert [item.id for item in state.items] == ["1", "2"]
    assert state.offline is True
    assert state.loading is False


@pytest.mark.asyncio
async def test_minimal_after_failed_full_settles_state(controller, gateway):
    """Test that a minimal result arriving after the full phase failed ends loading and keeps the error."""
    gateway.catalogs["u1"] = [make_item("1"), make_item("2")]
    gateway.gates[Fidelity.MINIMAL] = asyncio.Event()
    gateway.failures[Fidelity.FULL] = RemoteError("GET failed", status_code=500)

    await controller.start("u1")
    task = controller.refresh()
    await wait_until(lambda: controller.state.error is not None)

    assert controller.state.source == StateSource.EMPTY
    assert controller.state.loading is False

    gateway.gates[Fidelity.MINIMAL].set()
    await task

    state = controller.state
    assert state.source == StateSource.MINIMAL
    assert [item.id for item in state.items] == ["1", "2"]
    assert state.loading is False
    assert state.error == "GET failed"
    assert controller.syncing is False


@pytest.mark.asyncio
async def test_malformed_full_payload_falls_back(controller, gateway, cache):
    """Test that an unreadable full payload is treated as a failed fetch, not an empty catalog."""
    cache.write("u1", [make_item("1")])
    gateway.catalogs["u1"] = [make_item("1"), make_item("2")]
    gateway.failures[Fidelity.MINIMAL] = MalformedPayload("Catalog payload is an error envelope")
    gateway.failures[Fidelity.FULL] = MalformedPayload("Catalog payload is an error envelope")

    await controller.start("u1")
    await controller.refresh()

    state = controller.state
    assert state.source == StateSource.CACHED
    assert [item.id for item in state.items] == ["1"]
    assert state.error == "Catalog payload is an error envelope"
    assert cache.read("u1").snapshot.items[0].id == "1"


@pytest.mark.asyncio
async def test_warm_start_publishes_cache_first(controller, gateway, cache):
    """Test that activation publishes the cached snapshot before any fetch completes."""
    cache.write("u1", [make_item("1")])
    gateway.catalogs["u1"] = [make_item("1"), make_item("2")]
    gateway.gates[Fidelity.MINIMAL] = asyncio.Event()
    gateway.gates[Fidelity.FULL] = asyncio.Event()

    await controller.start("u1")

    assert controller.state.source == StateSource.CACHED
    assert controller.state.loading is True
    assert [item.id for item in controller.state.items] == ["1"]

    gateway.gates[Fidelity.MINIMAL].set()
    gateway.gates[Fidelity.FULL].set()
    await controller.refresh()

    assert controller.state.source == StateSource.FULL
    assert [item.id for item in controller.state.items] == ["1", "2"]


@pytest.mark.asyncio
async def test_concurrent_pushes_collapse(controller, gateway):
    """Test that pushes during an in-flight cycle join it instead of fetching again."""
    gateway.catalogs["u1"] = [make_item("1")]
    gateway.gates[Fidelity.FULL] = asyncio.Event()

    await controller.start("u1")
    event = PushEvent(event="catalog_changed", owner_id="u1")
    tasks = {controller.handle_push(event) for _ in range(3)}
    await asyncio.sleep(0.01)

    assert len(tasks) == 1
    assert full_fetches(gateway) == 1

    gateway.gates[Fidelity.FULL].set()
    await tasks.pop()
    assert controller.state.source == StateSource.FULL


@pytest.mark.asyncio
async def test_push_for_other_owner_ignored(controller, gateway):
    """Test that push events for another identity do not trigger a fetch."""
    gateway.catalogs["u1"] = [make_item("1")]
    await controller.start("u1")
    await controller.refresh()

    assert controller.handle_push(PushEvent(event="catalog_changed", owner_id="u2")) is None
    assert full_fetches(gateway) == 1


@pytest.mark.asyncio
async def test_push_channel_triggers_refetch(controller, gateway):
    """Test that an event on the push channel starts a new cycle."""
    gateway.catalogs["u1"] = [make_item("1")]
    await controller.start("u1")
    await controller.refresh()

    gateway.catalogs["u1"] = [make_item("1"), make_item("2")]
    await gateway.push(PushEvent(event="catalog_changed", owner_id="u1", item_id="2"))

    await wait_until(lambda: len(controller.state.items) == 2 and not controller.state.loading)
    assert full_fetches(gateway) == 2


@pytest.mark.asyncio
async def test_results_after_stop_discarded(controller, gateway, cache):
    """Test that responses arriving after deactivation are never published."""
    gateway.catalogs["u1"] = [make_item("1")]
    gateway.gates[Fidelity.MINIMAL] = asyncio.Event()
    gateway.gates[Fidelity.FULL] = asyncio.Event()
    states = []
    controller.subscribe(states.append)

    await controller.start("u1")
    task = controller.refresh()
    await asyncio.sleep(0.01)
    await controller.stop()

    gateway.gates[Fidelity.MINIMAL].set()
    gateway.gates[Fidelity.FULL].set()
    await task

    assert all(state.source == StateSource.EMPTY for state in states)
    assert not cache.read("u1").hit


@pytest.mark.asyncio
async def test_identity_change_discards_previous_owner(controller, gateway):
    """Test that results for a previous identity are dropped after switching."""
    gateway.catalogs["u1"] = [make_item("1")]
    gateway.catalogs["u2"] = [make_item("7"), make_item("8")]
    gateway.gates[Fidelity.FULL] = asyncio.Event()
    states = []
    controller.subscribe(states.append)

    await controller.set_identity("u1")
    first = controller.refresh()
    await asyncio.sleep(0.01)

    await controller.set_identity("u2")
    switched_at = len(states)
    second = controller.refresh()

    gateway.gates[Fidelity.FULL].set()
    await asyncio.gather(first, second)

    assert controller.state.owner_id == "u2"
    assert [item.id for item in controller.state.items] == ["7", "8"]
    assert all(state.owner_id == "u2" for state in states[switched_at - 1:])


@pytest.mark.asyncio
async def test_logout_clears_state(controller, gateway):
    """Test that clearing the identity publishes an empty catalog."""
    gateway.catalogs["u1"] = [make_item("1")]
    await controller.set_identity("u1")
    await controller.refresh()

    await controller.set_identity(None)

    assert controller.state.owner_id is None
    assert controller.state.items == []
    assert controller.active is False


@pytest.mark.asyncio
async def test_reconnect_refreshes(controller, gateway):
    """Test that restored connectivity re-fetches after an offline fallback."""
    gateway.catalogs["u1"] = [make_item("1")]
    gateway.failures[Fidelity.FULL] = NetworkUnavailable()
    gateway.failures[Fidelity.MINIMAL] = NetworkUnavailable()

    await controller.start("u1")
    await controller.refresh()
    assert controller.online is False

    gateway.failures.clear()
    controller.set_online(True)
    await controller.refresh()

    assert controller.state.source == StateSource.FULL
    assert controller.state.offline is False
    assert controller.online is True


@pytest.mark.asyncio
async def test_connectivity_lost_flags_state(controller, gateway):
    """Test that losing connectivity keeps the catalog but flags it offline."""
    gateway.catalogs["u1"] = [make_item("1")]
    await controller.start("u1")
    await controller.refresh()

    controller.set_online(False)

    assert controller.state.offline is True
    assert controller.state.source == StateSource.FULL


@pytest.mark.asyncio
async def test_refresh_requires_active_controller(controller):
    """Test that refreshing an inactive controller is an error."""
    with pytest.raises(RuntimeError):
        controller.refresh()


@pytest.mark.asyncio
async def test_mutation_failure_leaves_state_unchanged(controller, gateway):
    """Test that a rejected mutation raises and does not touch the published catalog."""
    gateway.catalogs["u1"] = [make_item("1")]
    await controller.start("u1")
    await controller.refresh()
    before = controller.state

    gateway.mutation_error = RemoteMutationRejected("1", status_code=403)
    with pytest.raises(RemoteMutationRejected):
        await controller.update_item("1", {"watchlist": True})
    with pytest.raises(RemoteMutationRejected):
        await controller.delete_item("1")

    assert controller.state is before


@pytest.mark.asyncio
async def test_mutation_without_identity(controller):
    """Test that mutations need an identity."""
    with pytest.raises(RuntimeError):
        await controller.add_item({"id": 1, "title": "X"})


@pytest.mark.asyncio
async def test_update_episode_patch(controller, gateway, clock):
    """Test the path-keyed patch for watching and unwatching an episode."""
    gateway.catalogs["u1"] = [make_item("1", season_count=2)]
    await controller.start("u1")
    await controller.refresh()

    await controller.update_episode("1", 1, 2)
    assert gateway.mutations[-1] == (
        "u1",
        "1",
        {
            "seasons/1/episodes/1/watched": True,
            "seasons/1/episodes/1/watchCount": 1,
            "seasons/1/episodes/1/firstWatchedAt": clock.now.isoformat(),
        },
    )

    await controller.update_episode("1", 0, 1, watched=False)
    assert gateway.mutations[-1][2] == {
        "seasons/0/episodes/0/watched": False,
        "seasons/0/episodes/0/watchCount": 0,
    }


@pytest.mark.asyncio
async def test_update_season(controller, gateway):
    """Test marking a whole season watched."""
    gateway.catalogs["u1"] = [make_item("1", season_count=1, episodes_per_season=3)]
    await controller.start("u1")
    await controller.refresh()

    await controller.update_season("1", 0)

    patch = gateway.mutations[-1][2]
    assert sorted(key for key in patch if key.endswith("/watched")) == [
        "seasons/0/episodes/0/watched",
        "seasons/0/episodes/1/watched",
        "seasons/0/episodes/2/watched",
    ]
    with pytest.raises(KeyError):
        await controller.update_season("1", 5)
