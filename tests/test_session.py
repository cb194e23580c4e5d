import asyncio
from typing import List

import httpx
import pytest

from binthere.core.errors import InvalidInputError, NoBinsNearby, RouteNotFound, WaitingForLocation
from binthere.models.dto import Bin, BinSource, Coordinate
from binthere.services.activity_tracker import ActivityReporter, ActivityService
from binthere.services.bin_directory import BinDirectory
from binthere.services.bin_events import BinEventService
from binthere.services.route_resolver import RouteResolver
from binthere.services.session import BinFinderSession, Debouncer
from tests.support import Clock, USER_ID, directions_handler, make_bins, north_of, utc


class StubProvider:
    """Bin provider returning canned bins and remembering every query."""

    source = BinSource.LIVE

    def __init__(self, bins: List[Bin]):
        self.bins = bins
        self.calls = []
        self.gates: List[asyncio.Event] = []

    async def fetch(self, center: Coordinate, radius_m: float) -> List[Bin]:
        self.calls.append((center, radius_m))
        if self.gates:
            await self.gates.pop(0).wait()
        return list(self.bins)


class GatedResolver:
    """Route resolver whose answers are released by the test."""

    def __init__(self, inner: RouteResolver):
        self.inner = inner
        self.gates: List[asyncio.Event] = []

    async def walking_route(self, start, end):
        gate = asyncio.Event()
        self.gates.append(gate)
        await gate.wait()
        return await self.inner.walking_route(start, end)


def mock_resolver(handler=None) -> RouteResolver:
    return RouteResolver(access_token="pk.test", transport=httpx.MockTransport(handler or directions_handler()))


@pytest.fixture()
def provider(origin) -> StubProvider:
    return StubProvider(make_bins(origin, [300, 80, 650]))


@pytest.fixture()
def completion(store) -> BinEventService:
    return BinEventService(store, clock=Clock(utc(2024, 5, 2, 9, 0)))


@pytest.fixture()
def session(provider, completion, store) -> BinFinderSession:
    reporter = ActivityReporter(ActivityService(store), user_id=USER_ID)
    return BinFinderSession(
        BinDirectory([provider]),
        mock_resolver(),
        completion,
        reporter=reporter,
        user_id=USER_ID,
        debounce_seconds=0.01,
    )


@pytest.mark.asyncio()
async def test_find_walk_bin_scenario(session, store, origin):
    arrivals = []
    session.on_arrived = lambda b, d: arrivals.append(b.id)
    session.locate(origin)

    result = await session.search(radius_m=1000)
    assert result.source == BinSource.LIVE
    assert len(session.bins) == 3

    route = await session.route_to_nearest()
    assert route is not None
    assert session.selected_bin.id == 1
    assert session.route_info == (420, 330)
    assert session.has_active_route
    assert session.distance_to_target == pytest.approx(80, abs=0.1)

    session.locate(north_of(origin, 60))
    assert session.has_arrived
    assert arrivals == [1]

    completed = await session.mark_binned()
    assert (completed.total_bins, completed.streak_days) == (1, 1)
    assert not session.has_active_route
    assert not session.has_arrived
    assert session.route_info is None

    await session.close()
    assert len(store.bin_events) == 1
    assert store.bin_events[0].route_distance == 420
    kinds = [a.activity_type.value for a in store.activities]
    assert kinds == ["location_enabled", "bin_searched", "bin_found", "route_calculated", "bin_marked"]


@pytest.mark.asyncio()
async def test_search_waits_for_location(session):
    with pytest.raises(WaitingForLocation):
        await session.search()
    with pytest.raises(WaitingForLocation):
        await session.route_to_nearest()


@pytest.mark.asyncio()
async def test_search_radius_follows_zoom(session, provider, origin):
    session.locate(origin)

    await session.search(zoom=18)
    await session.search(zoom=12)

    assert [radius for _, radius in provider.calls] == [500, 5000]


@pytest.mark.asyncio()
async def test_route_to_nearest_needs_bins(origin, completion):
    session = BinFinderSession(BinDirectory([StubProvider([])]), mock_resolver(), completion)
    session.locate(origin)
    await session.search()

    with pytest.raises(NoBinsNearby):
        await session.route_to_nearest()


@pytest.mark.asyncio()
async def test_mark_binned_without_selection(session):
    with pytest.raises(InvalidInputError):
        await session.mark_binned()


@pytest.mark.asyncio()
async def test_no_route_leaves_state_unchanged(provider, completion, origin):
    def no_route(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": "NoRoute", "routes": []})

    session = BinFinderSession(BinDirectory([provider]), mock_resolver(no_route), completion)
    session.locate(origin)
    await session.search()

    with pytest.raises(RouteNotFound):
        await session.route_to_nearest()
    assert not session.has_active_route
    assert session.selected_bin is None


@pytest.mark.asyncio()
async def test_stale_search_response_is_discarded(provider, completion, origin):
    session = BinFinderSession(BinDirectory([provider]), mock_resolver(), completion)
    session.locate(origin)
    slow, fast = asyncio.Event(), asyncio.Event()
    provider.gates = [slow, fast]

    first = asyncio.create_task(session.search(radius_m=1000))
    await asyncio.sleep(0)
    provider.bins = provider.bins[:1]
    second = asyncio.create_task(session.search(radius_m=2000))
    await asyncio.sleep(0)

    fast.set()
    await second
    provider.bins = []
    slow.set()
    await first

    assert len(session.bins) == 1


@pytest.mark.asyncio()
async def test_newer_route_request_wins(provider, completion, origin):
    resolver = GatedResolver(mock_resolver())
    session = BinFinderSession(BinDirectory([provider]), resolver, completion)
    session.locate(origin)
    await session.search()
    near, far = session.bins[1], session.bins[2]

    first = asyncio.create_task(session.route_to(far))
    await asyncio.sleep(0)
    second = asyncio.create_task(session.route_to(near))
    await asyncio.sleep(0)

    resolver.gates[1].set()
    assert await second is not None
    resolver.gates[0].set()
    assert await first is None

    assert session.selected_bin.id == near.id


@pytest.mark.asyncio()
async def test_cancel_discards_in_flight_route(provider, completion, origin):
    resolver = GatedResolver(mock_resolver())
    session = BinFinderSession(BinDirectory([provider]), resolver, completion)
    session.locate(origin)
    await session.search()

    pending = asyncio.create_task(session.route_to(session.bins[0]))
    await asyncio.sleep(0)
    session.cancel_route()
    resolver.gates[0].set()

    assert await pending is None
    assert not session.has_active_route


@pytest.mark.asyncio()
async def test_map_moves_are_debounced(session, provider, origin):
    session.locate(origin)

    for meters in (100, 200, 300):
        assert session.on_map_moved(north_of(origin, meters), zoom=16)
        await asyncio.sleep(0)
    await asyncio.sleep(0.05)

    assert len(provider.calls) == 1
    center, radius = provider.calls[0]
    assert center == north_of(origin, 300)
    assert radius == 1000
    await session.close()


@pytest.mark.asyncio()
async def test_map_moves_ignored_while_routing_or_programmatic(session, provider, origin):
    session.locate(origin)
    await session.search()
    await session.route_to(session.bins[0])
    provider.calls.clear()

    assert not session.on_map_moved(north_of(origin, 500), zoom=15)
    session.cancel_route()
    assert not session.on_map_moved(north_of(origin, 500), zoom=15, user_originated=False)
    await asyncio.sleep(0.05)

    assert provider.calls == []
    await session.close()


@pytest.mark.asyncio()
async def test_debouncer_runs_last_trigger_only():
    seen = []

    async def action(value):
        seen.append(value)

    debouncer = Debouncer(0.01, action)
    debouncer.trigger(1)
    debouncer.trigger(2)
    assert debouncer.pending
    await asyncio.sleep(0.05)

    assert seen == [2]
    assert not debouncer.pending


@pytest.mark.asyncio()
async def test_close_stops_location_watch(session, origin):
    started = asyncio.Event()

    async def stream():
        yield origin
        started.set()
        await asyncio.Event().wait()

    async with session:
        watch = session.watch(stream)
        await asyncio.wait_for(started.wait(), timeout=1)
        assert session.user_location == origin

    assert not watch.active


@pytest.mark.asyncio()
async def test_close_cancels_running_map_search(session, provider, store, origin):
    session.locate(origin)
    gate = asyncio.Event()
    provider.gates = [gate]

    session.on_map_moved(north_of(origin, 100), zoom=16)
    for _ in range(50):
        if provider.calls:
            break
        await asyncio.sleep(0.01)
    assert provider.calls

    await session.close()
    gate.set()
    await asyncio.sleep(0.02)

    assert session.bins == []
    assert [a.activity_type.value for a in store.activities] == ["location_enabled"]


@pytest.mark.asyncio()
async def test_debouncer_shutdown_cancels_running_action():
    started, release = asyncio.Event(), asyncio.Event()
    finished = []

    async def action():
        started.set()
        await release.wait()
        finished.append(True)

    debouncer = Debouncer(0, action)
    debouncer.trigger()
    await asyncio.wait_for(started.wait(), timeout=1)

    await debouncer.shutdown()
    release.set()
    await asyncio.sleep(0)

    assert finished == []
