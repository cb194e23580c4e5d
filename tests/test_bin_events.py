from datetime import timedelta, timezone
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from binthere.core.errors import InvalidInputError, PersistenceError
from binthere.models.dto import Bin, BinEventRequest, Coordinate, Route, UserProfileStats
from binthere.services.bin_events import BinEventService, next_streak
from binthere.services.store import InMemoryBinStore
from tests.support import Clock, utc

BIN = Bin(id=1, coordinates=Coordinate(lng=13.4040001, lat=52.5200004), name="Station Bin")


# --- streak arithmetic ---

def test_first_bin_starts_streak():
    assert next_streak(0, None, utc(2024, 5, 2, 9, 0)) == 1


def test_next_calendar_day_within_48h_extends():
    # 23 hours later but across midnight
    assert next_streak(3, utc(2024, 5, 1, 10, 0), utc(2024, 5, 2, 9, 0)) == 4


def test_same_calendar_day_is_unchanged():
    assert next_streak(4, utc(2024, 5, 2, 9, 0), utc(2024, 5, 2, 15, 0)) == 4


def test_gap_over_48h_restarts():
    assert next_streak(4, utc(2024, 5, 2, 15, 0), utc(2024, 5, 5, 15, 0)) == 1


def test_two_calendar_days_but_under_48h_extends():
    assert next_streak(2, utc(2024, 5, 1, 23, 0), utc(2024, 5, 3, 1, 0)) == 3


def test_calendar_day_uses_configured_timezone():
    last = utc(2024, 5, 1, 22, 30)
    now = last + timedelta(hours=2)
    # different UTC days, same day in Los Angeles
    assert next_streak(2, last, now, timezone.utc) == 3
    assert next_streak(2, last, now, ZoneInfo("America/Los_Angeles")) == 2


# --- completion workflow ---

@pytest.fixture()
def clock() -> Clock:
    return Clock(utc(2024, 5, 2, 9, 0))


@pytest.fixture()
def service(store, clock) -> BinEventService:
    return BinEventService(store, clock=clock)


@pytest.mark.asyncio()
async def test_first_completion_for_new_user(service, store):
    route = Route(geometry=[], distance_meters=420, duration_seconds=330)

    result = await service.complete("user-1", BIN, route, Coordinate(lng=13.404, lat=52.52))

    assert (result.total_bins, result.streak_days) == (1, 1)
    assert len(store.bin_events) == 1
    event = store.bin_events[0]
    assert event.user_id == "user-1"
    assert event.route_distance == 420
    assert event.arrival_lat == 52.52
    profile = store.profiles["user-1"]
    assert profile.last_binned_at == utc(2024, 5, 2, 9, 0)
    assert profile.created_at is not None


@pytest.mark.asyncio()
async def test_streak_scenario_across_days(service, store, clock):
    store.profiles["user-1"] = UserProfileStats(
        total_bins=5, streak_days=3, last_binned_at=utc(2024, 5, 1, 10, 0),
    )

    result = await service.complete("user-1", BIN)
    assert (result.total_bins, result.streak_days) == (6, 4)

    clock.now = utc(2024, 5, 2, 15, 0)
    result = await service.complete("user-1", BIN)
    assert (result.total_bins, result.streak_days) == (7, 4)

    clock.now = utc(2024, 5, 5, 15, 0)
    result = await service.complete("user-1", BIN)
    assert (result.total_bins, result.streak_days) == (8, 1)


@pytest.mark.asyncio()
async def test_anonymous_completion_counts_usage_only(service, store):
    result = await service.complete(None, BIN)

    assert (result.total_bins, result.streak_days) == (0, 0)
    assert store.bin_events[0].user_id is None
    assert store.profiles == {}
    assert store.usage[(52.52, 13.404)].usage_count == 1


@pytest.mark.asyncio()
async def test_usage_aggregate_upserts_on_rounded_key(service, store):
    await service.complete(None, BIN)
    nudged = Bin(id=2, coordinates=Coordinate(lng=13.4040002, lat=52.5200001), name="Renamed Bin")
    await service.complete("user-1", nudged)

    assert len(store.usage) == 1
    row = store.usage[(52.52, 13.404)]
    assert row.usage_count == 2
    assert row.bin_name == "Renamed Bin"


@pytest.mark.asyncio()
async def test_invalid_input_persists_nothing(service, store):
    blank = Bin(id=3, coordinates=Coordinate(lng=0, lat=0), name="   ")
    with pytest.raises(InvalidInputError):
        await service.complete("user-1", blank)

    long_name = Bin(id=4, coordinates=Coordinate(lng=0, lat=0), name="b" * 201)
    with pytest.raises(InvalidInputError):
        await service.complete("user-1", long_name)

    assert store.bin_events == []
    assert store.usage == {}


def test_request_rejects_negative_route_metrics():
    with pytest.raises(ValueError):
        BinEventRequest(bin_lat=1, bin_lng=1, bin_name="Bin", route_distance=-1)
    with pytest.raises(ValueError):
        BinEventRequest(bin_lat=91, bin_lng=1, bin_name="Bin")


@pytest.mark.asyncio()
async def test_event_write_failure_aborts(clock):
    store = InMemoryBinStore()
    store.insert_bin_event = AsyncMock(side_effect=RuntimeError("db down"))
    service = BinEventService(store, clock=clock)

    with pytest.raises(PersistenceError):
        await service.complete("user-1", BIN)
    assert store.usage == {}
    assert store.profiles == {}


@pytest.mark.asyncio()
async def test_secondary_failures_do_not_fail_completion(clock):
    store = InMemoryBinStore()
    store.increment_bin_usage = AsyncMock(side_effect=RuntimeError("aggregate down"))
    store.update_profile = AsyncMock(side_effect=RuntimeError("profiles down"))
    service = BinEventService(store, clock=clock)

    result = await service.complete("user-1", BIN)

    assert len(store.bin_events) == 1
    assert (result.total_bins, result.streak_days) == (0, 0)
