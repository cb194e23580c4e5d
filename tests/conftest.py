"""Global test configuration and fixtures."""
import httpx
import pytest
from fastapi.testclient import TestClient

from binthere.main import app, install_services
from binthere.models.dto import Coordinate
from binthere.services.bin_directory import BinDirectory, CommunityBinProvider, OverpassBinProvider
from binthere.services.identity import IdentityResolver
from binthere.services.rate_limiter import RateLimiter
from binthere.services.route_resolver import RouteResolver
from binthere.services.store import InMemoryBinStore
from tests.support import (
    FakeRedis,
    auth_handler,
    directions_handler,
    overpass_element,
    overpass_handler,
)


@pytest.fixture()
def origin() -> Coordinate:
    return Coordinate(lng=13.404, lat=52.520)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def store() -> InMemoryBinStore:
    return InMemoryBinStore()


@pytest.fixture()
def client(store, fake_redis, origin):
    """Test client with every external collaborator replaced by a mock transport."""
    with TestClient(app) as test_client:
        install_services(app, store)
        app.state.rate_limiter = RateLimiter(fake_redis)
        app.state.identity = IdentityResolver(
            auth_url="https://auth.example.test",
            api_key="anon-key",
            transport=httpx.MockTransport(auth_handler),
        )
        app.state.bin_directory = BinDirectory([
            OverpassBinProvider(
                transport=httpx.MockTransport(overpass_handler([
                    overpass_element(1, origin.lat + 0.001, origin.lng, "Corner Bin"),
                    overpass_element(2, origin.lat + 0.002, origin.lng),
                ])),
                initial_backoff=0,
                rate_limited_backoff=0,
            ),
            CommunityBinProvider(store),
        ])
        app.state.route_resolver = RouteResolver(
            access_token="pk.test",
            transport=httpx.MockTransport(directions_handler()),
        )
        yield test_client
