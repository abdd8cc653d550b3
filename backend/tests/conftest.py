"""
Pytest configuration and fixtures for airmonitor tests.
"""

from typing import Any, Callable, Dict, List, Union

import httpx
import pytest

from airmonitor.cache_coordinator import CacheCoordinator
from airmonitor.cache_manager import CacheManager, MemoryBackend
from airmonitor.data_fetcher import GiosDataFetcher


API_BASE_URL = "http://gios.test/rest"
GEOCODE_URL = "http://geocode.test/search"

STATIONS_PATH = "/rest/station/findAll"
GEOCODE_PATH = "/search"


def sensors_path(station_id: int) -> str:
    return f"/rest/station/sensors/{station_id}"


def data_path(sensor_id: int) -> str:
    return f"/rest/data/getData/{sensor_id}"


def sensor_json(sensor_id: int, code: str = "PM10", station_id: Union[int, None] = None) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "id": sensor_id,
        "param": {"paramName": f"pył zawieszony {code}", "paramFormula": code, "paramCode": code, "idParam": 3},
    }
    if station_id is not None:
        entry["stationId"] = station_id
    return entry


Route = Union[Any, httpx.Response, Callable[[httpx.Request], Any]]


class FakeGios:
    """Canned upstream responses keyed by URL path, with a call log."""

    def __init__(self):
        self.routes: Dict[str, Route] = {}
        self.calls: List[str] = []
        self.offline = False

    def calls_to(self, path: str) -> int:
        return sum(1 for p in self.calls if p == path)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        if self.offline:
            raise httpx.ConnectError("network unreachable", request=request)

        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(route):
            route = route(request)
            if hasattr(route, "__await__"):
                route = await route
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_gios() -> FakeGios:
    return FakeGios()


@pytest.fixture
def fetcher(fake_gios) -> GiosDataFetcher:
    return GiosDataFetcher(
        base_url=API_BASE_URL,
        geocode_url=GEOCODE_URL,
        timeout=5.0,
        max_retries=1,
        retry_delay=0.0,
        transport=fake_gios.transport(),
    )


@pytest.fixture
def memory_backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def cache(memory_backend) -> CacheManager:
    return CacheManager(memory_backend, io_timeout=5.0)


@pytest.fixture
def coordinator(cache, fetcher) -> CacheCoordinator:
    return CacheCoordinator(cache=cache, fetcher=fetcher, fetch_timeout=5.0, probe_timeout=1.0)
