"""
Tests for the local HTTP API.
"""

import httpx
import pytest

from airmonitor.cache_coordinator import CacheCoordinator
from airmonitor.cache_manager import CacheManager, MemoryBackend
from airmonitor.exceptions import StorageError
from airmonitor.main import create_app
from airmonitor.settings import load_settings
from conftest import GEOCODE_PATH, STATIONS_PATH, data_path, sensor_json, sensors_path


STATIONS = [
    {"id": 1, "stationName": "Poznań, ul. Polanka", "gegrLat": "52.4064", "gegrLon": "16.9252"},
    {"id": 2, "stationName": "Warszawa-Marszałkowska", "gegrLat": "52.2297", "gegrLon": "21.0122"},
]


class BrokenBackend(MemoryBackend):
    def read(self, collection):
        raise StorageError("permission denied")

    def write(self, collection, items):
        raise StorageError("permission denied")


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend({"stations": STATIONS})


@pytest.fixture
def app(backend, fetcher, tmp_path):
    coordinator = CacheCoordinator(cache=CacheManager(backend), fetcher=fetcher, fetch_timeout=5.0)
    return create_app(load_settings(data_dir=tmp_path), coordinator, warm_cache=False)


@pytest.mark.asyncio
async def test_health(app, fake_gios):
    fake_gios.routes[STATIONS_PATH] = STATIONS

    async with _client(app) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": "airmonitor",
        "upstream": "online",
        "cache_error": None,
    }


@pytest.mark.asyncio
async def test_health_reports_offline_upstream(app, fake_gios):
    fake_gios.offline = True

    async with _client(app) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["upstream"] == "offline"


@pytest.mark.asyncio
async def test_stations_filtered_by_name(app):
    async with _client(app) as client:
        response = await client.get("/api/stations", params={"name": "poznan"})

    data = response.json()
    assert response.status_code == 200
    assert data["count"] == 1
    assert data["stations"][0] == {"id": 1, "name": "Poznań, ul. Polanka", "latitude": 52.4064, "longitude": 16.9252}


@pytest.mark.asyncio
async def test_offline_sensors_are_service_unavailable(app, fake_gios):
    fake_gios.offline = True

    async with _client(app) as client:
        response = await client.get("/api/stations/99/sensors")

    data = response.json()
    assert response.status_code == 503
    assert data["kind"] == "sensors"
    assert data["key"] == 99
    assert data["retry"] is True


@pytest.mark.asyncio
async def test_sensors_are_fetched_once(app, fake_gios):
    fake_gios.routes[sensors_path(1)] = [sensor_json(10), sensor_json(11, "NO2")]

    async with _client(app) as client:
        first = await client.get("/api/stations/1/sensors")
        second = await client.get("/api/stations/1/sensors")

    assert first.json() == second.json()
    assert [s["code"] for s in first.json()["sensors"]] == ["PM10", "NO2"]
    assert first.json()["sensors"][0]["display_name"] == "pył zawieszony PM10 (PM10)"
    assert fake_gios.calls_to(sensors_path(1)) == 1


@pytest.mark.asyncio
async def test_measurements_keep_nulls_and_report_statistics(app, fake_gios):
    fake_gios.routes[data_path(10)] = {
        "key": "PM10",
        "values": [
            {"date": "2024-01-01 02:00:00", "value": 60.0},
            {"date": "2024-01-01 01:00:00", "value": None},
            {"date": "2024-01-01 00:00:00", "value": 20.0},
        ],
    }

    async with _client(app) as client:
        response = await client.get("/api/sensors/10/measurements")

    data = response.json()
    assert response.status_code == 200
    assert data["sensor_id"] == 10
    assert data["last_updated"]
    assert [v["value"] for v in data["values"]] == [60.0, None, 20.0]
    assert data["rows"][-1] == {"date": "2024-01-01 01:00:00", "value": None, "level": "missing"}
    assert data["statistics"]["avg"] == 40.0
    assert data["statistics"]["trend"] == "rising"
    assert data["statistics"]["null_count"] == 1


@pytest.mark.asyncio
async def test_measurement_range(app, fake_gios):
    fake_gios.routes[data_path(10)] = {
        "values": [
            {"date": "2024-01-01 02:00:00", "value": 60.0},
            {"date": "2024-01-01 00:00:00", "value": 20.0},
        ],
    }

    async with _client(app) as client:
        response = await client.get(
            "/api/sensors/10/measurements",
            params={"start": "2024-01-01T01:00:00", "end": "2024-01-01T03:00:00"},
        )

    data = response.json()
    assert len(data["values"]) == 2
    assert [r["value"] for r in data["rows"]] == [60.0]
    assert data["statistics"]["count"] == 1


@pytest.mark.asyncio
async def test_nearby_by_point(app):
    async with _client(app) as client:
        response = await client.get("/api/stations/nearby", params={"lat": 52.41, "lon": 16.93, "radius_km": 10})

    data = response.json()
    assert [s["id"] for s in data["stations"]] == [1]
    assert data["markers"][0]["label"] == "Poznań, ul. Polanka"


@pytest.mark.asyncio
async def test_nearby_by_address(app, fake_gios):
    fake_gios.routes[GEOCODE_PATH] = [{"lat": "52.23", "lon": "21.01"}]

    async with _client(app) as client:
        response = await client.get("/api/stations/nearby", params={"address": "Warszawa", "radius_km": 5})

    data = response.json()
    assert data["center"] == {"lat": 52.23, "lon": 21.01}
    assert [s["id"] for s in data["stations"]] == [2]


@pytest.mark.asyncio
async def test_nearby_requires_a_location(app):
    async with _client(app) as client:
        response = await client.get("/api/stations/nearby", params={"radius_km": 5})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_storage_failure_degrades_health(fetcher, fake_gios, tmp_path):
    coordinator = CacheCoordinator(cache=CacheManager(BrokenBackend()), fetcher=fetcher, fetch_timeout=5.0)
    app = create_app(load_settings(data_dir=tmp_path), coordinator, warm_cache=False)
    fake_gios.routes[sensors_path(1)] = [sensor_json(10)]

    async with _client(app) as client:
        sensors = await client.get("/api/stations/1/sensors")
        health = await client.get("/health")

    assert sensors.status_code == 200
    assert health.json()["status"] == "degraded"
    assert "permission denied" in health.json()["cache_error"]


@pytest.mark.asyncio
async def test_zoned_range_bounds_are_converted_to_polish_time(app, fake_gios):
    fake_gios.routes[data_path(10)] = {
        "values": [
            {"date": "2024-01-01 02:00:00", "value": 60.0},
            {"date": "2024-01-01 01:00:00", "value": 40.0},
            {"date": "2024-01-01 00:00:00", "value": 20.0},
        ],
    }

    # 00:30 UTC is 01:30 in Warsaw in winter.
    async with _client(app) as client:
        response = await client.get("/api/sensors/10/measurements", params={"start": "2024-01-01T00:30:00Z"})

    assert [r["value"] for r in response.json()["rows"]] == [60.0]
