"""Cache-first access to stations, sensors and measurements.

Goals:
- Serve what is already cached locally whenever the request allows it.
- Otherwise fetch from GIOŚ, merge into the local store, persist, then return.
- When neither source has anything, raise Unavailable (never an empty result
  that looks like "no data").

Explicit refreshes invert the order: network first, cache as the fallback.
Fetches for the same entity key are coalesced into one in-flight task, and
every fetch is bounded by a timeout whose expiry discards the result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from .cache_manager import CacheManager
from .data_fetcher import GiosDataFetcher
from .exceptions import NetworkError, NotFound, ParseError, StorageError, Unavailable
from .geo import stations_within_radius
from .models import MeasurementPoint, MeasurementSeries, Sensor, Station
from .settings import AirMonitorSettings


logger = logging.getLogger(__name__)

KIND_STATIONS = "stations"
KIND_SENSORS = "sensors"
KIND_MEASUREMENTS = "measurements"
KIND_LOCATION = "location"

T = TypeVar("T")


def _now() -> datetime:
    # Local wall-clock time with offset; matches what the cache file shows the user.
    return datetime.now().astimezone()


@dataclass(frozen=True)
class NearbyStations:
    center_lat: float
    center_lon: float
    radius_km: float
    stations: List[Station] = field(default_factory=list)


class CacheCoordinator:
    def __init__(
        self,
        *,
        cache: CacheManager,
        fetcher: GiosDataFetcher,
        settings: Optional[AirMonitorSettings] = None,
        fetch_timeout: Optional[float] = None,
        probe_timeout: Optional[float] = None,
    ):
        self.cache = cache
        self.fetcher = fetcher

        if fetch_timeout is None:
            fetch_timeout = settings.fetch_timeout_seconds if settings else 10.0
        if probe_timeout is None:
            probe_timeout = settings.probe_timeout_seconds if settings else 5.0
        self.fetch_timeout = fetch_timeout
        self.probe_timeout = probe_timeout

        # (kind, key) -> running fetch-and-store task
        self._inflight: Dict[Tuple[str, Any], asyncio.Task] = {}

        # Most recent failed cache write; data was still returned to the caller.
        self.last_storage_error: Optional[StorageError] = None

    @property
    def degraded(self) -> bool:
        return self.last_storage_error is not None

    async def _single_flight(self, kind: str, key: Any, factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``factory`` once per (kind, key); concurrent callers await the same task."""
        task_key = (kind, key)
        task = self._inflight.get(task_key)
        if task is None:
            task = asyncio.create_task(factory(), name=f"airmonitor-{kind}-{key}")
            self._inflight[task_key] = task

            def _done(t: asyncio.Task, task_key=task_key):
                if self._inflight.get(task_key) is t:
                    del self._inflight[task_key]
                # Mark the exception retrieved even if every waiter was cancelled.
                if not t.cancelled():
                    t.exception()

            task.add_done_callback(_done)
        else:
            logger.debug("Joining in-flight %s fetch for %s", kind, key)

        # A cancelled caller must not cancel the fetch other callers are waiting on.
        return await asyncio.shield(task)

    async def _fetch(self, kind: str, key: Any, fetch: Awaitable[T]) -> T:
        """Await an upstream call bounded by the fetch timeout."""
        try:
            return await asyncio.wait_for(fetch, timeout=self.fetch_timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Fetching {kind} for {key} timed out after {self.fetch_timeout}s") from e

    def _storage_failed(self, what: str, error: StorageError):
        self.last_storage_error = error
        logger.error("Could not persist %s, continuing without cache: %s", what, error)

    def _storage_ok(self):
        self.last_storage_error = None

    # Stations

    async def _sync_stations(self) -> List[Station]:
        stations = await self._fetch(KIND_STATIONS, "all", self.fetcher.fetch_all_stations())
        if not stations:
            # An empty list would wipe a good cache.
            raise ParseError("GIOŚ returned an empty station list")
        try:
            await self.cache.save_stations(stations)
        except StorageError as e:
            self._storage_failed("stations", e)
        else:
            self._storage_ok()
        logger.info("Fetched %d stations from GIOŚ", len(stations))
        return stations

    async def _cached_stations(self) -> List[Station]:
        try:
            return await self.cache.load_stations()
        except StorageError as e:
            logger.warning("Station cache unreadable: %s", e)
            return []

    async def get_stations(self) -> List[Station]:
        """Cached stations when present, otherwise fetched ones."""
        cached = await self._cached_stations()
        if cached:
            return cached

        try:
            return await self._single_flight(KIND_STATIONS, "all", self._sync_stations)
        except (NetworkError, ParseError) as e:
            logger.warning("Station fetch failed and nothing is cached: %s", e)
            raise Unavailable(KIND_STATIONS) from e

    async def refresh_stations(self) -> List[Station]:
        """Fetched stations, falling back to the cached list."""
        try:
            return await self._single_flight(KIND_STATIONS, "all", self._sync_stations)
        except (NetworkError, ParseError) as e:
            logger.warning("Station refresh failed, using cache: %s", e)
            error: Exception = e

        cached = await self._cached_stations()
        if cached:
            return cached
        raise Unavailable(KIND_STATIONS) from error

    # Sensors

    async def _sync_sensors(self, station_id: int) -> List[Sensor]:
        sensors = await self._fetch(KIND_SENSORS, station_id, self.fetcher.fetch_station_sensors(station_id))
        if not sensors:
            logger.info("GIOŚ lists no sensors for station %s", station_id)
            return []
        try:
            stored = await self.cache.upsert_sensors_for_station(station_id, sensors)
        except StorageError as e:
            self._storage_failed(f"sensors of station {station_id}", e)
            return [s.for_station(station_id) for s in sensors]
        self._storage_ok()
        return stored

    async def _cached_sensors(self, station_id: int) -> List[Sensor]:
        try:
            return await self.cache.get_sensors_for_station(station_id)
        except StorageError as e:
            logger.warning("Sensor cache unreadable: %s", e)
            return []

    async def get_sensors(self, station_id: int) -> List[Sensor]:
        """Sensors of a station, cache first.

        Any cached sensor for the station counts as "already synced", so no
        network call is made even if the upstream set has grown since.
        """
        cached = await self._cached_sensors(station_id)
        if cached:
            logger.debug("Sensors for station %s served from cache", station_id)
            return cached

        try:
            fetched = await self._single_flight(
                KIND_SENSORS, station_id, lambda: self._sync_sensors(station_id)
            )
        except (NetworkError, ParseError) as e:
            logger.warning("Sensors for station %s unavailable: %s", station_id, e)
            raise Unavailable(KIND_SENSORS, station_id) from e

        if not fetched:
            raise Unavailable(KIND_SENSORS, station_id, f"Station {station_id} reports no sensors")
        return fetched

    async def refresh_sensors(self, station_id: int) -> List[Sensor]:
        """Sensors of a station, network first, cache as the fallback."""
        error: Optional[Exception] = None
        try:
            fetched = await self._single_flight(
                KIND_SENSORS, station_id, lambda: self._sync_sensors(station_id)
            )
        except (NetworkError, ParseError) as e:
            logger.warning("Sensor refresh for station %s failed, using cache: %s", station_id, e)
            error = e
        else:
            if fetched:
                return fetched

        cached = await self._cached_sensors(station_id)
        if cached:
            return cached
        raise Unavailable(KIND_SENSORS, station_id) from error

    # Measurements

    async def _sync_measurements(self, sensor_id: int) -> MeasurementSeries:
        values = await self._fetch(KIND_MEASUREMENTS, sensor_id, self.fetcher.fetch_sensor_data(sensor_id))
        if not any(v.value is not None for v in values):
            raise ParseError(f"GIOŚ returned no readings for sensor {sensor_id}")

        stamp = _now()
        try:
            series = await self.cache.upsert_measurements_for_sensor(sensor_id, values, stamp)
        except StorageError as e:
            self._storage_failed(f"measurements of sensor {sensor_id}", e)
            return MeasurementSeries(
                sensor_id=sensor_id,
                values=values,
                last_updated=stamp.isoformat(timespec="seconds"),
            )
        self._storage_ok()
        return series

    async def _cached_series(self, sensor_id: int) -> Optional[MeasurementSeries]:
        try:
            series = await self.cache.get_series_for_sensor(sensor_id)
        except NotFound:
            return None
        except StorageError as e:
            logger.warning("Measurement cache unreadable: %s", e)
            return None
        return series if series.values else None

    async def get_series(self, sensor_id: int) -> MeasurementSeries:
        """Series for a sensor (with its lastUpdated stamp), cache first."""
        cached = await self._cached_series(sensor_id)
        if cached is not None:
            logger.debug("Measurements for sensor %s served from cache (%s)", sensor_id, cached.last_updated)
            return cached

        try:
            return await self._single_flight(
                KIND_MEASUREMENTS, sensor_id, lambda: self._sync_measurements(sensor_id)
            )
        except (NetworkError, ParseError) as e:
            logger.warning("Measurements for sensor %s unavailable: %s", sensor_id, e)
            raise Unavailable(KIND_MEASUREMENTS, sensor_id) from e

    async def refresh_series(self, sensor_id: int) -> MeasurementSeries:
        """Series for a sensor, network first, cache as the fallback."""
        try:
            return await self._single_flight(
                KIND_MEASUREMENTS, sensor_id, lambda: self._sync_measurements(sensor_id)
            )
        except (NetworkError, ParseError) as e:
            logger.warning("Measurement refresh for sensor %s failed, using cache: %s", sensor_id, e)
            error: Exception = e

        cached = await self._cached_series(sensor_id)
        if cached is not None:
            return cached
        raise Unavailable(KIND_MEASUREMENTS, sensor_id) from error

    async def get_measurements(self, sensor_id: int) -> List[MeasurementPoint]:
        return (await self.get_series(sensor_id)).points()

    async def refresh_measurements(self, sensor_id: int) -> List[MeasurementPoint]:
        return (await self.refresh_series(sensor_id)).points()

    # Nearby search

    async def find_stations_near(self, lat: float, lon: float, radius_km: float) -> NearbyStations:
        stations = await self.get_stations()
        return NearbyStations(
            center_lat=lat,
            center_lon=lon,
            radius_km=radius_km,
            stations=stations_within_radius(stations, lat, lon, radius_km),
        )

    async def find_stations_near_address(self, address: str, radius_km: float) -> NearbyStations:
        """Geocode ``address`` (first match) and select stations around it."""
        try:
            location = await self._fetch(KIND_LOCATION, address, self.fetcher.geocode(address))
        except (NetworkError, ParseError) as e:
            logger.warning("Geocoding %r failed: %s", address, e)
            raise Unavailable(KIND_LOCATION, address) from e

        if location is None:
            raise Unavailable(KIND_LOCATION, address, f"Address not found: {address}")

        lat, lon = location
        logger.info("Address %r resolved to %.5f, %.5f", address, lat, lon)
        return await self.find_stations_near(lat, lon, radius_km)

    async def is_online(self) -> bool:
        try:
            return await asyncio.wait_for(
                self.fetcher.is_available(timeout=self.probe_timeout),
                timeout=self.probe_timeout + 1,
            )
        except asyncio.TimeoutError:
            return False
