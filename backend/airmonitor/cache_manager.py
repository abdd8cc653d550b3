"""Local JSON cache for stations, sensors and measurement series."""
import asyncio
import copy
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from .exceptions import NotFound, StorageError
from .models import MeasurementSeries, MeasurementValue, Sensor, Station


logger = logging.getLogger(__name__)

STATIONS = "stations"
SENSORS = "sensors"
MEASUREMENTS = "measurements"
COLLECTIONS = (STATIONS, SENSORS, MEASUREMENTS)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _now_iso() -> str:
    # Local time with offset, e.g. "2024-01-01T12:00:00+01:00".
    return datetime.now().astimezone().isoformat(timespec="seconds")


class StorageBackend:
    """Raw persistence for one JSON array per collection."""

    def read(self, collection: str) -> List[Any]:
        """Return the stored array; raise NotFound when nothing (readable) is stored."""
        raise NotImplementedError

    def write(self, collection: str, items: List[Any]) -> None:
        """Replace the stored array; raise StorageError on failure."""
        raise NotImplementedError


class JsonFileBackend(StorageBackend):
    """One ``<collection>.json`` file per collection inside ``data_dir``."""

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)

    def path_for(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def read(self, collection: str) -> List[Any]:
        path = self.path_for(collection)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFound(f"{path.name} does not exist")
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

        try:
            data = json.loads(raw)
        except ValueError as e:
            # Truncated or half-written file: treat as empty, never crash the caller.
            logger.warning("Ignoring corrupt cache file %s: %s", path, e)
            raise NotFound(f"{path.name} is corrupt") from e

        if not isinstance(data, list):
            logger.warning("Ignoring cache file %s: top-level value is not an array", path)
            raise NotFound(f"{path.name} does not hold an array")
        return data

    def write(self, collection: str, items: List[Any]) -> None:
        path = self.path_for(collection)
        tmp_name: Optional[str] = None
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            # Write next to the target and swap it in, so readers never see a partial file.
            fd, tmp_name = tempfile.mkstemp(prefix=f".{collection}.", suffix=".tmp", dir=self.data_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(items, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug("Could not remove temporary file %s", tmp_name)


class MemoryBackend(StorageBackend):
    """In-process backend; values are copied so callers cannot mutate stored state."""

    def __init__(self, initial: Optional[Dict[str, List[Any]]] = None):
        self._data: Dict[str, List[Any]] = {}
        for collection, items in (initial or {}).items():
            self._data[collection] = copy.deepcopy(items)
        self.write_count = 0

    def read(self, collection: str) -> List[Any]:
        if collection not in self._data:
            raise NotFound(f"{collection} not stored")
        return copy.deepcopy(self._data[collection])

    def write(self, collection: str, items: List[Any]) -> None:
        # Same serialisability contract as the file backend.
        self._data[collection] = json.loads(json.dumps(items))
        self.write_count += 1


class CacheManager:
    """Manages the local JSON cache of air quality data."""

    def __init__(
        self,
        backend: Optional[StorageBackend] = None,
        *,
        data_dir: Optional[Union[str, Path]] = None,
        io_timeout: float = 5.0,
    ):
        if backend is None:
            if data_dir is None:
                raise ValueError("Either backend or data_dir is required")
            backend = JsonFileBackend(data_dir)
        self.backend = backend
        self.io_timeout = io_timeout

        # Lazy-initialized to avoid event loop issues
        self._locks: Dict[str, asyncio.Lock] = {}
        # collection -> backend call that outlived io_timeout
        self._pending: Dict[str, asyncio.Future] = {}

    def _get_lock(self, collection: str) -> asyncio.Lock:
        """Get or create the writer lock for a collection."""
        lock = self._locks.get(collection)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[collection] = lock
        return lock

    async def _run_io(self, collection: str, func, *args):
        """Run blocking backend I/O in a thread, bounded by ``io_timeout``.

        Must be called with the collection lock held. A worker that outlives
        its timeout is remembered, and the next operation on the collection
        waits for it before touching the file.
        """
        pending = self._pending.get(collection)
        if pending is not None:
            done, _ = await asyncio.wait({pending}, timeout=self.io_timeout)
            if not done:
                raise StorageError(f"Earlier {collection} I/O is still running")
            del self._pending[collection]

        future = asyncio.ensure_future(asyncio.to_thread(func, collection, *args))
        try:
            done, _ = await asyncio.wait({future}, timeout=self.io_timeout)
        except asyncio.CancelledError:
            self._remember_pending(collection, future)
            raise
        if not done:
            self._remember_pending(collection, future)
            raise StorageError(f"{collection} I/O timed out after {self.io_timeout}s")
        return future.result()

    def _remember_pending(self, collection: str, future: asyncio.Future):
        self._pending[collection] = future
        future.add_done_callback(_log_late_result)

    async def _read(self, collection: str) -> List[Any]:
        """Read a raw collection; a missing or corrupt file reads as empty."""
        try:
            return await self._run_io(collection, self.backend.read)
        except NotFound:
            return []

    async def _write(self, collection: str, items: List[Any]):
        await self._run_io(collection, self.backend.write, items)
        logger.debug("Persisted %d %s entries", len(items), collection)

    # Stations

    async def load_stations(self) -> List[Station]:
        """Load every cached station."""
        async with self._get_lock(STATIONS):
            raw = await self._read(STATIONS)
        return _decode_entries(raw, Station, STATIONS)

    async def save_stations(self, stations: Iterable[Station]):
        """Replace the stations collection wholesale."""
        items = [s.to_json() for s in stations]
        async with self._get_lock(STATIONS):
            await self._write(STATIONS, items)

    # Sensors

    async def load_sensors(self) -> List[Sensor]:
        """Load every cached sensor that is linked to a station."""
        async with self._get_lock(SENSORS):
            raw = await self._read(SENSORS)
        sensors = _decode_entries(raw, Sensor, SENSORS)
        linked = [s for s in sensors if s.station_id is not None]
        if len(linked) != len(sensors):
            logger.warning("Skipped %d cached sensors without stationId", len(sensors) - len(linked))
        return linked

    async def get_sensors_for_station(self, station_id: int) -> List[Sensor]:
        """Cached sensors for a station (empty when the station was never synced)."""
        return [s for s in await self.load_sensors() if s.station_id == station_id]

    async def upsert_sensors_for_station(self, station_id: int, sensors: Iterable[Sensor]) -> List[Sensor]:
        """Replace the station's sensor set, leaving other stations untouched.

        Returns the stored (station-tagged) sensors.
        """
        tagged: List[Sensor] = []
        seen_ids = set()
        for sensor in sensors:
            if sensor.id in seen_ids:
                continue
            seen_ids.add(sensor.id)
            tagged.append(sensor.for_station(station_id))

        async with self._get_lock(SENSORS):
            existing = await self._read(SENSORS)
            kept = []
            for entry in existing:
                if not isinstance(entry, dict):
                    continue
                if _as_int(entry.get("stationId")) == station_id:
                    continue
                # A sensor id belongs to exactly one station.
                if _as_int(entry.get("id")) in seen_ids:
                    continue
                kept.append(entry)
            kept.extend(s.to_json() for s in tagged)
            await self._write(SENSORS, kept)

        logger.info("Stored %d sensors for station %s", len(tagged), station_id)
        return tagged

    # Measurements

    async def load_measurements(self) -> List[MeasurementSeries]:
        """Load every cached measurement series."""
        async with self._get_lock(MEASUREMENTS):
            raw = await self._read(MEASUREMENTS)
        return _decode_entries(raw, MeasurementSeries, MEASUREMENTS)

    async def get_series_for_sensor(self, sensor_id: int) -> MeasurementSeries:
        """Cached series for a sensor; raises NotFound when there is none."""
        for series in await self.load_measurements():
            if series.sensor_id == sensor_id:
                return series
        raise NotFound(f"No cached measurements for sensor {sensor_id}")

    async def upsert_measurements_for_sensor(
        self,
        sensor_id: int,
        values: Iterable[MeasurementValue],
        timestamp: Optional[Union[datetime, str]] = None,
    ) -> MeasurementSeries:
        """Replace the sensor's series (values and lastUpdated), leaving other sensors untouched."""
        if timestamp is None:
            last_updated = _now_iso()
        elif isinstance(timestamp, datetime):
            last_updated = timestamp.isoformat(timespec="seconds")
        else:
            last_updated = timestamp

        series = MeasurementSeries(sensor_id=sensor_id, values=list(values), last_updated=last_updated)

        async with self._get_lock(MEASUREMENTS):
            existing = await self._read(MEASUREMENTS)
            kept = [
                entry for entry in existing
                if isinstance(entry, dict) and _as_int(entry.get("id")) != sensor_id
            ]
            kept.append(series.to_json())
            await self._write(MEASUREMENTS, kept)

        logger.info("Stored %d readings for sensor %s", len(series.values), sensor_id)
        return series

    async def stats(self) -> Dict[str, Any]:
        """Entry counts per collection, for maintenance output."""
        stations = await self.load_stations()
        sensors = await self.load_sensors()
        measurements = await self.load_measurements()
        return {
            "stations": len(stations),
            "sensors": len(sensors),
            "synced_stations": len({s.station_id for s in sensors}),
            "series": len(measurements),
            "readings": sum(len(m.values) for m in measurements),
            "null_readings": sum(1 for m in measurements for v in m.values if v.value is None),
        }


def _decode_entries(raw: List[Any], model, collection: str) -> list:
    out = []
    skipped = 0
    for entry in raw:
        try:
            out.append(model.model_validate(entry))
        except ValidationError:
            skipped += 1
    if skipped:
        logger.warning("Skipped %d malformed entries in cached %s", skipped, collection)
    return out


def _log_late_result(future: asyncio.Future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None and not isinstance(error, NotFound):
        logger.warning("Timed-out cache I/O finished with an error: %s", error)
    else:
        logger.info("Timed-out cache I/O finished late")
