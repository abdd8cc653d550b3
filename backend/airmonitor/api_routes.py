"""Local HTTP API consumed by the map, list and chart front end."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from dateutil import tz
from fastapi import APIRouter, HTTPException, Query, Request

from .cache_coordinator import CacheCoordinator, NearbyStations
from .data_processor import DataProcessor
from .models import MeasurementSeries, Sensor, Station

router = APIRouter(prefix="/api")
processor = DataProcessor()

# GIOŚ reading dates are Polish wall-clock time without an offset.
GIOS_TZ = tz.gettz("Europe/Warsaw")


def get_coordinator(request: Request) -> CacheCoordinator:
    return request.app.state.coordinator


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    # Naive bounds are already GIOŚ local time.
    if value is not None and value.tzinfo is not None:
        return value.astimezone(GIOS_TZ).replace(tzinfo=None)
    return value


def _station_payload(station: Station) -> Dict[str, Any]:
    return {
        "id": station.id,
        "name": station.name,
        "latitude": station.latitude,
        "longitude": station.longitude,
    }


def _sensor_payload(sensor: Sensor) -> Dict[str, Any]:
    return {
        "id": sensor.id,
        "station_id": sensor.station_id,
        "name": sensor.param_name,
        "code": sensor.param_code,
        "display_name": sensor.display_name,
    }


def _nearby_payload(result: NearbyStations) -> Dict[str, Any]:
    return {
        "center": {"lat": result.center_lat, "lon": result.center_lon},
        "radius_km": result.radius_km,
        "stations": [_station_payload(s) for s in result.stations],
        "markers": processor.station_markers(result.stations),
    }


def _series_payload(
    series: MeasurementSeries,
    start: Optional[datetime],
    end: Optional[datetime],
) -> Dict[str, Any]:
    points = processor.select_range(series.points(), _naive(start), _naive(end))
    return {
        "sensor_id": series.sensor_id,
        "last_updated": series.last_updated,
        "values": [{"date": v.date, "value": v.value} for v in series.values],
        "rows": processor.order_for_display(points),
        "statistics": processor.compute_statistics(points).to_dict(),
    }


@router.get("/stations")
async def get_stations(
    request: Request,
    name: Optional[str] = Query(None, description="Case-insensitive name filter"),
):
    """Get all stations, optionally filtered by name."""
    stations = await get_coordinator(request).get_stations()
    selected = processor.filter_stations_by_name(stations, name)
    return {"count": len(selected), "stations": [_station_payload(s) for s in selected]}


@router.post("/stations/refresh")
async def refresh_stations(request: Request):
    """Re-download the station list (falls back to the cached one)."""
    stations = await get_coordinator(request).refresh_stations()
    return {"count": len(stations), "stations": [_station_payload(s) for s in stations]}


@router.get("/stations/nearby")
async def get_nearby_stations(
    request: Request,
    radius_km: float = Query(..., ge=0, description="Search radius in kilometres"),
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lon: Optional[float] = Query(None, ge=-180, le=180),
    address: Optional[str] = Query(None, description="Free-text address to geocode"),
):
    """Stations within a radius of a point or of a geocoded address."""
    coordinator = get_coordinator(request)

    if lat is not None and lon is not None:
        result = await coordinator.find_stations_near(lat, lon, radius_km)
    elif address and address.strip():
        result = await coordinator.find_stations_near_address(address.strip(), radius_km)
    else:
        raise HTTPException(status_code=400, detail="Provide lat and lon, or an address")

    return _nearby_payload(result)


@router.get("/stations/{station_id}/sensors")
async def get_station_sensors(
    request: Request,
    station_id: int,
    refresh: bool = Query(False, description="Ask GIOŚ first instead of the local cache"),
):
    """Sensors of a station."""
    coordinator = get_coordinator(request)
    if refresh:
        sensors: List[Sensor] = await coordinator.refresh_sensors(station_id)
    else:
        sensors = await coordinator.get_sensors(station_id)
    return {"station_id": station_id, "sensors": [_sensor_payload(s) for s in sensors]}


@router.get("/sensors/{sensor_id}/measurements")
async def get_sensor_measurements(
    request: Request,
    sensor_id: int,
    refresh: bool = Query(False, description="Ask GIOŚ first instead of the local cache"),
    start: Optional[datetime] = Query(None, description="Chart range start"),
    end: Optional[datetime] = Query(None, description="Chart range end"),
):
    """Readings of a sensor with statistics over the selected range."""
    coordinator = get_coordinator(request)
    if refresh:
        series = await coordinator.refresh_series(sensor_id)
    else:
        series = await coordinator.get_series(sensor_id)
    return _series_payload(series, start, end)
