"""Great-circle distance and radius filtering for monitoring stations."""
import math
from typing import Any, Iterable, List, Mapping, Optional, Tuple, TypeVar, Union

from .models import Station, _parse_coordinate


EARTH_RADIUS_KM = 6371.0

StationLike = TypeVar("StationLike", Station, Mapping[str, Any])


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in kilometres between two points given in decimal degrees."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    # Rounding can push the term slightly above 1 for antipodal points.
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def station_coordinates(station: Union[Station, Mapping[str, Any]]) -> Optional[Tuple[float, float]]:
    """Return (lat, lon) or None when either coordinate is missing or not numeric."""
    if isinstance(station, Station):
        lat, lon = station.latitude, station.longitude
    elif isinstance(station, Mapping):
        lat = _parse_coordinate(station.get("gegrLat"))
        lon = _parse_coordinate(station.get("gegrLon"))
    else:
        return None

    if lat is None or lon is None:
        return None
    return lat, lon


def stations_within_radius(
    stations: Iterable[StationLike],
    center_lat: float,
    center_lon: float,
    radius_km: float,
) -> List[StationLike]:
    """Select the stations whose distance to the center is at most ``radius_km``.

    Stations without usable coordinates are skipped, never included.
    """
    if radius_km < 0:
        return []

    out: List[StationLike] = []
    for station in stations:
        coords = station_coordinates(station)
        if coords is None:
            continue
        if distance_km(center_lat, center_lon, coords[0], coords[1]) <= radius_km:
            out.append(station)
    return out
