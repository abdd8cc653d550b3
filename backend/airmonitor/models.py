"""Data models for the GIOŚ air quality API and the local JSON cache."""
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from dateutil.parser import isoparse
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ParseError


MEASUREMENT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# One chart point: (timestamp, value or None when the sensor reported nothing).
MeasurementPoint = Tuple[datetime, Optional[float]]


def _parse_coordinate(text: Optional[str]) -> Optional[float]:
    if text is None:
        return None
    try:
        value = float(text)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return value


class Station(BaseModel):
    """Air quality monitoring station (upstream fields are kept verbatim)."""
    id: int
    name: str = Field(alias="stationName")
    latitude_text: Optional[str] = Field(None, alias="gegrLat")
    longitude_text: Optional[str] = Field(None, alias="gegrLon")

    class Config:
        populate_by_name = True
        extra = "allow"

    @field_validator("latitude_text", "longitude_text", mode="before")
    @classmethod
    def _coordinate_as_text(cls, value: Any) -> Any:
        # The API sends coordinates as strings; tolerate plain numbers too.
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def latitude(self) -> Optional[float]:
        return _parse_coordinate(self.latitude_text)

    @property
    def longitude(self) -> Optional[float]:
        return _parse_coordinate(self.longitude_text)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class SensorParam(BaseModel):
    """Measured parameter of a sensor (e.g. PM10)."""
    name: str = Field(alias="paramName")
    code: str = Field(alias="paramCode")
    formula: Optional[str] = Field(None, alias="paramFormula")
    param_id: Optional[int] = Field(None, alias="idParam")

    class Config:
        populate_by_name = True
        extra = "allow"


class Sensor(BaseModel):
    """Sensor (measurement position) at a station."""
    id: int
    station_id: Optional[int] = Field(None, alias="stationId")
    param: SensorParam

    class Config:
        populate_by_name = True
        extra = "allow"

    @property
    def param_name(self) -> str:
        return self.param.name

    @property
    def param_code(self) -> str:
        return self.param.code

    @property
    def display_name(self) -> str:
        return f"{self.param.name} ({self.param.code})"

    def for_station(self, station_id: int) -> "Sensor":
        """Return a copy tagged with the owning station id."""
        return self.model_copy(update={"station_id": station_id})

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class MeasurementValue(BaseModel):
    """Single reading; ``value`` is None when the sensor reported nothing."""
    date: str
    value: Optional[float]

    class Config:
        populate_by_name = True

    @field_validator("date")
    @classmethod
    def _date_must_parse(cls, value: str) -> str:
        try:
            isoparse(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid measurement date {value!r}") from e
        return value

    @property
    def timestamp(self) -> datetime:
        return isoparse(self.date)

    def to_json(self) -> Dict[str, Any]:
        # Keep explicit nulls: a missing reading is data too.
        return {"date": self.date, "value": self.value}


class MeasurementSeries(BaseModel):
    """Cached readings for one sensor."""
    sensor_id: int = Field(alias="id")
    values: List[MeasurementValue]
    last_updated: Optional[str] = Field(None, alias="lastUpdated")

    class Config:
        populate_by_name = True

    @property
    def last_updated_at(self) -> Optional[datetime]:
        if not self.last_updated:
            return None
        try:
            return isoparse(self.last_updated)
        except ValueError:
            return None

    def points(self) -> List[MeasurementPoint]:
        return [(v.timestamp, v.value) for v in self.values]

    def to_json(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "id": self.sensor_id,
            "values": [v.to_json() for v in self.values],
        }
        if self.last_updated is not None:
            entry["lastUpdated"] = self.last_updated
        return entry


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(p) for p in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def _expect_list(payload: Any, what: str) -> List[Any]:
    if not isinstance(payload, list):
        raise ParseError(f"Expected a JSON array of {what}, got {type(payload).__name__}")
    return payload


def decode_stations(payload: Any) -> List[Station]:
    """Decode the ``station/findAll`` payload."""
    items = _expect_list(payload, "stations")
    try:
        return [Station.model_validate(item) for item in items]
    except ValidationError as e:
        raise ParseError(f"Malformed station entry ({_describe(e)})") from e


def decode_sensors(payload: Any) -> List[Sensor]:
    """Decode the ``station/sensors/{id}`` payload."""
    items = _expect_list(payload, "sensors")
    try:
        return [Sensor.model_validate(item) for item in items]
    except ValidationError as e:
        raise ParseError(f"Malformed sensor entry ({_describe(e)})") from e


def decode_measurement_values(payload: Any) -> List[MeasurementValue]:
    """Decode the ``data/getData/{id}`` payload (an object with ``values``)."""
    if not isinstance(payload, dict):
        raise ParseError(f"Expected a JSON object with 'values', got {type(payload).__name__}")
    values = payload.get("values")
    if not isinstance(values, list):
        raise ParseError("Measurement payload has no 'values' array")
    try:
        return [MeasurementValue.model_validate(item) for item in values]
    except ValidationError as e:
        raise ParseError(f"Malformed measurement entry ({_describe(e)})") from e


def decode_geocode(payload: Any) -> Optional[Tuple[float, float]]:
    """Return (lat, lon) of the first geocoding match, or None when nothing matched."""
    items = _expect_list(payload, "geocoding results")
    if not items:
        return None
    first = items[0]
    if not isinstance(first, dict):
        raise ParseError("Geocoding result is not an object")
    lat = _parse_coordinate(first.get("lat"))
    lon = _parse_coordinate(first.get("lon"))
    if lat is None or lon is None:
        raise ParseError("Geocoding result has no numeric lat/lon")
    return lat, lon
