"""Data processor for station lists and measurement series."""
from dataclasses import dataclass
from datetime import datetime
import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional, Sequence
from statistics import mean

from .geo import station_coordinates
from .models import MEASUREMENT_DATE_FORMAT, MeasurementPoint, Station


TREND_RISING = "rising"
TREND_FALLING = "falling"
TREND_STABLE = "stable"
TREND_NO_DATA = "no data"

# Display bands for a single reading (μg/m³).
HIGH_THRESHOLD = 50.0
ELEVATED_THRESHOLD = 25.0


def _normalize_text(value: Any) -> str:
    """Normalize names for case- and diacritic-insensitive matching.

    "Łódź" and "lodz" compare equal; so do "Kraków" and "KRAKOW".
    """
    if value is None:
        return ""

    text = str(value).strip()
    text = re.sub(r"\s+", " ", text)
    text = text.casefold()

    # 'ł' is not reliably decomposed by NFKD on all platforms, handle explicitly.
    text = text.replace("ł", "l")

    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))

    return text


@dataclass(frozen=True)
class MeasurementStatistics:
    min: Optional[float]
    max: Optional[float]
    avg: Optional[float]
    trend: str
    count: int
    null_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min": self.min,
            "max": self.max,
            "avg": self.avg,
            "trend": self.trend,
            "count": self.count,
            "null_count": self.null_count,
        }


class DataProcessor:
    """Processes station lists and measurement series for display."""

    @staticmethod
    def filter_stations_by_name(stations: Iterable[Station], text: Optional[str]) -> List[Station]:
        """Stations whose name contains ``text`` (case and diacritics ignored)."""
        needle = _normalize_text(text)
        if not needle:
            return list(stations)
        return [s for s in stations if needle in _normalize_text(s.name)]

    @staticmethod
    def station_markers(stations: Iterable[Station]) -> List[Dict[str, Any]]:
        """Map markers for stations with usable coordinates."""
        markers = []
        for station in stations:
            coords = station_coordinates(station)
            if coords is None:
                continue
            markers.append({
                "id": station.id,
                "lat": coords[0],
                "lon": coords[1],
                "label": station.name,
            })
        return markers

    @staticmethod
    def select_range(
        points: Sequence[MeasurementPoint],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[MeasurementPoint]:
        """Points with start <= timestamp <= end; open bounds when None."""
        out = []
        for ts, value in points:
            if start is not None and ts < start:
                continue
            if end is not None and ts > end:
                continue
            out.append((ts, value))
        return out

    @staticmethod
    def calculate_trend(values: Sequence[float]) -> str:
        """Compare the mean of the second half of the values with the first half."""
        size = len(values)
        if size <= 1:
            return TREND_NO_DATA

        half = size // 2
        avg_first = mean(values[:half])
        avg_last = mean(values[half:])

        if avg_last > avg_first:
            return TREND_RISING
        if avg_last < avg_first:
            return TREND_FALLING
        return TREND_STABLE

    @classmethod
    def compute_statistics(cls, points: Sequence[MeasurementPoint]) -> MeasurementStatistics:
        """Min / max / average / trend over the non-null readings, in time order."""
        ordered = sorted(points, key=lambda p: p[0])
        values = [v for _, v in ordered if v is not None]
        null_count = len(ordered) - len(values)

        if not values:
            return MeasurementStatistics(None, None, None, TREND_NO_DATA, 0, null_count)

        return MeasurementStatistics(
            min=min(values),
            max=max(values),
            avg=round(mean(values), 2),
            trend=cls.calculate_trend(values),
            count=len(values),
            null_count=null_count,
        )

    @staticmethod
    def classify_value(value: Optional[float]) -> str:
        if value is None:
            return "missing"
        if value > HIGH_THRESHOLD:
            return "high"
        if value > ELEVATED_THRESHOLD:
            return "elevated"
        return "low"

    @classmethod
    def order_for_display(cls, points: Sequence[MeasurementPoint]) -> List[Dict[str, Any]]:
        """List rows: readings first, then the timestamps without a reading."""
        present = []
        missing = []
        for ts, value in points:
            row = {
                "date": ts.strftime(MEASUREMENT_DATE_FORMAT),
                "value": value,
                "level": cls.classify_value(value),
            }
            (missing if value is None else present).append(row)
        return present + missing
