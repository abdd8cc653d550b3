"""Configuration helpers for the air quality client.

We keep these settings in a dedicated module so the coordinator, the local
HTTP API and the maintenance scripts share the same source of truth.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import List, Optional


DEFAULT_DATA_DIR = Path(__file__).resolve().parents[1] / "data"  # .../backend/data
DEFAULT_API_BASE_URL = "https://api.gios.gov.pl/pjp-api/rest"
DEFAULT_GEOCODE_URL = "https://nominatim.openstreetmap.org/search"
DEFAULT_USER_AGENT = "AirQualityMonitorApp"


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    # Zero or negative timeouts would make every fetch fail immediately.
    return parsed if parsed > 0 else default


def _env_csv(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return list(default)
    parts = [p.strip() for p in value.split(",")]
    return [p for p in parts if p]


@dataclass(frozen=True)
class AirMonitorSettings:
    data_dir: Path

    # Upstream endpoints
    api_base_url: str
    geocode_url: str
    user_agent: str

    # Every suspension point is bounded by one of these.
    fetch_timeout_seconds: float
    probe_timeout_seconds: float
    io_timeout_seconds: float

    max_retries: int
    log_level: str
    allowed_origins: List[str]


def load_settings(*, data_dir: Optional[Path] = None) -> AirMonitorSettings:
    """Load settings from environment variables."""
    if data_dir is None:
        data_dir = Path(_env_str("AIRMONITOR_DATA_DIR", str(DEFAULT_DATA_DIR)))

    return AirMonitorSettings(
        data_dir=Path(data_dir),
        api_base_url=_env_str("AIRMONITOR_API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/"),
        geocode_url=_env_str("AIRMONITOR_GEOCODE_URL", DEFAULT_GEOCODE_URL),
        user_agent=_env_str("AIRMONITOR_USER_AGENT", DEFAULT_USER_AGENT),
        fetch_timeout_seconds=_env_float("AIRMONITOR_FETCH_TIMEOUT_SECONDS", 10.0),
        probe_timeout_seconds=_env_float("AIRMONITOR_PROBE_TIMEOUT_SECONDS", 5.0),
        io_timeout_seconds=_env_float("AIRMONITOR_IO_TIMEOUT_SECONDS", 5.0),
        max_retries=max(1, _env_int("AIRMONITOR_MAX_RETRIES", 2)),
        log_level=_env_str("AIRMONITOR_LOG_LEVEL", "INFO").upper(),
        allowed_origins=_env_csv(
            "ALLOWED_ORIGINS",
            ["http://localhost:5173", "http://localhost:3000"],
        ),
    )
