"""Data fetcher for the GIOŚ air quality REST API and address geocoding.

Every failure mode (transport error, timeout, non-2xx status, malformed body)
surfaces as NetworkError or ParseError so the coordinator can fall back to the
local cache uniformly.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .exceptions import NetworkError, ParseError
from .models import (
    MeasurementValue,
    Sensor,
    Station,
    decode_geocode,
    decode_measurement_values,
    decode_sensors,
    decode_stations,
)
from .settings import DEFAULT_API_BASE_URL, DEFAULT_GEOCODE_URL, DEFAULT_USER_AGENT


logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class GiosDataFetcher:
    """Fetches stations, sensors and readings from the GIOŚ API."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_API_BASE_URL,
        geocode_url: str = DEFAULT_GEOCODE_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 10.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.geocode_url = geocode_url
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.timeout,
            headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            transport=self._transport,
        )

    async def _make_request(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        """GET ``url`` and return the decoded JSON body.

        Retries rate limiting and server errors with exponential backoff.
        Raises NetworkError once retries are exhausted and ParseError when the
        body is not JSON.
        """
        attempts = max(1, max_retries if max_retries is not None else self.max_retries)
        last_error: Optional[NetworkError] = None

        for attempt in range(attempts):
            try:
                async with self._client(timeout) as client:
                    response = await client.get(url, params=params)
            except httpx.TimeoutException as e:
                last_error = NetworkError(f"Request to {url} timed out: {e}")
            except httpx.HTTPError as e:
                last_error = NetworkError(f"Request to {url} failed: {e}")
            else:
                if response.status_code in RETRYABLE_STATUS:
                    last_error = NetworkError(
                        f"GIOŚ answered {response.status_code} for {url}",
                        status_code=response.status_code,
                    )
                elif response.is_success:
                    try:
                        return response.json()
                    except (json.JSONDecodeError, UnicodeDecodeError) as e:
                        raise ParseError(f"Response from {url} is not valid JSON: {e}") from e
                else:
                    # 4xx other than 429 will not get better on retry.
                    raise NetworkError(
                        f"GIOŚ answered {response.status_code} for {url}",
                        status_code=response.status_code,
                    )

            if attempt < attempts - 1:
                wait_time = min(self.retry_delay * (2 ** attempt), 30.0)
                logger.warning(
                    "[GIOŚ] %s, retrying in %.1fs (attempt %d/%d)",
                    last_error, wait_time, attempt + 1, attempts,
                )
                await asyncio.sleep(wait_time)

        raise last_error

    async def fetch_all_stations(self) -> List[Station]:
        """Fetch all monitoring stations."""
        data = await self._make_request(f"{self.base_url}/station/findAll")
        return decode_stations(data)

    async def fetch_station_sensors(self, station_id: int) -> List[Sensor]:
        """Fetch sensors for a specific station (not yet tagged with the station id)."""
        data = await self._make_request(f"{self.base_url}/station/sensors/{station_id}")
        return decode_sensors(data)

    async def fetch_sensor_data(self, sensor_id: int) -> List[MeasurementValue]:
        """Fetch current readings for a sensor, null values included."""
        data = await self._make_request(f"{self.base_url}/data/getData/{sensor_id}")
        return decode_measurement_values(data)

    async def geocode(self, address: str) -> Optional[Tuple[float, float]]:
        """Resolve a free-text address to (lat, lon) of the first match, None if unknown."""
        data = await self._make_request(
            self.geocode_url,
            params={"q": address, "format": "json", "limit": 1},
        )
        return decode_geocode(data)

    async def is_available(self, timeout: float = 5.0) -> bool:
        """Probe the API once; any failure counts as offline."""
        try:
            await self._make_request(
                f"{self.base_url}/station/findAll",
                timeout=timeout,
                max_retries=1,
            )
        except (NetworkError, ParseError) as e:
            logger.info("GIOŚ API unreachable: %s", e)
            return False
        return True
