#!/usr/bin/env python3
"""
Script to fill the local cache for offline use.

Usage:
    python sync_cache.py --station-ids 114,117
    python sync_cache.py --near 52.4064,16.9252 --radius 10
    python sync_cache.py --stats

Downloads the station list, then the sensors and current readings of the
selected stations, merging everything into the JSON cache.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from airmonitor.cache_coordinator import CacheCoordinator
from airmonitor.exceptions import Unavailable
from airmonitor.logging_config import setup_logging
from airmonitor.main import build_coordinator
from airmonitor.settings import load_settings


async def sync_station(coordinator: CacheCoordinator, station_id: int, name: str) -> int:
    """Refresh sensors and readings of one station; return the number of readings stored."""
    print(f"\n{'='*60}")
    print(f"Station {station_id}: {name}")
    print(f"{'='*60}")

    try:
        sensors = await coordinator.refresh_sensors(station_id)
    except Unavailable as e:
        print(f"  ✗ {e}")
        return 0

    total = 0
    for sensor in sensors:
        print(f"    {sensor.display_name} (sensor {sensor.id})...", end=" ", flush=True)
        try:
            series = await coordinator.refresh_series(sensor.id)
        except Unavailable as e:
            print(f"✗ {e}")
            continue
        missing = sum(1 for v in series.values if v.value is None)
        print(f"✓ {len(series.values)} points ({missing} empty), updated {series.last_updated}")
        total += len(series.values)

    return total


async def print_stats(coordinator: CacheCoordinator):
    stats = await coordinator.cache.stats()
    print(f"Stations: {stats['stations']:,}")
    print(f"Sensors: {stats['sensors']:,} (stations synced: {stats['synced_stations']:,})")
    print(f"Series: {stats['series']:,}")
    print(f"Readings: {stats['readings']:,} (empty: {stats['null_readings']:,})")


async def main():
    parser = argparse.ArgumentParser(description='Fill the local air quality cache for offline use')
    parser.add_argument('--station-ids', type=str, default=None,
                        help='Comma-separated list of station IDs (e.g., 114,117)')
    parser.add_argument('--near', type=str, default=None,
                        help='Center point as lat,lon (e.g., 52.4064,16.9252)')
    parser.add_argument('--radius', type=float, default=10.0,
                        help='Radius in km around --near (default: 10)')
    parser.add_argument('--data-dir', type=str, default=None,
                        help='Cache directory (default: backend/data)')
    parser.add_argument('--stats', action='store_true',
                        help='Only print what the cache currently holds')

    args = parser.parse_args()

    settings = load_settings(data_dir=Path(args.data_dir) if args.data_dir else None)
    setup_logging(settings.log_level)
    coordinator = build_coordinator(settings)

    print(f"Cache: {settings.data_dir}")

    if args.stats:
        await print_stats(coordinator)
        return

    try:
        stations = await coordinator.refresh_stations()
    except Unavailable as e:
        print(f"✗ {e}")
        sys.exit(1)
    print(f"Stations: {len(stations)}")

    if args.station_ids:
        wanted = {int(x.strip()) for x in args.station_ids.split(',') if x.strip()}
        selected = [s for s in stations if s.id in wanted]
    elif args.near:
        lat, lon = (float(x.strip()) for x in args.near.split(','))
        selected = (await coordinator.find_stations_near(lat, lon, args.radius)).stations
    else:
        selected = []

    grand_total = 0
    for station in selected:
        grand_total += await sync_station(coordinator, station.id, station.name)

    print(f"\n{'='*60}")
    print(f"GRAND TOTAL: {grand_total} points cached for {len(selected)} stations")
    print(f"{'='*60}")


if __name__ == "__main__":
    asyncio.run(main())
