"""FastAPI application exposing the offline-capable air quality cache."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api_routes import router
from .cache_coordinator import CacheCoordinator
from .cache_manager import CacheManager
from .data_fetcher import GiosDataFetcher
from .exceptions import Unavailable
from .logging_config import setup_logging
from .settings import AirMonitorSettings, load_settings


logger = logging.getLogger(__name__)


def build_coordinator(settings: AirMonitorSettings) -> CacheCoordinator:
    """Wire the store, the fetcher and the coordinator for one process."""
    cache = CacheManager(data_dir=settings.data_dir, io_timeout=settings.io_timeout_seconds)
    fetcher = GiosDataFetcher(
        base_url=settings.api_base_url,
        geocode_url=settings.geocode_url,
        user_agent=settings.user_agent,
        timeout=settings.fetch_timeout_seconds,
        max_retries=settings.max_retries,
    )
    return CacheCoordinator(cache=cache, fetcher=fetcher, settings=settings)


async def _warm_stations(coordinator: CacheCoordinator):
    try:
        stations = await coordinator.get_stations()
        logger.info("Station list ready (%d stations)", len(stations))
    except Unavailable as e:
        logger.warning("Starting without stations: %s", e)


def create_app(
    settings: Optional[AirMonitorSettings] = None,
    coordinator: Optional[CacheCoordinator] = None,
    *,
    warm_cache: bool = True,
) -> FastAPI:
    settings = settings or load_settings()
    coordinator = coordinator or build_coordinator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        warmup = asyncio.create_task(_warm_stations(coordinator)) if warm_cache else None
        yield
        if warmup is not None and not warmup.done():
            warmup.cancel()
            await asyncio.gather(warmup, return_exceptions=True)

    app = FastAPI(
        title="Air Quality Monitor API",
        description="Cache-first access to GIOŚ stations, sensors and measurements",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Unavailable)
    async def unavailable_handler(request: Request, exc: Unavailable):
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc), "kind": exc.kind, "key": exc.key, "retry": True},
        )

    app.include_router(router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint; also probes whether GIOŚ is reachable."""
        degraded = coordinator.degraded
        online = await coordinator.is_online()
        return {
            "status": "degraded" if degraded else "healthy",
            "service": "airmonitor",
            "upstream": "online" if online else "offline",
            "cache_error": str(coordinator.last_storage_error) if degraded else None,
        }

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = load_settings()
    setup_logging(_settings.log_level, _settings.data_dir / "logs")
    uvicorn.run(create_app(_settings), host="127.0.0.1", port=8000)
