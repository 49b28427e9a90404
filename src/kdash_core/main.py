"""kdash FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import aiohttp
from fastapi import FastAPI

from .api.routes import health_router, router as api_router
from .config import DashboardSettings
from .dashboard.service import open_service


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own one HTTP session and one rate limiter for the process lifetime."""
    settings: DashboardSettings = app.state.settings
    timeout = aiohttp.ClientTimeout(total=settings.request_timeout * 3, connect=5)
    async with open_service(settings, timeout=timeout) as service:
        app.state.dashboard_service = service
        logger.info(
            "Dashboard service ready (base_url=%s, shared_rate_limit=%s)",
            settings.base_url,
            bool(settings.redis_url),
        )
        try:
            yield
        finally:
            app.state.dashboard_service = None


def create_app(settings: Optional[DashboardSettings] = None) -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="kdash API",
        version="0.1.0",
        description="Klaviyo dashboard snapshots for many tenants",
        lifespan=lifespan,
    )
    app.state.settings = settings or DashboardSettings.from_env()

    app.include_router(health_router)
    app.include_router(api_router)

    return app


app = create_app()
