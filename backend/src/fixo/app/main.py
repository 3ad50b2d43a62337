"""FastAPI application entry point for the Fixo API."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fixo.app.config import get_settings
from fixo.infra.database import async_session, close_db, init_db
from fixo.services.location_feed import location_feed
from fixo.services.sweeper import deactivate_stale_locations, expire_abandoned_checkouts

logger = logging.getLogger(__name__)


async def sweeper_loop():
    """Expire abandoned checkouts and stale location rows on an interval."""
    interval = get_settings().sweeper_interval_minutes * 60
    while True:
        try:
            async with async_session() as db:
                expired_count = await expire_abandoned_checkouts(db, feed=location_feed)
                if expired_count:
                    logger.info("Sweeper: expired %d abandoned checkouts", expired_count)
                await deactivate_stale_locations(db, feed=location_feed)
        except Exception as e:
            logger.error("Sweeper error: %s", e)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start the sweeper."""
    await init_db()
    sweeper = asyncio.create_task(sweeper_loop())
    yield
    sweeper.cancel()
    await close_db()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Fixo API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware: all origins in debug mode for LAN/IP access
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from fixo.app.routes.auth import router as auth_router
from fixo.app.routes.bookings import router as bookings_router
from fixo.app.routes.property_bookings import router as property_bookings_router
from fixo.app.routes.tracking import router as tracking_router
from fixo.app.routes.ws import router as ws_router

app.include_router(auth_router)
app.include_router(bookings_router)
app.include_router(tracking_router)
app.include_router(property_bookings_router)
app.include_router(ws_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "fixo"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "fixo.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
