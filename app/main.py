"""Request Engine - FastAPI Application Entry Point.

Media request orchestration and auto-approval in front of Radarr/Sonarr,
with Jellyfin for auth and availability.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import init_db, async_session
from app.clients import jellyfin_client, radarr_client, sonarr_client, tmdb_client
from app.routers import api_router, admin_router
from app.services.availability_sync import run_availability_sync
from app.services.notifications import notifier

# Configure logging from environment
log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
logging.basicConfig(
    level=log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# httpx logs every request at INFO
if log_level != logging.DEBUG:
    logging.getLogger("httpx").setLevel(logging.WARNING)

# Background task handles
_sync_task: Optional[asyncio.Task] = None


async def availability_sync_loop():
    """
    Background task that moves finished requests to AVAILABLE.

    Runs every AVAILABILITY_SYNC_INTERVAL seconds. Each pass checks
    pending/submitted requests against Jellyfin and Radarr/Sonarr.
    """
    logger.info("Starting availability sync loop...")

    while True:
        try:
            async with async_session() as db:
                result = await run_availability_sync(db)
                if result.made_available:
                    logger.info(f"Availability sync marked {result.made_available} requests available")

        except Exception as e:
            logger.error(f"Availability sync error: {e}")

        await asyncio.sleep(settings.AVAILABILITY_SYNC_INTERVAL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Initialize database tables
    - Start availability sync (if enabled)

    Shutdown:
    - Cancel availability sync task
    - Close HTTP clients
    """
    global _sync_task

    # Startup
    logger.info("Starting Request Engine...")

    logger.info("Initializing database...")
    await init_db()

    if settings.ENABLE_AVAILABILITY_SYNC:
        logger.info("Starting availability sync...")
        _sync_task = asyncio.create_task(availability_sync_loop())
    else:
        logger.info("Availability sync disabled")

    logger.info("Request Engine ready")

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down Request Engine...")

    if _sync_task:
        _sync_task.cancel()
        try:
            await _sync_task
        except asyncio.CancelledError:
            pass
        logger.info("Availability sync stopped")

    for client in (radarr_client, sonarr_client, jellyfin_client, tmdb_client, notifier):
        await client.close()


# Create FastAPI app
app = FastAPI(
    title="Request Engine",
    description="Media request orchestration and auto-approval for Radarr/Sonarr",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware (for frontends served from other origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production if needed
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(api_router)
app.include_router(admin_router)
