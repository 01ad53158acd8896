"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crowdbus.api import devices, reports, sessions, vehicles, ws
from crowdbus.config import settings
from crowdbus.core.broadcaster import Broadcaster
from crowdbus.core.cache import Cache
from crowdbus.core.exceptions import AppException, app_exception_handler, generic_exception_handler
from crowdbus.core.schedule import DatabaseScheduleGate
from crowdbus.core.scheduler import create_scheduler
from crowdbus.core.tracker import TrackingService
from crowdbus.db.session import async_session, engine
from crowdbus.models.base import Base
from crowdbus.models import tables  # noqa: F401

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    cache = Cache()
    await cache.connect()
    broadcaster = Broadcaster()
    await broadcaster.connect()

    schedule_gate = DatabaseScheduleGate(async_session, cache)
    tracker = TrackingService(async_session, cache, broadcaster, schedule_gate)

    # Wire up API modules
    ws.broadcaster = broadcaster
    reports.tracker = tracker
    sessions.tracker = tracker
    vehicles.tracker = tracker

    scheduler = create_scheduler(tracker)
    scheduler.start()
    logger.info(
        "crowdbus started - aggregating every %ds", settings.aggregation_interval_seconds
    )

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    await broadcaster.close()
    await cache.close()
    await engine.dispose()
    logger.info("crowdbus shut down")


app = FastAPI(
    title="Crowd-sourced Bus Tracker",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(reports.router)
app.include_router(sessions.router)
app.include_router(vehicles.router)
app.include_router(devices.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
