"""
FastAPI application hosting the intake pipeline.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from inbox_pipeline.config import settings
from inbox_pipeline.core.database import Database
from inbox_pipeline.core.logging import configure_logging, get_logger
from inbox_pipeline.pipeline.container import Pipeline
from inbox_pipeline.routers.events import router as events_router
from inbox_pipeline.routers.monitoring import router as monitoring_router
from inbox_pipeline.services.broadcaster import EventStreamBroadcaster

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    configure_logging(settings.log_level, settings.log_json)
    log.info("application_starting")

    db = Database()
    db.init_schema()

    broadcaster = EventStreamBroadcaster()
    pipeline = Pipeline(db=db, broadcaster=broadcaster)
    pipeline.start()

    app.state.broadcaster = broadcaster
    app.state.pipeline = pipeline

    yield

    # Shutdown
    pipeline.stop()
    app.state.pipeline = None
    log.info("application_stopped")


app = FastAPI(
    title="Inbox Pipeline",
    description="Mailbox intake, classification and extraction pipeline",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(monitoring_router)
app.include_router(events_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    pipeline = getattr(app.state, "pipeline", None)
    return {
        "status": "healthy",
        "version": "1.0.0",
        "workers_running": bool(pipeline and pipeline.workers.is_running),
    }


# Run with: uvicorn inbox_pipeline.main:app --host 0.0.0.0 --port 8001
