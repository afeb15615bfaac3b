# ABOUTME: FastAPI application factory for the operator API.
# ABOUTME: Starts the engine and scheduler in the lifespan and stops them on shutdown.

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from content_pulse.db.session import close_db, get_session_factory, init_db
from content_pulse.services.engine import Engine
from content_pulse.services.scheduler import Scheduler

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create tables, start the scheduler, and drain it on shutdown."""
    logger.info("app_startup")
    await init_db()
    engine = Engine(get_session_factory())
    scheduler = Scheduler(engine)
    app.state.engine = engine
    app.state.scheduler = scheduler
    if app.state.start_scheduler:
        scheduler.start()
    yield
    logger.info("app_shutdown")
    await scheduler.stop()
    await close_db()


def create_app(start_scheduler: bool = True) -> FastAPI:
    """Build the operator API. With start_scheduler=False triggers only run on demand."""
    app = FastAPI(
        title="content-pulse",
        description="Content ingestion, deduplication and retention scheduler",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.start_scheduler = start_scheduler

    from content_pulse.web.routes import router

    app.include_router(router)

    return app


app = create_app()
