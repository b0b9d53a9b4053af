# newsvoice/lifespan.py
from contextlib import asynccontextmanager
import os
from fastapi import FastAPI

from .engine import NewsVoiceEngine
from .logging_setup import get_logger
from .store import init_db, load_latest_metadata, record_adjustment
from .scheduler import add_jobs, start_scheduler, shutdown_scheduler

logger = get_logger("newsvoice.lifespan")


def _scheduler_enabled() -> bool:
    return os.getenv("DISABLE_SCHEDULER", "0") != "1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("APP_STARTUP")
    init_db()

    # Tests (or embedding apps) may install their own engine before startup
    engine: NewsVoiceEngine = getattr(app.state, "engine", None) or NewsVoiceEngine(on_adjustment=record_adjustment)
    app.state.engine = engine
    engine.start()
    warmed = engine.warm(load_latest_metadata())
    logger.info("ENGINE_READY", extra={"indexed": warmed, "model_version": engine.gate.model_version,
                                       "personas": engine.registry.names()})

    scheduled = _scheduler_enabled() and not getattr(app.state, "scheduler_started", False)
    if scheduled:
        add_jobs(engine)
        start_scheduler()
        app.state.scheduler_started = True

    try:
        yield
    finally:
        logger.info("APP_SHUTDOWN", extra={"queued_jobs": engine.gate.queue_depth()})
        if scheduled:
            shutdown_scheduler(wait=False)
            app.state.scheduler_started = False
        # Queued jobs fail with JobCancelled; a running backend call is abandoned
        await engine.close()
        app.state.engine = None
