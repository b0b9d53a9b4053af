# newsvoice/scheduler.py
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MAX_INSTANCES
import pytz

from .config import TIMEZONE, INGEST_INTERVAL_MIN, CACHE_PURGE_INTERVAL_MIN
from .engine import NewsVoiceEngine
from .workflow import run_ingest
from .logging_setup import get_logger

logger = get_logger("newsvoice.scheduler")
# AsyncIO flavour: ingest jobs must run on the loop that owns the inference gate
scheduler = AsyncIOScheduler(timezone=pytz.timezone(TIMEZONE))


def _job_listener(event):
    if event.code == EVENT_JOB_MAX_INSTANCES:
        # Previous ingest still extracting; this tick is skipped
        logger.warning("JOB_SKIPPED", extra={"job_id": event.job_id, "reason": "still running"})
    elif event.exception:
        logger.error("JOB_ERROR", exc_info=event.exception,
                     extra={"handled": False, "job_id": event.job_id, "run_time": str(event.scheduled_run_time)})
    else:
        logger.info("JOB_OK", extra={"job_id": event.job_id, "run_time": str(event.scheduled_run_time)})


def purge_cache(engine: NewsVoiceEngine) -> int:
    removed = engine.cache.purge_expired()
    logger.info("CACHE_PURGED", extra={"removed": removed, "remaining": len(engine.cache)})
    return removed


def add_jobs(engine: NewsVoiceEngine) -> None:
    tz = pytz.timezone(TIMEZONE)
    scheduler.add_job(run_ingest, IntervalTrigger(minutes=INGEST_INTERVAL_MIN, timezone=tz), args=[engine],
                      id="ingest", replace_existing=True, max_instances=1, coalesce=True)
    scheduler.add_job(purge_cache, IntervalTrigger(minutes=CACHE_PURGE_INTERVAL_MIN, timezone=tz), args=[engine],
                      id="cache_purge", replace_existing=True, coalesce=True)
    scheduler.add_listener(_job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES)
    logger.info("JOBS_REGISTERED", extra={"ingest_every_min": INGEST_INTERVAL_MIN,
                                          "cache_purge_every_min": CACHE_PURGE_INTERVAL_MIN, "tz": TIMEZONE})


def start_scheduler():
    if not scheduler.running:
        scheduler.start()
        logger.info("APScheduler started")


def shutdown_scheduler(wait: bool = False):
    if scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("APScheduler stopped")
