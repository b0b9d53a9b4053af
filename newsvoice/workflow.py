# newsvoice/workflow.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import asyncio
import uuid
import time
from collections import Counter

from .config import INGEST_SINCE_HOURS
from .engine import NewsVoiceEngine
from .models import Article
from .logging_setup import get_logger
from . import sources
from . import store

logger = get_logger("newsvoice.workflow")


async def run_ingest(engine: NewsVoiceEngine, articles: Optional[List[Article]] = None) -> Dict[str, Any]:
    """
    Orchestrates one ingest run:
    - fetch feeds (unless articles are handed in)
    - drop articles already stored (content_hash)
    - persist new articles
    - extract metadata at batch priority, persist it, index it
    """
    run_id = uuid.uuid4().hex[:8]
    date = datetime.now(timezone.utc).strftime("%Y-%m-%d")

    def X(**fields):
        # Helper to attach correlation + common fields
        return {"run_id": run_id, "date": date, **fields}

    logger.info("RUN_INGEST_START", extra=X(step="start"))
    t0 = time.perf_counter()

    try:
        # --- Fetch ---
        t_fetch = time.perf_counter()
        if articles is None:
            try:
                # feedparser is blocking; keep it off the event loop
                raw: List[Article] = await asyncio.to_thread(sources.fetch_all, INGEST_SINCE_HOURS)
                per_feed = Counter(a.source_feed_id or "unknown" for a in raw)
                logger.info("FETCH_OK", extra=X(step="fetch", count=len(raw), per_feed=dict(per_feed),
                                                elapsed_ms=round((time.perf_counter() - t_fetch) * 1000)))
            except Exception as e:
                logger.exception("FETCH_FAILED", extra=X(step="fetch", handled=True, error=type(e).__name__))
                raw = []
        else:
            raw = list(articles)

        # --- Persist Articles (dedupe by content_hash) ---
        t_persist = time.perf_counter()
        try:
            fresh = await asyncio.to_thread(store.save_articles, raw)
        except Exception as e:
            logger.exception("PERSIST_ARTICLES_FAILED", extra=X(step="persist_articles", handled=True,
                                                                error=type(e).__name__))
            fresh = []
        logger.info("ARTICLES_PERSISTED", extra=X(step="persist_articles", fetched=len(raw), new=len(fresh),
                                                  elapsed_ms=round((time.perf_counter() - t_persist) * 1000)))

        # --- Extract + Index ---
        t_extract = time.perf_counter()
        degraded = 0
        persist_errors = 0
        for a in fresh:
            md = await engine.extract_metadata(a)
            if md.degraded:
                degraded += 1
            try:
                md = await asyncio.to_thread(store.save_metadata, md)
            except Exception as e:
                persist_errors += 1
                logger.exception("PERSIST_METADATA_FAILED", extra=X(step="extract", handled=True,
                                                                    article_id=a.id, error=type(e).__name__))
            engine.index.add(a, md)

        logger.info("EXTRACT_DONE", extra=X(
            step="extract",
            count=len(fresh),
            degraded=degraded,
            persist_errors=persist_errors,
            elapsed_ms=round((time.perf_counter() - t_extract) * 1000),
        ))

        summary = {
            "run_id": run_id,
            "fetched": len(raw),
            "new_articles": len(fresh),
            "degraded": degraded,
            "persist_errors": persist_errors,
            "indexed": len(engine.index),
        }
        logger.info("RUN_INGEST_SUCCESS", extra=X(step="end", handled=True,
                                                  total_elapsed_ms=round((time.perf_counter() - t0) * 1000),
                                                  metrics=summary))
        return summary

    except Exception as e:
        logger.exception("RUN_INGEST_FATAL", extra=X(step="fatal", handled=False, error=type(e).__name__,
                                                     total_elapsed_ms=round((time.perf_counter() - t0) * 1000)))
        raise
