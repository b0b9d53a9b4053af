"""
store.py
========
Persistence for what the inference core produces and consumes.

Three tables live here: articles (deduplicated by content_hash), one
ArticleMetadata row per extraction (older rows are kept, the newest wins when
the retrieval index is warmed), and the append-only chat adjustment log.
Callers go through the helpers below and never build queries themselves.
"""

from sqlmodel import SQLModel, Session, create_engine, select
from typing import Dict, Iterable, List, Tuple

from .config import DB_FILE
from .logging_setup import get_logger
from .models import AdjustmentLogEntry, Article, ArticleMetadata

logger = get_logger("newsvoice.store")

# SQLite file named by DB_FILE; tests point it at a throwaway file
DB_URL = f"sqlite:///{DB_FILE}"

# check_same_thread=False: ingest runs its writes via asyncio.to_thread
engine = create_engine(DB_URL, echo=False, connect_args={"check_same_thread": False})


def init_db() -> None:
    """Create missing tables. Idempotent, called at every startup."""
    from . import models  # noqa: F401  (registers the table classes on SQLModel.metadata)

    SQLModel.metadata.create_all(engine)


def get_session() -> Session:
    """One unit of work; use as a context manager and commit explicitly."""
    return Session(engine)


def known_hashes(hashes: Iterable[str]) -> set:
    hashes = list(hashes)
    if not hashes:
        return set()
    with get_session() as s:
        rows = s.exec(select(Article.content_hash).where(Article.content_hash.in_(hashes))).all()
    return set(rows)


def save_articles(articles: List[Article]) -> List[Article]:
    """
    Persist articles whose content_hash is not stored yet.
    Returns only the newly stored rows (with ids), in input order.
    """
    seen = known_hashes(a.content_hash for a in articles)
    fresh: List[Article] = []
    for a in articles:
        if a.content_hash in seen:
            continue
        seen.add(a.content_hash)
        fresh.append(a)
    if not fresh:
        return []
    with get_session() as s:
        s.add_all(fresh)
        s.commit()
        for a in fresh:
            s.refresh(a)
    logger.debug("ARTICLES_SAVED", extra={"offered": len(articles), "saved": len(fresh)})
    return fresh


def save_metadata(md: ArticleMetadata) -> ArticleMetadata:
    # New row per extraction; older rows for the same article stay for audit
    with get_session() as s:
        s.add(md)
        s.commit()
        s.refresh(md)
    return md


def load_latest_metadata(limit: int = 5000) -> List[Tuple[Article, ArticleMetadata]]:
    """Newest metadata row per article, for warming the retrieval index on startup."""
    with get_session() as s:
        rows = s.exec(
            select(Article, ArticleMetadata)
            .where(ArticleMetadata.article_id == Article.id)
            .order_by(ArticleMetadata.generated_at.desc())
            .limit(limit)
        ).all()
    latest: Dict[int, Tuple[Article, ArticleMetadata]] = {}
    for article, md in rows:
        latest.setdefault(article.id, (article, md))
    return list(latest.values())


def record_adjustment(adjustment, persona_name: str) -> AdjustmentLogEntry:
    """Append one chat adjustment (a schema.PersonaAdjustment) to the log table."""
    row = AdjustmentLogEntry(
        session_id=adjustment.session_id,
        persona_name=persona_name,
        base_persona_version=adjustment.base_persona_version,
        result_persona_version=adjustment.result_persona_version,
        requested_delta=dict(adjustment.requested_delta),
        applied_delta=dict(adjustment.applied_delta),
        rejected_fields=list(adjustment.rejected_fields),
        parser=adjustment.parser,
        ts=adjustment.timestamp,
    )
    with get_session() as s:
        s.add(row)
        s.commit()
        s.refresh(row)
    return row


def adjustment_log(session_id: str) -> List[AdjustmentLogEntry]:
    with get_session() as s:
        return list(s.exec(
            select(AdjustmentLogEntry)
            .where(AdjustmentLogEntry.session_id == session_id)
            .order_by(AdjustmentLogEntry.id)
        ).all())
