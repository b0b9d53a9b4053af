# newsvoice/retrieval.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
import hashlib
import re
import threading

from .config import (
    RETRIEVAL_HALF_LIFE_H,
    RETRIEVAL_MIN_RELEVANCE,
    RETRIEVAL_RECENCY_WEIGHT,
    RETRIEVAL_TOP_K,
)
from .logging_setup import get_logger
from .models import Article, ArticleMetadata

logger = get_logger("newsvoice.retrieval")

STOPWORDS = frozenset("""
a an and are as at be been but by for from has have in into is it its of on or that the their
this to was were will with about after before over under than then there these those what when
which who why how new news latest trend trends today report reports says said more most
""".split())

TOPIC_WEIGHT = 0.5  # topics are coarser than keywords

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9+#.-]*")

Scorer = Callable[[Sequence[str], ArticleMetadata], float]


def _stem(tok: str) -> str:
    # light plural folding: "services" -> "service", "companies" -> "company"
    if len(tok) > 4 and tok.endswith("ies"):
        return tok[:-3] + "y"
    if len(tok) > 3 and tok.endswith("s") and not tok.endswith("ss"):
        return tok[:-1]
    return tok


def tokenize(text: str) -> List[str]:
    out: List[str] = []
    seen: Set[str] = set()
    for raw in _TOKEN_RE.findall((text or "").lower()):
        raw = raw.strip(".-")
        if not raw or raw in STOPWORDS:
            continue
        tok = _stem(raw)
        if tok in STOPWORDS or tok in seen:
            continue
        seen.add(tok)
        out.append(tok)
    return out


def term_overlap(query_tokens: Sequence[str], md: ArticleMetadata) -> float:
    """Share of query tokens found in keywords (weight 1) or only in topics (weight TOPIC_WEIGHT)."""
    if not query_tokens:
        return 0.0
    kw_tokens = set(tokenize(" ".join(md.keywords or [])))
    topic_tokens = set(tokenize(" ".join(md.topics or [])))
    hit = 0.0
    for tok in query_tokens:
        if tok in kw_tokens:
            hit += 1.0
        elif tok in topic_tokens:
            hit += TOPIC_WEIGHT
    return hit / len(query_tokens)


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def _ts(dt: Optional[datetime]) -> float:
    dt = _as_utc(dt)
    return dt.timestamp() if dt else 0.0


@dataclass(frozen=True)
class RetrievalCandidate:
    article: Article
    metadata: ArticleMetadata
    relevance_score: float

    @property
    def article_id(self) -> int:
        return self.metadata.article_id


class RetrievalIndex:
    """
    Append-only in-memory index of (Article, ArticleMetadata) pairs.

    Inserts take a lock; queries work on a snapshot of the entry map, so a
    concurrent insert is either fully visible or not at all.
    """

    def __init__(
        self,
        scorer: Scorer = term_overlap,
        min_relevance: float = RETRIEVAL_MIN_RELEVANCE,
        half_life_hours: float = RETRIEVAL_HALF_LIFE_H,
        recency_weight: float = RETRIEVAL_RECENCY_WEIGHT,
        default_k: int = RETRIEVAL_TOP_K,
    ):
        self.scorer = scorer
        self.min_relevance = min_relevance
        self.half_life_hours = half_life_hours
        self.recency_weight = recency_weight
        self.default_k = default_k
        self._entries: Dict[int, Tuple[Article, ArticleMetadata]] = {}
        self._lock = threading.Lock()

    def add(self, article: Article, metadata: ArticleMetadata) -> bool:
        """Index metadata for an article; older metadata for the same article is superseded."""
        if article.id is None or metadata.article_id != article.id:
            raise ValueError("metadata must belong to a persisted article")
        with self._lock:
            current = self._entries.get(article.id)
            if current is not None and _ts(current[1].generated_at) > _ts(metadata.generated_at):
                return False
            # Replace the whole map so readers holding the old one stay consistent
            entries = dict(self._entries)
            entries[article.id] = (article, metadata)
            self._entries = entries
        return True

    def get(self, article_id: int) -> Optional[Tuple[Article, ArticleMetadata]]:
        return self._entries.get(article_id)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, article_id: int) -> bool:
        return article_id in self._entries

    def fingerprint(self, article_ids: Iterable[int]) -> str:
        """Changes whenever metadata behind any of the ids changes; used in cache keys."""
        entries = self._entries
        parts = []
        for aid in sorted(set(article_ids)):
            entry = entries.get(aid)
            if entry is None:
                parts.append(f"{aid}:-")
            else:
                md = entry[1]
                parts.append(f"{aid}:{md.model_version}:{_ts(md.generated_at):.3f}")
        return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()

    def recency_decay(self, published_at: Optional[datetime], now: datetime) -> float:
        published = _as_utc(published_at)
        if published is None:
            return 0.0
        age_h = max(0.0, (now - published).total_seconds() / 3600.0)
        return 0.5 ** (age_h / self.half_life_hours)

    def query(
        self,
        query: str,
        candidate_ids: Iterable[int],
        k: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[RetrievalCandidate]:
        k = self.default_k if k is None else k
        if k <= 0:
            return []
        now = now or datetime.now(timezone.utc)
        q_tokens = tokenize(query)
        if not q_tokens:
            return []

        entries = self._entries
        scored: List[RetrievalCandidate] = []
        for aid in set(candidate_ids):
            entry = entries.get(aid)
            if entry is None:
                continue
            article, md = entry
            overlap = self.scorer(q_tokens, md)
            if overlap <= 0.0:
                continue
            decay = self.recency_decay(article.published_at, now)
            score = overlap * (1.0 - self.recency_weight + self.recency_weight * decay)
            if score < self.min_relevance:
                continue
            scored.append(RetrievalCandidate(article=article, metadata=md, relevance_score=round(score, 6)))

        scored.sort(key=lambda c: (
            -c.relevance_score,
            -_ts(c.article.published_at),
            -_ts(c.metadata.generated_at),
            c.article_id,
        ))
        logger.debug("RETRIEVAL_DONE", extra={"query_tokens": q_tokens, "matched": len(scored), "k": k})
        return scored[:k]
