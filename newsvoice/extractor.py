# newsvoice/extractor.py
from __future__ import annotations
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import json
import re

from .cache import SemanticCache, make_key
from .config import EXTRACT_MAX_BODY_CHARS
from .errors import (
    JobCancelled,
    ModelExecutionFailure,
    ModelQueueTimeout,
    OutputRejectedUnsafe,
    SchemaValidationFailure,
)
from .gate import InferenceGate, Priority
from .logging_setup import get_logger
from .models import Article, ArticleMetadata
from .prompts import TRUNCATION_MARKER, extract_prompt
from .retrieval import STOPWORDS
from .safety import SafetyValidator

logger = get_logger("newsvoice.extractor")

SENTIMENT_LABELS = ("positive", "negative", "neutral")
KEYWORDS_MIN, KEYWORDS_MAX = 5, 10
SUMMARY_MIN_CHARS, SUMMARY_MAX_CHARS = 20, 800
TOPICS_MAX = 5
FALLBACK_MODEL_VERSION = "fallback"
FALLBACK_SUMMARY_CHARS = 280

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)
_WORD_RE = re.compile(r"[A-Za-z][A-Za-z'-]{2,}")


def _truncate(s: str, max_chars: int = EXTRACT_MAX_BODY_CHARS) -> Tuple[str, bool]:
    if not s or len(s) <= max_chars:
        return s or "", False
    return s[:max_chars].rstrip() + f"\n{TRUNCATION_MARKER}", True

def _strip_fences(raw: str) -> str:
    return _FENCE_RE.sub("", raw or "").strip()

def _clean_terms(values: Any, limit: int) -> List[str]:
    out: List[str] = []
    seen = set()
    for v in values if isinstance(values, list) else []:
        if not isinstance(v, str):
            continue
        term = " ".join(v.split()).strip(" .,;:").lower()
        if term and term not in seen and len(term) <= 60:
            seen.add(term)
            out.append(term)
    return out[:limit]

def parse_metadata(raw: str) -> Dict[str, Any]:
    """
    Validate model output against the expected shape.
    Returns normalized fields or raises SchemaValidationFailure listing every problem.
    """
    try:
        data = json.loads(raw)
    except ValueError:
        raise SchemaValidationFailure(["output is not valid JSON"])
    if not isinstance(data, dict):
        raise SchemaValidationFailure(["output is not a JSON object"])

    problems: List[str] = []

    summary = data.get("summary")
    summary = " ".join(summary.split()) if isinstance(summary, str) else ""
    if not (SUMMARY_MIN_CHARS <= len(summary) <= SUMMARY_MAX_CHARS):
        problems.append(f"summary must be {SUMMARY_MIN_CHARS}-{SUMMARY_MAX_CHARS} characters")

    sentiment = data.get("sentiment")
    label, score = None, None
    if isinstance(sentiment, dict):
        label = str(sentiment.get("label", "")).strip().lower()
        score = sentiment.get("score")
    elif isinstance(sentiment, str):
        # tolerate a bare label; score derived from it
        label = sentiment.strip().lower()
        score = {"positive": 0.5, "negative": -0.5}.get(label, 0.0)
    if label not in SENTIMENT_LABELS:
        problems.append(f"sentiment.label must be one of {', '.join(SENTIMENT_LABELS)}")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        problems.append("sentiment.score must be a number")
    elif not -1.0 <= float(score) <= 1.0:
        problems.append("sentiment.score must be between -1 and 1")

    keywords = _clean_terms(data.get("keywords"), limit=KEYWORDS_MAX + 1)
    if not (KEYWORDS_MIN <= len(keywords) <= KEYWORDS_MAX):
        problems.append(f"keywords must contain {KEYWORDS_MIN}-{KEYWORDS_MAX} distinct strings")

    topics = data.get("topics", [])
    if not isinstance(topics, list):
        problems.append("topics must be an array of strings")
        topics = []

    if problems:
        raise SchemaValidationFailure(problems)

    return {
        "summary": summary,
        "sentiment_label": label,
        "sentiment_score": float(score),
        "keywords": keywords,
        "topics": sorted(set(_clean_terms(topics, limit=TOPICS_MAX))),
    }

def frequency_keywords(text: str, n: int = KEYWORDS_MAX) -> List[str]:
    """Most frequent non-stopword terms, first occurrence breaking ties."""
    words = [w.lower().strip("'-") for w in _WORD_RE.findall(text or "")]
    words = [w for w in words if w and w not in STOPWORDS]
    counts = Counter(words)
    first_seen = {w: i for i, w in reversed(list(enumerate(words)))}
    ranked = sorted(counts, key=lambda w: (-counts[w], first_seen[w]))
    return ranked[:n]

def fallback_metadata(article: Article, reason: str) -> ArticleMetadata:
    text = article.body or article.title or ""
    summary = " ".join(text.split())[:FALLBACK_SUMMARY_CHARS]
    logger.warning("EXTRACT_DEGRADED", extra={"article_id": article.id, "reason": reason})
    return ArticleMetadata(
        article_id=article.id,
        summary=summary,
        sentiment_label="neutral",
        sentiment_score=0.0,
        keywords=frequency_keywords(f"{article.title or ''} {article.body or ''}"),
        topics=[],
        generated_at=datetime.now(timezone.utc),
        model_version=FALLBACK_MODEL_VERSION,
        degraded=True,
    )


class MetadataExtractor:
    """
    Article -> ArticleMetadata through the gate at batch priority.

    Never raises: one strict retry on malformed output, then a degraded,
    explicitly flagged fallback. Article processing must not halt on the model.
    """

    def __init__(
        self,
        gate: InferenceGate,
        cache: SemanticCache,
        safety: SafetyValidator,
        max_body_chars: int = EXTRACT_MAX_BODY_CHARS,
    ):
        self.gate = gate
        self.cache = cache
        self.safety = safety
        self.max_body_chars = max_body_chars

    async def extract(self, article: Article) -> ArticleMetadata:
        title = article.title or ""
        text = f"{title}\n{article.body or ''}"

        verdict = self.safety.check_input(text)
        if verdict.rejected:
            return fallback_metadata(article, f"unsafe input: {verdict.reason}")

        model_version = self.gate.model_version
        key = make_key("metadata", text, extra=(model_version,))
        cached = self.cache.get("metadata", key)
        if cached is not None:
            logger.debug("EXTRACT_CACHE_HIT", extra={"article_id": article.id})
            return ArticleMetadata(article_id=article.id, **cached)

        body, truncated = _truncate(article.body or "", self.max_body_chars)
        if truncated:
            logger.info("EXTRACT_BODY_TRUNCATED", extra={"article_id": article.id, "chars": len(article.body)})

        problems = ""
        for attempt in (1, 2):
            try:
                raw = await self.gate.submit("metadata", extract_prompt(title, body, problems), Priority.BATCH)
            except (ModelQueueTimeout, ModelExecutionFailure, JobCancelled) as e:
                return fallback_metadata(article, f"{type(e).__name__}: {e.message}")

            raw = _strip_fences(raw)
            try:
                out_verdict = self.safety.check_output(raw, stage="metadata", expect_json=True)
                if out_verdict.rejected:
                    raise OutputRejectedUnsafe(out_verdict.reason)
                fields = parse_metadata(raw)
            except (OutputRejectedUnsafe, SchemaValidationFailure) as e:
                problems = e.message
                logger.warning(
                    "EXTRACT_INVALID_OUTPUT",
                    extra={"article_id": article.id, "attempt": attempt, "error": type(e).__name__, "problems": problems},
                )
                continue

            entry = {**fields, "model_version": model_version, "generated_at": datetime.now(timezone.utc)}
            self.cache.put("metadata", key, entry)
            return ArticleMetadata(article_id=article.id, **entry)

        return fallback_metadata(article, f"schema validation failed twice: {problems}")
