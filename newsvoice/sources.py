# newsvoice/sources.py
"""
RSS/Atom feeds -> Article rows.

Only what the ingest workflow needs: entries inside a time window, HTML stripped,
and one row per content_hash. Per-feed state and retry policy are not kept here;
the next scheduled ingest simply tries again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import hashlib
import html
import re
import time
import feedparser

from .config import FEED_URLS
from .logging_setup import get_logger
from .models import Article

logger = get_logger("newsvoice.sources")

_TAG_RE = re.compile(r"<[^>]+>")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
PROVIDER_PAUSE_S = 0.3


def _entry_datetime(entry) -> Optional[datetime]:
    # feedparser exposes normalized UTC struct_time values as *_parsed
    for attr in ("published_parsed", "updated_parsed"):
        parsed = getattr(entry, attr, None)
        if not parsed:
            continue
        try:
            return datetime(*parsed[:6], tzinfo=timezone.utc)
        except (TypeError, ValueError):
            continue
    return None


def _clean_text(raw: str) -> str:
    return " ".join(html.unescape(_TAG_RE.sub(" ", raw or "")).split())


def content_hash(title: str, body: str) -> str:
    """sha1 over lowercased, whitespace-collapsed title + body."""
    norm = " ".join(f"{title or ''} {body or ''}".lower().split())
    return hashlib.sha1(norm.encode("utf-8", errors="ignore")).hexdigest()


def unique_by_hash(articles: List[Article]) -> List[Article]:
    """First occurrence of each content_hash wins; order preserved."""
    kept = {}
    for article in articles:
        kept.setdefault(article.content_hash, article)
    return list(kept.values())


@dataclass
class FeedBatch:
    provider: str
    items: List[Article]


class FeedProvider:
    name = "rss"

    def __init__(self, feeds: Optional[List[str]] = None):
        self.feeds = feeds if feeds is not None else FEED_URLS

    @staticmethod
    def _body(entry) -> str:
        # full content when the feed ships it, else the summary
        content = getattr(entry, "content", None)
        if content:
            return _clean_text(" ".join(part.get("value", "") for part in content))
        return _clean_text(getattr(entry, "summary", ""))

    def _articles(self, url: str, parsed, since: datetime) -> List[Article]:
        feed_id = parsed.feed.get("id") or parsed.feed.get("link") or url
        out: List[Article] = []
        for entry in parsed.entries:
            published = _entry_datetime(entry)
            if published is not None and published < since:
                continue
            title = _clean_text(getattr(entry, "title", ""))
            body = self._body(entry)
            if not (title or body):
                continue
            out.append(Article(
                source_feed_id=feed_id,
                url=getattr(entry, "link", ""),
                title=title,
                body=body,
                published_at=published,
                content_hash=content_hash(title, body),
            ))
        return out

    def fetch(self, since: datetime, limit: int = 200) -> FeedBatch:
        collected: List[Article] = []
        for url in self.feeds:
            try:
                parsed = feedparser.parse(url)
            except Exception as exc:
                logger.warning("FEED_FAILED", extra={"feed": url, "error": type(exc).__name__})
                continue
            collected.extend(self._articles(url, parsed, since))
        return FeedBatch(provider=self.name, items=unique_by_hash(collected)[:limit])


def fetch_all(
    since_hours: int = 24,
    limit_per_provider: int = 200,
    providers: Optional[List[FeedProvider]] = None,
) -> List[Article]:
    """Articles newer than `since_hours` from every provider, newest first.

    A provider that raises is logged and skipped.
    """
    since = datetime.now(timezone.utc) - timedelta(hours=since_hours)
    providers = providers if providers is not None else [FeedProvider()]

    batches: List[Article] = []
    for i, provider in enumerate(providers):
        if i:
            time.sleep(PROVIDER_PAUSE_S)
        try:
            batches.extend(provider.fetch(since=since, limit=limit_per_provider).items)
        except Exception as exc:
            logger.warning("PROVIDER_FAILED", extra={"provider": provider.name, "error": type(exc).__name__})

    merged = unique_by_hash(batches)
    merged.sort(key=lambda a: a.published_at or _EPOCH, reverse=True)
    return merged
