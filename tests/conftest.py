# tests/conftest.py
import json
import pathlib
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

import pytest
from dotenv import load_dotenv

# Loaded at import time: newsvoice.config reads the environment when first imported
load_dotenv(pathlib.Path(__file__).parent / ".env.test", override=True)

from newsvoice.backend import Prompt  # noqa: E402
from newsvoice.prompts import CHAT_SYSTEM, COMPOSE_SYSTEM, EXTRACT_SYSTEM, SYNTHESIS_SYSTEM  # noqa: E402

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


def words(n: int, word: str = "signal") -> str:
    return " ".join([word] * n)


def _title_of(prompt: Prompt) -> str:
    m = re.search(r"^TITLE: (.*)$", prompt.user, re.MULTILINE)
    return m.group(1) if m else ""


def default_responder(prompt: Prompt) -> str:
    if prompt.system == EXTRACT_SYSTEM:
        title = _title_of(prompt)
        kws = [w.lower() for w in re.findall(r"[A-Za-z]{4,}", title)]
        for filler in ("business", "economy", "market", "industry", "outlook"):
            if len(kws) >= 5:
                break
            if filler not in kws:
                kws.append(filler)
        return json.dumps({
            "summary": f"Summary of the article titled {title}.",
            "sentiment": {"label": "neutral", "score": 0.0},
            "keywords": kws[:10],
            "topics": ["business"],
        })
    if prompt.system == SYNTHESIS_SYSTEM:
        return "Briefing: " + words(150)
    if prompt.system == COMPOSE_SYSTEM:
        return words(300)
    if prompt.system == CHAT_SYSTEM:
        return "{}"
    return "ok"


class FakeBackend:
    """Scripted stand-in for the model server; records every call and its wall-clock interval."""

    model_version = "fake-1"

    def __init__(self, responder: Optional[Callable[[Prompt], object]] = None, delay: float = 0.0):
        self.responder = responder or default_responder
        self.delay = delay
        self.calls: List[Prompt] = []
        self.intervals: List[Tuple[float, float]] = []
        self.active = 0
        self.max_active = 0
        self.gate_open = threading.Event()
        self.gate_open.set()
        self._lock = threading.Lock()

    def complete(self, prompt: Prompt) -> str:
        start = time.monotonic()
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.gate_open.wait(5)
            if self.delay:
                time.sleep(self.delay)
            self.calls.append(prompt)
            out = self.responder(prompt)
            if isinstance(out, Exception):
                raise out
            return out
        finally:
            with self._lock:
                self.active -= 1
            self.intervals.append((start, time.monotonic()))

    def stream(self, prompt: Prompt):
        for w in self.complete(prompt).split(" "):
            yield w + " "

    def calls_for(self, system: str) -> List[Prompt]:
        return [c for c in self.calls if c.system == system]


def make_article(aid: int, title: str, body: str = "", published_at: Optional[datetime] = None):
    from newsvoice.models import Article
    from newsvoice.sources import content_hash
    return Article(id=aid, source_feed_id="feed-1", title=title, body=body or title,
                   published_at=published_at or NOW - timedelta(hours=2),
                   content_hash=content_hash(title, body or title))


def make_metadata(aid: int, keywords, topics=(), generated_at: Optional[datetime] = None,
                  summary: str = "A short factual summary of the story.", model_version: str = "fake-1"):
    from newsvoice.models import ArticleMetadata
    return ArticleMetadata(article_id=aid, summary=summary, sentiment_label="neutral", sentiment_score=0.0,
                           keywords=list(keywords), topics=list(topics),
                           generated_at=generated_at or NOW - timedelta(hours=1), model_version=model_version)


@pytest.fixture()
def backend():
    return FakeBackend()


@pytest.fixture()
def engine(backend):
    from newsvoice.engine import NewsVoiceEngine
    return NewsVoiceEngine(backend)


@pytest.fixture()
def seeded_engine(engine):
    """Engine whose index holds three business stories, none about cloud computing."""
    stories = [
        (1, "Retailer posts strong holiday sales", ["retail", "holiday sales", "consumer spending", "stores", "revenue"]),
        (2, "Central bank holds interest rates", ["interest rates", "central bank", "inflation", "monetary policy", "economy"]),
        (3, "Automaker recalls electric SUVs", ["recall", "electric vehicles", "automaker", "battery", "safety"]),
    ]
    for aid, title, kws in stories:
        engine.index.add(make_article(aid, title), make_metadata(aid, kws, topics=["business"]))
    return engine


@pytest.fixture(scope="session", autouse=True)
def _init_db():
    from newsvoice.store import init_db
    init_db()


@pytest.fixture()
def client(backend):
    from fastapi.testclient import TestClient
    from newsvoice.engine import NewsVoiceEngine
    from newsvoice.main import app
    app.state.engine = NewsVoiceEngine(backend)
    with TestClient(app) as c:
        yield c
