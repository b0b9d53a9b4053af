# tests/test_sources.py
from datetime import datetime, timezone

import feedparser

from newsvoice.sources import FeedProvider, content_hash, fetch_all


def _fake_feed(entries):
    fake = type("F", (), {})()
    fake.feed = {"title": "Wire", "link": "http://wire.example"}
    fake.entries = entries
    return fake


def test_fetch_all_shape(mocker):
    fake = _fake_feed([
        type("E", (), {"link": "http://a", "title": "A <b>story</b>", "summary": "sum &amp; more",
                       "published_parsed": (2025, 1, 1, 12, 0, 0, 2, 1, 0)}),
        type("E", (), {"link": "http://b", "title": "B", "summary": "sum",
                       "published_parsed": (2025, 1, 1, 13, 0, 0, 2, 1, 0)}),
    ])
    mocker.patch.object(feedparser, "parse", return_value=fake)
    mocker.patch("newsvoice.sources.time.sleep")

    items = fetch_all(since_hours=24 * 365 * 20, providers=[FeedProvider(["http://wire.example/rss"])])

    assert [a.title for a in items] == ["B", "A story"]
    first = items[1]
    assert first.body == "sum & more"
    assert first.source_feed_id == "http://wire.example"
    assert first.published_at == datetime(2025, 1, 1, 12, tzinfo=timezone.utc)
    assert first.content_hash == content_hash("A story", "sum & more")


def test_duplicates_and_old_entries_dropped(mocker):
    entry = {"link": "http://a", "title": "Same", "summary": "text",
             "published_parsed": (2025, 1, 1, 12, 0, 0, 2, 1, 0)}
    fake = _fake_feed([type("E", (), entry), type("E", (), {**entry, "link": "http://a2"})])
    mocker.patch.object(feedparser, "parse", return_value=fake)

    provider = FeedProvider(["http://x"])
    assert len(provider.fetch(since=datetime(2024, 12, 31, tzinfo=timezone.utc)).items) == 1
    assert provider.fetch(since=datetime(2025, 6, 1, tzinfo=timezone.utc)).items == []


def test_failing_feed_is_skipped(mocker):
    mocker.patch.object(feedparser, "parse", side_effect=OSError("unreachable"))
    provider = FeedProvider(["http://down"])
    assert provider.fetch(since=datetime(2025, 1, 1, tzinfo=timezone.utc)).items == []
