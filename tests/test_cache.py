import pytest
from freezegun import freeze_time

from newsvoice.cache import SemanticCache, canonicalize, make_key


def test_keys_ignore_whitespace_and_case():
    a = make_key("synthesis", "Cloud   Computing\ntrends")
    b = make_key("synthesis", "cloud computing trends")
    assert a == b
    assert a.startswith("synthesis:")


def test_keys_differ_by_persona_and_extra():
    base = make_key("composition", "text", persona_version="anchor@v1#abc")
    assert base != make_key("composition", "text", persona_version="anchor@v2#abc")
    assert base != make_key("composition", "text", persona_version="anchor@v1#abc", extra=("m2",))
    assert make_key("metadata", "text") != make_key("synthesis", "text")


def test_long_text_is_hashed_past_prefix():
    head = "a" * 10
    out = canonicalize(head + "b" * 50, prefix_chars=10)
    assert out.startswith(head + "#")
    assert canonicalize(head + "b" * 50, 10) != canonicalize(head + "c" * 50, 10)


def test_get_put_and_stage_mismatch():
    cache = SemanticCache(default_ttl=60)
    key = make_key("chat", "warmer please")
    assert cache.get("chat", key) is None
    cache.put("chat", key, {"tone": "warm"})
    assert cache.get("chat", key) == {"tone": "warm"}
    assert cache.get("metadata", key) is None
    assert cache.stats()["hits"] == 1


def test_unknown_stage_rejected():
    with pytest.raises(ValueError):
        SemanticCache().put("bogus", "k", 1)


def test_entries_expire_by_ttl():
    cache = SemanticCache(default_ttl=60)
    key = make_key("metadata", "article body")
    with freeze_time("2025-01-10 12:00:00") as frozen:
        cache.put("metadata", key, {"summary": "s"})
        frozen.tick(59)
        assert cache.get("metadata", key) is not None
        frozen.tick(2)
        assert cache.get("metadata", key) is None
        assert len(cache) == 0


def test_purge_expired():
    cache = SemanticCache(default_ttl=10)
    with freeze_time("2025-01-10 12:00:00") as frozen:
        cache.put("metadata", "metadata:a", 1)
        cache.put("metadata", "metadata:b", 2, ttl=100)
        frozen.tick(11)
        assert cache.purge_expired() == 1
        assert len(cache) == 1
