# tests/test_scheduler.py
from freezegun import freeze_time

from newsvoice.cache import make_key
from newsvoice.scheduler import _job_listener, add_jobs, purge_cache, scheduler


def test_purge_cache_drops_expired_entries(engine):
    with freeze_time("2025-01-10 12:00:00") as frozen:
        engine.cache.put("metadata", make_key("metadata", "a"), {"summary": "s"}, ttl=60)
        engine.cache.put("chat", make_key("chat", "b"), {"tone": "dry"}, ttl=3600)
        frozen.tick(120)
        assert purge_cache(engine) == 1
    assert len(engine.cache) == 1


def test_ingest_and_purge_jobs_registered(engine):
    try:
        add_jobs(engine)
        assert sorted(j.id for j in scheduler.get_jobs()) == ["cache_purge", "ingest"]
        ingest = next(j for j in scheduler.get_jobs() if j.id == "ingest")
        assert ingest.max_instances == 1
        assert ingest.args == (engine,)
    finally:
        scheduler.remove_all_jobs()
        scheduler.remove_listener(_job_listener)
