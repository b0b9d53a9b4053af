# newsvoice/cache.py
"""
Semantic cache for model outputs.

Keys are content-addressed: stage + canonicalized input (+ persona version and
any other discriminator such as the model version). A changed input, persona or
model simply produces a different key, so entries are never deleted in steady
state; they age out by TTL.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import hashlib
import re
import threading
import time

from .config import CACHE_TTL_S, CACHE_KEY_PREFIX_CHARS
from .logging_setup import get_logger

logger = get_logger("newsvoice.cache")

STAGES = ("metadata", "synthesis", "composition", "chat")

_WS_RE = re.compile(r"\s+")


def canonicalize(text: str, prefix_chars: int = CACHE_KEY_PREFIX_CHARS) -> str:
    """Collapse whitespace, lowercase, and replace anything past the prefix by its hash."""
    norm = _WS_RE.sub(" ", (text or "")).strip().lower()
    if len(norm) <= prefix_chars:
        return norm
    tail = hashlib.sha256(norm[prefix_chars:].encode("utf-8")).hexdigest()
    return f"{norm[:prefix_chars]}#{tail}"


def make_key(stage: str, text: str, persona_version: Optional[str] = None, extra: Iterable[str] = ()) -> str:
    parts: List[str] = [stage, canonicalize(text), persona_version or "-"]
    parts.extend(str(e) for e in extra)
    digest = hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()
    return f"{stage}:{digest}"


@dataclass(frozen=True)
class CacheEntry:
    stage: str
    key: str
    value: Any
    created_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return self.ttl > 0 and now - self.created_at >= self.ttl


class SemanticCache:
    """
    In-process cache with per-key locking.

    Locks are striped by key hash, so writers to different keys never contend
    and there is no global lock. Readers do a plain dict lookup.
    """

    def __init__(self, default_ttl: float = CACHE_TTL_S, stripes: int = 32):
        self.default_ttl = default_ttl
        self._entries: Dict[str, CacheEntry] = {}
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._hits = 0
        self._misses = 0

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    # Keys are already stage-prefixed by make_key; stage is checked for mix-ups
    def get(self, stage: str, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None or entry.stage != stage:
            self._misses += 1
            return None
        if entry.expired(time.time()):
            with self._lock_for(key):
                # Another writer may have refreshed it meanwhile
                if self._entries.get(key) is entry:
                    del self._entries[key]
            self._misses += 1
            logger.debug("CACHE_EXPIRED", extra={"stage": stage, "key": key})
            return None
        self._hits += 1
        logger.debug("CACHE_HIT", extra={"stage": stage, "key": key})
        return entry.value

    def put(self, stage: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if stage not in STAGES:
            raise ValueError(f"unknown cache stage: {stage}")
        entry = CacheEntry(stage=stage, key=key, value=value, created_at=time.time(),
                           ttl=self.default_ttl if ttl is None else ttl)
        with self._lock_for(key):
            self._entries[key] = entry

    def purge_expired(self) -> int:
        now = time.time()
        stale = [k for k, e in list(self._entries.items()) if e.expired(now)]
        for k in stale:
            with self._lock_for(k):
                e = self._entries.get(k)
                if e is not None and e.expired(now):
                    del self._entries[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, int]:
        return {"entries": len(self._entries), "hits": self._hits, "misses": self._misses}
