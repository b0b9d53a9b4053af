# newsvoice/synthesis.py
from __future__ import annotations

from typing import Iterable, List, Optional

from .cache import SemanticCache, make_key
from .config import QUERY_MAX_CHARS, SYNTHESIS_MAX_CHARS
from .errors import InputRejectedUnsafe, InputTooLong
from .gate import InferenceGate, Priority
from .logging_setup import get_logger
from .prompts import synthesis_prompt
from .retrieval import RetrievalCandidate, RetrievalIndex
from .safety import SafetyValidator
from .schema import SynthesisResult

logger = get_logger("newsvoice.synthesis")


def normalize_query(query: str) -> str:
    return " ".join((query or "").split())


class SynthesisOrchestrator:
    """
    query + candidate pool -> SynthesisResult.

    The cache is checked before retrieval and before the gate; an empty
    retrieval returns an empty result without touching the model.
    """

    def __init__(
        self,
        gate: InferenceGate,
        cache: SemanticCache,
        index: RetrievalIndex,
        safety: SafetyValidator,
        max_query_chars: int = QUERY_MAX_CHARS,
        max_output_chars: int = SYNTHESIS_MAX_CHARS,
    ):
        self.gate = gate
        self.cache = cache
        self.index = index
        self.safety = safety
        self.max_query_chars = max_query_chars
        self.max_output_chars = max_output_chars

    def cache_key(self, query: str, article_ids: Iterable[int]) -> str:
        ids = sorted(set(article_ids))
        return make_key(
            "synthesis",
            query,
            extra=(",".join(str(i) for i in ids), self.index.fingerprint(ids), self.gate.model_version),
        )

    async def synthesize(
        self,
        query: str,
        candidate_article_ids: Iterable[int],
        k: Optional[int] = None,
    ) -> SynthesisResult:
        norm = normalize_query(query)
        if not norm:
            # Nothing to match against: same outcome as a pool with no relevant articles
            logger.info("SYNTHESIS_EMPTY", extra={"query": "", "reason": "blank query"})
            return SynthesisResult(query="", article_ids=(), empty=True)
        # Fail fast rather than truncating: a silently shortened query would change the cache key
        if len(norm) > self.max_query_chars:
            raise InputTooLong(f"query is {len(norm)} chars, limit is {self.max_query_chars}",
                               length=len(norm), limit=self.max_query_chars)
        verdict = self.safety.check_input(norm)
        if verdict.rejected:
            raise InputRejectedUnsafe(verdict.reason, stage="synthesis")

        ids = sorted(set(candidate_article_ids))
        key = self.cache_key(norm, ids)
        cached = self.cache.get("synthesis", key)
        if cached is not None:
            logger.info("SYNTHESIS_CACHE_HIT", extra={"query": norm[:80], "cache_key": key})
            return cached

        candidates = self.index.query(norm, ids, k)
        if not candidates:
            logger.info("SYNTHESIS_EMPTY", extra={"query": norm[:80], "pool": len(ids)})
            return SynthesisResult(query=norm, article_ids=(), cache_key=key, empty=True)

        selected = tuple(c.article_id for c in candidates)
        correction = ""
        for attempt in (1, 2):
            raw = await self.gate.submit("synthesis", synthesis_prompt(norm, candidates, correction),
                                         Priority.SYNTHESIS)
            text = (raw or "").strip()
            problem = self._validate(text)
            if problem is None:
                result = SynthesisResult(query=norm, article_ids=selected, synthesized_text=text, cache_key=key)
                self.cache.put("synthesis", key, result)
                logger.info("SYNTHESIS_OK", extra={"query": norm[:80], "articles": list(selected),
                                                   "chars": len(text), "attempt": attempt})
                return result
            logger.warning("SYNTHESIS_INVALID_OUTPUT", extra={"attempt": attempt, "problem": problem})
            correction = (f"Your previous answer was rejected ({problem}). Answer in plain prose, "
                          f"under {self.max_output_chars} characters.")

        return SynthesisResult(query=norm, article_ids=selected, cache_key=key, degraded=True,
                               synthesized_text=self._fallback_text(candidates))

    def _validate(self, text: str) -> Optional[str]:
        if not text:
            return "empty output"
        if len(text) > self.max_output_chars:
            return f"output longer than {self.max_output_chars} chars"
        verdict = self.safety.check_output(text, stage="synthesis")
        return verdict.reason if verdict.rejected else None

    @staticmethod
    def _fallback_text(candidates: List[RetrievalCandidate]) -> str:
        # Stitched summaries: already validated at extraction time
        return "\n\n".join(f"{c.article.title}: {c.metadata.summary}" for c in candidates)
