# newsvoice/composer.py
from __future__ import annotations

from typing import List, Optional, Tuple

from .cache import SemanticCache, make_key
from .config import COMPOSE_TARGET_WORDS, COMPOSE_TOLERANCE
from .gate import InferenceGate, Priority
from .logging_setup import get_logger
from .personas import PersonaSnapshot
from .prompts import COMPOSE_CORRECTION, compose_prompt
from .safety import SafetyValidator
from .schema import ComposedSegment, SynthesisResult

logger = get_logger("newsvoice.composer")


def word_count(text: str) -> int:
    return len((text or "").split())


class CompositionEngine:
    """
    Renders a SynthesisResult in a persona's voice.

    One corrective retry, then the best safe draft flagged degraded. A segment,
    even an imperfect one, is preferable to no output; queue and backend
    failures still propagate since there is nothing to degrade to.
    """

    def __init__(
        self,
        gate: InferenceGate,
        cache: SemanticCache,
        safety: SafetyValidator,
        target_words: int = COMPOSE_TARGET_WORDS,
        tolerance: float = COMPOSE_TOLERANCE,
    ):
        self.gate = gate
        self.cache = cache
        self.safety = safety
        self.target_words = target_words
        self.tolerance = tolerance

    @property
    def bounds(self) -> Tuple[int, int]:
        lo = int(self.target_words * (1 - self.tolerance))
        hi = int(self.target_words * (1 + self.tolerance)) + 1
        return max(1, lo), hi

    def cache_key(self, synthesis: SynthesisResult, persona: PersonaSnapshot) -> str:
        return make_key("composition", synthesis.cache_key or synthesis.id, persona_version=persona.identity,
                        extra=(str(self.target_words), "degraded" if synthesis.degraded else "full"))

    async def compose(self, synthesis: SynthesisResult, persona: PersonaSnapshot) -> ComposedSegment:
        if synthesis.empty or not synthesis.synthesized_text.strip():
            logger.info("COMPOSE_EMPTY_SYNTHESIS", extra={"synthesis_id": synthesis.id})
            return ComposedSegment(synthesis_result_id=synthesis.id, persona_snapshot=persona, text="", word_count=0)

        key = self.cache_key(synthesis, persona)
        cached: Optional[ComposedSegment] = self.cache.get("composition", key)
        if cached is not None:
            logger.info("COMPOSE_CACHE_HIT", extra={"synthesis_id": synthesis.id, "persona": persona.identity})
            # Same text, but report the caller's snapshot: equal identities can differ in revision
            return cached.model_copy(update={"synthesis_result_id": synthesis.id, "persona_snapshot": persona})

        lo, hi = self.bounds
        drafts: List[Tuple[str, int]] = []   # safe drafts that only missed the length window
        correction = ""
        for attempt in (1, 2):
            prompt = compose_prompt(synthesis.synthesized_text, persona, self.target_words, correction)
            text = (await self.gate.submit("composition", prompt, Priority.SYNTHESIS)).strip()
            wc = word_count(text)

            verdict = self.safety.check_output(text, stage="composition")
            if verdict.rejected:
                reason = verdict.reason
            elif not lo <= wc <= hi:
                reason = f"{wc} words, expected {lo}-{hi}"
                drafts.append((text, wc))
            else:
                segment = ComposedSegment(synthesis_result_id=synthesis.id, persona_snapshot=persona,
                                          text=text, word_count=wc)
                self.cache.put("composition", key, segment)
                logger.info("COMPOSE_OK", extra={"synthesis_id": synthesis.id, "persona": persona.identity,
                                                 "words": wc, "attempt": attempt})
                return segment

            logger.warning("COMPOSE_INVALID_OUTPUT", extra={"attempt": attempt, "reason": reason,
                                                            "persona": persona.identity})
            correction = COMPOSE_CORRECTION.render(reason=reason, lo=lo, hi=hi)

        if drafts:
            text, wc = min(drafts, key=lambda d: abs(d[1] - self.target_words))
        else:
            # Nothing safe came back; read the synthesis itself rather than nothing
            text = synthesis.synthesized_text.strip()
            wc = word_count(text)
        logger.warning("COMPOSE_DEGRADED", extra={"synthesis_id": synthesis.id, "words": wc,
                                                  "from_draft": bool(drafts)})
        return ComposedSegment(synthesis_result_id=synthesis.id, persona_snapshot=persona,
                               text=text, word_count=wc, degraded=True)
