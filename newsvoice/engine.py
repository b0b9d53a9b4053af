# newsvoice/engine.py
"""
Public face of the inference core.

Wires the components together and exposes the operations callers use:
extract_metadata, ingest, synthesize, compose, chat and promote. No component
other than the gate ever sees the model backend.
"""
from __future__ import annotations

from collections import OrderedDict
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from .backend import ModelBackend, OpenAIBackend
from .cache import SemanticCache
from .chat import ChatAdjuster
from .composer import CompositionEngine
from .config import DEFAULT_PERSONA, PERSONAS_FILE
from .extractor import MetadataExtractor
from .gate import InferenceGate
from .logging_setup import get_logger
from .models import Article, ArticleMetadata
from .personas import Persona, PersonaRegistry
from .retrieval import RetrievalIndex
from .safety import SafetyValidator
from .schema import ComposedSegment, PersonaAdjustment, SynthesisResult
from .synthesis import SynthesisOrchestrator

logger = get_logger("newsvoice.engine")

RECENT_RESULTS = 500


class NewsVoiceEngine:
    def __init__(
        self,
        backend: Optional[ModelBackend] = None,
        *,
        gate: Optional[InferenceGate] = None,
        cache: Optional[SemanticCache] = None,
        index: Optional[RetrievalIndex] = None,
        registry: Optional[PersonaRegistry] = None,
        safety: Optional[SafetyValidator] = None,
        default_persona: str = DEFAULT_PERSONA,
        on_adjustment: Optional[Callable[[PersonaAdjustment, str], None]] = None,
    ):
        self.safety = safety or SafetyValidator()
        self.cache = cache or SemanticCache()
        self.index = index or RetrievalIndex()
        self.registry = registry or PersonaRegistry.from_file(PERSONAS_FILE)
        self.gate = gate or InferenceGate(backend or OpenAIBackend())
        self.default_persona = default_persona

        self.extractor = MetadataExtractor(self.gate, self.cache, self.safety)
        self.synthesizer = SynthesisOrchestrator(self.gate, self.cache, self.index, self.safety)
        self.composer = CompositionEngine(self.gate, self.cache, self.safety)
        self.chat_adjuster = ChatAdjuster(self.gate, self.cache, self.safety, self.registry, self.composer,
                                          default_persona=default_persona, on_adjustment=on_adjustment)
        # Recent results by id, so HTTP callers can compose by reference
        self._results: "OrderedDict[str, SynthesisResult]" = OrderedDict()

    # ---------- lifecycle ----------

    def start(self) -> None:
        self.gate.start()

    async def close(self) -> None:
        await self.gate.close()

    def warm(self, rows: Iterable[Tuple[Article, ArticleMetadata]]) -> int:
        n = 0
        for article, md in rows:
            if self.index.add(article, md):
                n += 1
        logger.info("INDEX_WARMED", extra={"entries": n})
        return n

    # ---------- operations ----------

    async def extract_metadata(self, article: Article) -> ArticleMetadata:
        return await self.extractor.extract(article)

    async def ingest(self, articles: Iterable[Article]) -> List[ArticleMetadata]:
        """Extract and index a batch. Sequential on purpose: the gate serializes anyway,
        and a flood of batch jobs would only crowd the queue."""
        out: List[ArticleMetadata] = []
        for article in articles:
            md = await self.extractor.extract(article)
            self.index.add(article, md)
            out.append(md)
        return out

    async def synthesize(
        self,
        query: str,
        article_ids: Iterable[int],
        session_id: Optional[str] = None,
    ) -> SynthesisResult:
        result = await self.synthesizer.synthesize(query, article_ids)
        self._remember(result)
        if session_id:
            self.chat_adjuster.bind_synthesis(session_id, result)
        return result

    def get_result(self, synthesis_id: str) -> Optional[SynthesisResult]:
        return self._results.get(synthesis_id)

    async def compose(
        self,
        synthesis_result: SynthesisResult,
        persona_name: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> ComposedSegment:
        self.chat_adjuster.screen_overrides(overrides, stage="composition")
        session = self.chat_adjuster.get_session(session_id) if session_id else None
        if session is not None and persona_name is None and not overrides:
            # Keep speaking in the session's (possibly adjusted) voice
            snapshot = session.persona
        else:
            snapshot = self.registry.resolve(persona_name or self.default_persona, overrides)
            if session_id and session is None:
                session = self.chat_adjuster.open_session(session_id, persona_name, overrides)
        if session_id:
            self.chat_adjuster.bind_synthesis(session_id, synthesis_result)
        return await self.composer.compose(synthesis_result, snapshot)

    async def chat(self, session_id: str, message: str) -> Tuple[PersonaAdjustment, Optional[ComposedSegment]]:
        return await self.chat_adjuster.handle(session_id, message)

    def promote(self, session_id: str) -> Persona:
        """Explicitly make a session's adjusted persona the new base version."""
        return self.registry.promote(self.chat_adjuster.snapshot(session_id))

    def stats(self) -> dict:
        return {"gate": self.gate.stats(), "cache": self.cache.stats(), "index": len(self.index)}

    def _remember(self, result: SynthesisResult) -> None:
        self._results[result.id] = result
        self._results.move_to_end(result.id)
        while len(self._results) > RECENT_RESULTS:
            self._results.popitem(last=False)
