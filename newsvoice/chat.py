# newsvoice/chat.py
"""
Chat-driven persona steering.

Each session is a small sequential state machine:

    Idle -> AwaitingInstruction -> Parsing -> Validating -> Applying -> Recomposing -> Idle

Messages for one session are serialized through the session lock (asyncio.Lock
wakes waiters in arrival order), so adjustments land in receipt order and each
one is computed against the snapshot the previous one produced. Sessions never
share state and never write to the base registry.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
import asyncio
import json
import re

from .cache import SemanticCache, make_key
from .composer import CompositionEngine
from .config import CHAT_MESSAGE_MAX_CHARS, DEFAULT_PERSONA
from .errors import InputRejectedUnsafe, InputTooLong
from .gate import InferenceGate, Priority
from .logging_setup import get_logger, session_id_var
from .personas import ADJUSTABLE_FIELDS, PersonaRegistry, PersonaSnapshot
from .prompts import chat_prompt
from .safety import SafetyValidator
from .schema import ComposedSegment, PersonaAdjustment, SynthesisResult

logger = get_logger("newsvoice.chat")


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_INSTRUCTION = "awaiting_instruction"
    PARSING = "parsing"
    VALIDATING = "validating"
    APPLYING = "applying"
    RECOMPOSING = "recomposing"


@dataclass
class ChatSession:
    session_id: str
    persona: PersonaSnapshot
    state: SessionState = SessionState.IDLE
    last_synthesis: Optional[SynthesisResult] = None
    log: List[PersonaAdjustment] = field(default_factory=list)
    waiting: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


# ---- Heuristic fallback parser (used when the model's answer is unusable) ----

TONE_WORDS = (
    "sarcastic", "skeptical", "cheerful", "serious", "warm", "upbeat", "somber", "optimistic",
    "pessimistic", "neutral", "enthusiastic", "calm", "critical", "playful", "dramatic", "friendly",
)
_STEP_RE = {
    0.3: re.compile(r"\b(a lot|much|way|significantly|really)\b"),
    0.05: re.compile(r"\b(a (tiny|little) bit|slightly|a touch)\b"),
}
_UP_RE = r"(raise|increase|higher|up|boost|more)"
_DOWN_RE = r"(lower|decrease|reduce|down|less)"


def _step(text: str) -> float:
    for size, rx in _STEP_RE.items():
        if rx.search(text):
            return size
    return 0.1


def heuristic_delta(message: str) -> Dict[str, Any]:
    text = message.lower()
    delta: Dict[str, Any] = {}
    step = _step(text)

    for fname, aliases in (("temperature", r"(temperature|creativ\w*|randomness)"),
                           ("guidance", r"(guidance|adherence|stick\w* to the persona)")):
        if re.search(rf"\b{_UP_RE}\b[^,.;]*\b{aliases}", text) or re.search(rf"\b{aliases}\b[^,.;]*\b{_UP_RE}\b", text):
            delta[fname] = f"+{step}"
        elif re.search(rf"\b{_DOWN_RE}\b[^,.;]*\b{aliases}", text) or re.search(rf"\b{aliases}\b[^,.;]*\b{_DOWN_RE}\b", text):
            delta[fname] = f"-{step}"

    tones = [w for w in TONE_WORDS if re.search(rf"\b{w}\b", text)]
    if tones:
        delta["tone"] = " and ".join(tones)

    if re.search(r"\b(less formal|informal|casual|relaxed|laid[- ]back)\b", text):
        delta["formality"] = "casual"
    elif re.search(r"\b(more formal|formal|professional)\b", text):
        delta["formality"] = "formal"

    if re.search(r"\b(simpler|simple words|plain language|easier)\b", text):
        delta["vocabulary_level"] = "simple"
    elif re.search(r"\b(advanced|sophisticated|technical|richer vocabulary)\b", text):
        delta["vocabulary_level"] = "advanced"

    if re.search(r"\b(sarcas\w*)\b", text):
        delta["humor"] = "sarcastic"
    elif re.search(r"\b(no jokes|no humou?r|not funny)\b", text):
        delta["humor"] = "none"
    elif re.search(r"\bdry\b", text):
        delta["humor"] = "dry"
    elif re.search(r"\b(funny|funnier|jokes?|humou?r)\b", text):
        delta["humor"] = "light"

    return delta


class ChatAdjuster:
    def __init__(
        self,
        gate: InferenceGate,
        cache: SemanticCache,
        safety: SafetyValidator,
        registry: PersonaRegistry,
        composer: CompositionEngine,
        default_persona: str = DEFAULT_PERSONA,
        on_adjustment: Optional[Callable[[PersonaAdjustment, str], None]] = None,
        max_message_chars: int = CHAT_MESSAGE_MAX_CHARS,
    ):
        self.gate = gate
        self.cache = cache
        self.safety = safety
        self.registry = registry
        self.composer = composer
        self.default_persona = default_persona
        self.on_adjustment = on_adjustment
        self.max_message_chars = max_message_chars
        self._sessions: Dict[str, ChatSession] = {}

    # ---------- session management ----------

    def open_session(
        self,
        session_id: str,
        persona_name: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            self.screen_overrides(overrides, stage="chat", session=session_id)
            snapshot = self.registry.resolve(persona_name or self.default_persona, overrides)
            session = ChatSession(session_id=session_id, persona=snapshot)
            self._sessions[session_id] = session
            logger.info("SESSION_OPENED", extra={"session": session_id, "persona": snapshot.identity})
        return session

    def screen_overrides(self, overrides: Optional[Mapping[str, Any]], **context: Any) -> None:
        """Free-text persona overrides end up in the compose prompt, so they go through input screening."""
        verdict = self.safety.check_fields(overrides)
        if verdict.rejected:
            raise InputRejectedUnsafe(verdict.reason, **context)

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.get(session_id)

    def close_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def bind_synthesis(self, session_id: str, result: SynthesisResult) -> None:
        self.open_session(session_id).last_synthesis = result

    def snapshot(self, session_id: str) -> PersonaSnapshot:
        return self.open_session(session_id).persona

    def history(self, session_id: str) -> List[PersonaAdjustment]:
        session = self._sessions.get(session_id)
        return list(session.log) if session else []

    # ---------- the state machine ----------

    async def handle(self, session_id: str, message: str) -> Tuple[PersonaAdjustment, Optional[ComposedSegment]]:
        message = (message or "").strip()
        if len(message) > self.max_message_chars:
            raise InputTooLong(f"chat message is {len(message)} chars, limit is {self.max_message_chars}",
                               length=len(message), limit=self.max_message_chars)

        session = self.open_session(session_id)
        token = session_id_var.set(session_id)
        session.waiting += 1
        acquired = False
        try:
            # No await between arrival and lock acquisition: queue order == receipt order
            async with session.lock:
                acquired = True
                session.waiting -= 1
                try:
                    return await self._process(session, message)
                finally:
                    self._transition(session, SessionState.IDLE)
        finally:
            if not acquired:
                session.waiting -= 1
            session_id_var.reset(token)

    async def _process(self, session: ChatSession, message: str) -> Tuple[PersonaAdjustment, Optional[ComposedSegment]]:
        self._transition(session, SessionState.AWAITING_INSTRUCTION)
        verdict = self.safety.check_input(message)
        if verdict.rejected:
            raise InputRejectedUnsafe(verdict.reason, stage="chat", session=session.session_id)

        self._transition(session, SessionState.PARSING)
        base = session.persona
        requested, parser = await self._parse(message, base)

        self._transition(session, SessionState.VALIDATING)
        derived, applied, rejected = self.registry.apply_delta(base, requested)

        self._transition(session, SessionState.APPLYING)
        adjustment = PersonaAdjustment(
            session_id=session.session_id,
            base_persona_version=base.version_tag,
            result_persona_version=derived.version_tag,
            requested_delta=dict(requested),
            applied_delta=applied,
            rejected_fields=rejected,
            parser=parser,
        )
        session.persona = derived
        session.log.append(adjustment)
        logger.info("PERSONA_ADJUSTED", extra={"from": base.version_tag, "to": derived.version_tag,
                                               "applied": applied, "rejected": rejected, "parser": parser})
        self._persist(adjustment, derived.name)

        self._transition(session, SessionState.RECOMPOSING)
        if session.last_synthesis is None:
            # Never invent a synthesis to have something to recompose
            return adjustment, None
        segment = await self.composer.compose(session.last_synthesis, derived)
        return adjustment, segment

    async def _parse(self, message: str, current: PersonaSnapshot) -> Tuple[Dict[str, Any], str]:
        settings = {f: getattr(current, f) for f in ADJUSTABLE_FIELDS}
        key = make_key("chat", message, persona_version=current.identity)
        cached = self.cache.get("chat", key)
        if cached is not None:
            return dict(cached), "model"

        raw = await self.gate.submit("chat", chat_prompt(message, settings), Priority.INTERACTIVE)
        raw = re.sub(r"^\s*```(?:json)?\s*|\s*```\s*$", "", raw or "").strip()
        verdict = self.safety.check_output(raw, stage="chat", expect_json=True)
        if verdict.allowed:
            parsed = json.loads(raw)
            verdict = self.safety.check_fields(parsed)
            if verdict.allowed:
                self.cache.put("chat", key, parsed)
                return parsed, "model"

        logger.warning("CHAT_PARSE_FALLBACK", extra={"reason": verdict.reason})
        return heuristic_delta(message), "heuristic"

    def _persist(self, adjustment: PersonaAdjustment, persona_name: str) -> None:
        if self.on_adjustment is None:
            return
        try:
            self.on_adjustment(adjustment, persona_name)
        except Exception as e:
            # The in-memory log stays authoritative for the session
            logger.exception("ADJUSTMENT_PERSIST_FAILED", extra={"handled": True, "error": type(e).__name__})

    def _transition(self, session: ChatSession, to: SessionState) -> None:
        logger.debug("SESSION_STATE", extra={"from": session.state.value, "to": to.value})
        session.state = to
