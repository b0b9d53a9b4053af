from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timezone
import uuid

from .personas import PersonaSnapshot


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---- Core records (immutable once created) ----

class SynthesisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    query: str
    article_ids: Tuple[int, ...] = ()
    synthesized_text: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    cache_key: str = ""
    empty: bool = False      # no candidate cleared the relevance floor; no model call was made
    degraded: bool = False


class ComposedSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    synthesis_result_id: str
    persona_snapshot: PersonaSnapshot
    text: str
    word_count: int
    created_at: datetime = Field(default_factory=_utcnow)
    degraded: bool = False


class PersonaAdjustment(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    base_persona_version: str     # version tag the delta was applied over
    result_persona_version: str   # version tag of the snapshot it produced
    requested_delta: Dict[str, Any] = Field(default_factory=dict)
    applied_delta: Dict[str, Any] = Field(default_factory=dict)
    rejected_fields: List[str] = Field(default_factory=list)
    parser: str = "model"         # model | heuristic
    timestamp: datetime = Field(default_factory=_utcnow)


# ---- HTTP request bodies ----

class SynthesizeIn(BaseModel):
    query: str
    article_ids: List[int]
    session_id: Optional[str] = None

class ComposeIn(BaseModel):
    synthesis_result_id: str
    persona_name: Optional[str] = None
    overrides: Optional[Dict[str, Any]] = None
    session_id: Optional[str] = None

class ChatIn(BaseModel):
    message: str
    persona_name: Optional[str] = None  # only used when the session is new
