# newsvoice/personas.py
"""
Persona definitions and the registry that versions them.

Base personas come from configuration (personas.json) and are versioned per
name: any field change produces a new version, old versions stay readable.
Everything handed out is an immutable snapshot, so readers never observe a
half-applied change. Session-level adjustments produce derived snapshots
(revision > 0) that only reach the registry through an explicit promote().
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
import hashlib
import json
import math
import threading

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import PersonaBoundsViolation, PersonaNotFound
from .logging_setup import get_logger

logger = get_logger("newsvoice.personas")

FORMALITY_LEVELS = ("casual", "neutral", "formal")
VOCABULARY_LEVELS = ("simple", "standard", "advanced")
HUMOR_LEVELS = ("none", "light", "dry", "sarcastic")

NUMERIC_BOUNDS: Dict[str, Tuple[float, float]] = {
    "temperature": (0.0, 1.0),
    "guidance": (0.0, 1.0),
}
ENUM_FIELDS: Dict[str, Tuple[str, ...]] = {
    "formality": FORMALITY_LEVELS,
    "vocabulary_level": VOCABULARY_LEVELS,
    "humor": HUMOR_LEVELS,
}
TEXT_FIELDS = ("tone", "style")
TEXT_MAX_CHARS = 60

# What a chat instruction may touch; `style` is only settable through config or overrides
ADJUSTABLE_FIELDS = ("temperature", "guidance", "tone", "formality", "vocabulary_level", "humor")
STYLE_FIELDS = ("tone", "style", "formality", "vocabulary_level", "humor", "temperature", "guidance")


class Persona(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=64)
    version: int = Field(1, ge=1)
    tone: str = Field("neutral", max_length=TEXT_MAX_CHARS)
    style: str = Field("news anchor", max_length=TEXT_MAX_CHARS)
    formality: str = "neutral"
    vocabulary_level: str = "standard"
    humor: str = "none"
    temperature: float = Field(0.5, ge=0.0, le=1.0)
    guidance: float = Field(0.5, ge=0.0, le=1.0)

    @field_validator("formality", "vocabulary_level", "humor")
    @classmethod
    def _check_level(cls, v: str, info) -> str:
        v = (v or "").strip().lower()
        allowed = ENUM_FIELDS[info.field_name]
        if v not in allowed:
            raise ValueError(f"{info.field_name} must be one of {allowed}")
        return v

    def style_fields(self) -> Dict[str, Any]:
        return {f: getattr(self, f) for f in STYLE_FIELDS}


class PersonaSnapshot(Persona):
    """A fully resolved persona as used for one composition."""

    revision: int = 0
    overrides_hash: str = ""

    @property
    def identity(self) -> str:
        # Effective fields only: syntactically different override sets with the
        # same outcome share an identity (and therefore cache keys)
        return f"{self.name}@v{self.version}#{self.overrides_hash[:12]}"

    @property
    def version_tag(self) -> str:
        return f"{self.name}@{self.version}.{self.revision}"


def fields_hash(fields: Mapping[str, Any]) -> str:
    canon = {k: (round(v, 4) if isinstance(v, float) else v) for k, v in fields.items()}
    return hashlib.sha256(json.dumps(canon, sort_keys=True).encode("utf-8")).hexdigest()


def _coerce_numeric(value: Any, current: float) -> Optional[float]:
    """Absolute number, numeric string, or a relative string like '+0.1' / '-0.2'."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    elif isinstance(value, str):
        s = value.strip()
        try:
            if s[:1] in ("+", "-") and len(s) > 1:
                num = current + float(s)
            else:
                num = float(s)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def clean_delta(
    delta: Mapping[str, Any],
    current: Persona,
    allowed: Iterable[str] = ADJUSTABLE_FIELDS,
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Validate a sparse field map against `current`.

    Returns (applied, rejected): applied holds clamped/normalized values for the
    fields that survived; rejected lists field names that were unknown or
    carried unusable values. Never raises.
    """
    allowed = tuple(allowed)
    applied: Dict[str, Any] = {}
    rejected: List[str] = []

    for field, raw in (delta or {}).items():
        if field not in allowed:
            rejected.append(field)
            logger.info("PERSONA_FIELD_REJECTED", extra={"field": field, "reason": "unrecognized"})
            continue

        if field in NUMERIC_BOUNDS:
            num = _coerce_numeric(raw, getattr(current, field))
            if num is None:
                rejected.append(field)
                logger.info("PERSONA_FIELD_REJECTED", extra={"field": field, "reason": "not numeric"})
                continue
            lo, hi = NUMERIC_BOUNDS[field]
            clamped = round(min(hi, max(lo, num)), 4)
            if clamped != round(num, 4):
                v = PersonaBoundsViolation(field, raw, clamped)
                logger.warning("PERSONA_BOUNDS_VIOLATION", extra=v.context)
            applied[field] = clamped

        elif field in ENUM_FIELDS:
            val = str(raw).strip().lower() if raw is not None else ""
            if val not in ENUM_FIELDS[field]:
                rejected.append(field)
                logger.info("PERSONA_FIELD_REJECTED", extra={"field": field, "reason": f"invalid level {val!r}"})
                continue
            applied[field] = val

        else:  # free text
            if not isinstance(raw, str) or not raw.strip():
                rejected.append(field)
                continue
            text = " ".join(raw.split())
            if len(text) > TEXT_MAX_CHARS:
                text = text[:TEXT_MAX_CHARS].rstrip()
            applied[field] = text

    return applied, rejected


class PersonaRegistry:
    """
    Versioned base personas. Writers take a lock and append a new immutable
    version; readers just index into the version list.
    """

    def __init__(self, personas: Iterable[Union[Persona, Mapping[str, Any]]] = ()):
        self._versions: Dict[str, List[Persona]] = {}
        self._lock = threading.Lock()
        for p in personas:
            self.register(p)

    @classmethod
    def from_file(cls, path: str) -> "PersonaRegistry":
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        items = data.get("personas", data) if isinstance(data, dict) else data
        registry = cls(items)
        logger.info("PERSONAS_LOADED", extra={"path": str(path), "names": registry.names()})
        return registry

    def register(self, definition: Union[Persona, Mapping[str, Any]]) -> Persona:
        """Create a persona, or a new version of it if any field changed."""
        data = definition.style_fields() if isinstance(definition, Persona) else dict(definition)
        name = definition.name if isinstance(definition, Persona) else data.pop("name", None)
        data.pop("version", None)
        if not name:
            raise ValueError("persona definition needs a name")

        with self._lock:
            history = self._versions.get(name)
            if history:
                current = history[-1]
                candidate = Persona(name=name, version=current.version, **{**current.style_fields(), **data})
                if candidate.style_fields() == current.style_fields():
                    return current
                persona = candidate.model_copy(update={"version": current.version + 1})
                # Rebuild the list so concurrent readers keep a consistent view
                self._versions[name] = history + [persona]
            else:
                persona = Persona(name=name, version=1, **data)
                self._versions[name] = [persona]

        logger.info("PERSONA_REGISTERED", extra={"persona": name, "version": persona.version})
        return persona

    def get(self, name: str, version: Optional[int] = None) -> Persona:
        history = self._versions.get(name)
        if not history:
            raise PersonaNotFound(name)
        if version is None:
            return history[-1]
        for p in history:
            if p.version == version:
                return p
        raise PersonaNotFound(name, version)

    def names(self) -> List[str]:
        return sorted(self._versions)

    def resolve(
        self,
        name: str,
        overrides: Optional[Mapping[str, Any]] = None,
        version: Optional[int] = None,
    ) -> PersonaSnapshot:
        """Merge overrides over the base, clamp, and return an immutable snapshot."""
        base = self.get(name, version)
        applied, rejected = clean_delta(overrides or {}, base, allowed=STYLE_FIELDS)
        if rejected:
            logger.info("PERSONA_OVERRIDES_IGNORED", extra={"persona": name, "fields": rejected})
        fields = {**base.style_fields(), **applied}
        return PersonaSnapshot(name=base.name, version=base.version, revision=0,
                               overrides_hash=fields_hash(fields), **fields)

    def apply_delta(
        self,
        snapshot: PersonaSnapshot,
        delta: Mapping[str, Any],
    ) -> Tuple[PersonaSnapshot, Dict[str, Any], List[str]]:
        """Validate a chat delta and derive the next session snapshot from it."""
        applied, rejected = clean_delta(delta, snapshot, allowed=ADJUSTABLE_FIELDS)
        return self.derive(snapshot, applied), applied, rejected

    @staticmethod
    def derive(snapshot: PersonaSnapshot, applied: Mapping[str, Any]) -> PersonaSnapshot:
        """Copy-on-write: a new snapshot with `applied` on top; the registry is untouched."""
        fields = {**snapshot.style_fields(), **applied}
        return PersonaSnapshot(name=snapshot.name, version=snapshot.version,
                               revision=snapshot.revision + 1,
                               overrides_hash=fields_hash(fields), **fields)

    def promote(self, snapshot: PersonaSnapshot) -> Persona:
        """Explicitly write a derived snapshot back as the next base version."""
        persona = self.register({"name": snapshot.name, **snapshot.style_fields()})
        logger.info("PERSONA_PROMOTED", extra={"persona": snapshot.name, "from": snapshot.version_tag,
                                               "version": persona.version})
        return persona
