# newsvoice/safety.py
"""
Stateless screening of text entering and leaving the model.

A Reject on input stops the gate call entirely. A Reject on output keeps the
value out of the cache and hands control to the stage's retry/degrade policy.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional
import json
import re

from .config import INPUT_MAX_CHARS
from .logging_setup import get_logger

logger = get_logger("newsvoice.safety")


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    reason: str = ""

    @property
    def rejected(self) -> bool:
        return not self.allowed

    @property
    def is_refusal(self) -> bool:
        return self.reason.startswith("refusal:")


ALLOW = Verdict(True)


def Reject(reason: str) -> Verdict:
    return Verdict(False, reason)


# Phrases asserting new authority over the model
_OVERRIDE_PATTERNS = [
    r"\bignore\s+(all\s+|any\s+)?(the\s+)?(previous|prior|above|earlier)\s+(instructions|prompts?|rules)",
    r"\bdisregard\s+(all\s+|any\s+)?(the\s+)?(previous|prior|above|system)\s+(instructions|prompts?|rules)",
    r"\bforget\s+(everything|all)\s+(you\s+were\s+told|above|previous)",
    r"\byou\s+are\s+now\s+(in\s+)?(developer|dan|jailbreak|god)\s*mode",
    r"\bnew\s+system\s+(prompt|instructions?)\s*:",
    r"^\s*(system|assistant)\s*:",
    r"<\s*/?\s*(system|im_start|im_end)\s*>",
    r"\[\s*/?\s*INST\s*\]",
    r"\boverride\s+(your|the)\s+(system|safety)\s+(prompt|instructions|rules)",
]

# Markers only our own prompts contain; seeing them in output means the prompt leaked
_LEAK_PATTERNS = [
    r"persona directives\s*:",
    r"target length\s*:",
    r"return strict json",
    r"respond with valid json only",
    r"output contract\s*:",
    r"(my|the)\s+system\s+prompt\s+(is|says|reads)",
    r"as instructed in (my|the) (system )?prompt",
    r"###\s*(instructions|source material)",
]

_REFUSAL_PATTERNS = [
    r"^\s*(i'?m|i am)\s+(sorry|afraid)[, ]+(but\s+)?i\s+(can(no|')t|cannot|won'?t|am unable)",
    r"^\s*i\s+(can(no|')t|cannot|won'?t)\s+(help|assist|comply|do that|provide)",
    r"^\s*as an ai (language )?model,? i",
    r"^\s*i('m| am)\s+(not able|unable)\s+to\s+(help|assist|comply)",
]

_OVERRIDE_RE = [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in _OVERRIDE_PATTERNS]
_LEAK_RE = [re.compile(p, re.IGNORECASE) for p in _LEAK_PATTERNS]
_REFUSAL_RE = [re.compile(p, re.IGNORECASE) for p in _REFUSAL_PATTERNS]

# Tab, newline and carriage return are ordinary text; so is U+FFFD from lossy decoding
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
CONTROL_CHAR_MAX_RATIO = 0.10


class SafetyValidator:
    """Pattern-based screening; holds configuration only, never per-call state."""

    def __init__(self, max_input_chars: int = INPUT_MAX_CHARS, min_input_chars: int = 1):
        self.max_input_chars = max_input_chars
        self.min_input_chars = min_input_chars

    def check_input(self, text: Optional[str]) -> Verdict:
        if text is None or len(text.strip()) < self.min_input_chars:
            return Reject("empty input")
        if len(text) > self.max_input_chars:
            return Reject(f"input longer than {self.max_input_chars} chars")

        controls = len(_CONTROL_RE.findall(text))
        if controls / max(1, len(text)) > CONTROL_CHAR_MAX_RATIO:
            return Reject("binary or control-character payload")

        for rx in _OVERRIDE_RE:
            if rx.search(text):
                return Reject(f"instruction override attempt ({rx.pattern[:40]})")
        return ALLOW

    def check_fields(self, fields: Optional[Mapping[str, Any]]) -> Verdict:
        """Screen every non-blank string value of a user-supplied field map."""
        for name, value in (fields or {}).items():
            if not isinstance(value, str) or not value.strip():
                continue
            verdict = self.check_input(value)
            if verdict.rejected:
                return Reject(f"{name}: {verdict.reason}")
        return ALLOW

    def check_output(self, text: Optional[str], stage: Optional[str] = None, expect_json: bool = False) -> Verdict:
        if text is None or not text.strip():
            return Reject("empty output")

        for rx in _REFUSAL_RE:
            if rx.search(text):
                return Reject("refusal: model declined the request")

        for rx in _LEAK_RE:
            if rx.search(text):
                return Reject("leaked internal instructions")

        if _CONTROL_RE.search(text):
            return Reject("control characters in output")

        if expect_json:
            try:
                parsed = json.loads(text)
            except ValueError:
                return Reject("structured output is not valid JSON")
            if not isinstance(parsed, dict):
                return Reject("structured output is not a JSON object")

        return ALLOW
