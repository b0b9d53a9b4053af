# newsvoice/errors.py
"""
Failure taxonomy for the inference core.

Every error carries a ``context`` dict so callers (and the HTTP layer) can decide
between retrying and abandoning without parsing messages. Backend faults never
cross a component boundary untranslated: the gate wraps them in
ModelExecutionFailure.

"No relevant content" is deliberately NOT an exception; see SynthesisResult.empty.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class NewsVoiceError(Exception):
    """Base class for all typed failures raised by the core."""

    retryable = False

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class InputTooLong(NewsVoiceError):
    pass


class InputRejectedUnsafe(NewsVoiceError):
    def __init__(self, reason: str, **context: Any):
        super().__init__(f"input rejected: {reason}", reason=reason, **context)
        self.reason = reason


class OutputRejectedUnsafe(NewsVoiceError):
    # Internal: triggers the stage's retry/degrade policy, never surfaced by a public operation
    def __init__(self, reason: str, **context: Any):
        super().__init__(f"output rejected: {reason}", reason=reason, **context)
        self.reason = reason


class SchemaValidationFailure(NewsVoiceError):
    def __init__(self, problems: Optional[list] = None, **context: Any):
        problems = problems or []
        super().__init__("; ".join(problems) or "schema mismatch", problems=problems, **context)
        self.problems = problems


class ModelQueueTimeout(NewsVoiceError):
    retryable = True

    def __init__(self, message: str = "", phase: str = "queued", **context: Any):
        super().__init__(message or f"job deadline exceeded while {phase}", phase=phase, **context)
        self.phase = phase


class ModelExecutionFailure(NewsVoiceError):
    retryable = True


class JobCancelled(NewsVoiceError):
    pass


class PersonaNotFound(NewsVoiceError):
    def __init__(self, name: str, version: Optional[int] = None):
        msg = f"persona {name!r} not found" if version is None else f"persona {name!r} v{version} not found"
        super().__init__(msg, name=name, version=version)
        self.name = name


class PersonaBoundsViolation(NewsVoiceError):
    # Logged and clamped, never raised to callers
    def __init__(self, field: str, requested: Any, applied: Any):
        super().__init__(f"{field}={requested!r} outside bounds, clamped to {applied!r}",
                         field=field, requested=requested, applied=applied)
        self.field = field
        self.requested = requested
        self.applied = applied
