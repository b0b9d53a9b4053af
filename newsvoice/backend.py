# newsvoice/backend.py
"""
Model backend contract: one caller at a time, single-shot or streaming.

Only the InferenceGate holds a backend instance. The shipped implementation
talks to any OpenAI-compatible server (Ollama, llama.cpp server, vLLM), which is
how a local GPU-resident model is usually exposed.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Protocol

from openai import OpenAI

from .config import LLM_MAX_TOKENS, LLM_MODEL, get_client


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str
    temperature: float = 0.2
    max_tokens: int = LLM_MAX_TOKENS
    json_mode: bool = False


class ModelBackend(Protocol):
    model_version: str

    def complete(self, prompt: Prompt) -> str: ...

    def stream(self, prompt: Prompt) -> Iterator[str]: ...


class OpenAIBackend:
    def __init__(self, client: Optional[OpenAI] = None, model: str = LLM_MODEL):
        self._client = client
        self.model = model

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_client()
        return self._client

    @property
    def model_version(self) -> str:
        return self.model

    def _request(self, prompt: Prompt, **extra) -> dict:
        kwargs = dict(
            model=self.model,
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
            messages=[
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            **extra,
        )
        if prompt.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def complete(self, prompt: Prompt) -> str:
        resp = self.client.chat.completions.create(**self._request(prompt))
        return resp.choices[0].message.content or ""

    def stream(self, prompt: Prompt) -> Iterator[str]:
        for chunk in self.client.chat.completions.create(**self._request(prompt, stream=True)):
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta
