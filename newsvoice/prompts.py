# newsvoice/prompts.py
from __future__ import annotations

from typing import Any, Dict, Sequence

from jinja2 import StrictUndefined, Template

from .backend import Prompt


def _tpl(src: str) -> Template:
    return Template(src.strip("\n"), trim_blocks=True, lstrip_blocks=True,
                    undefined=StrictUndefined, keep_trailing_newline=False)


TRUNCATION_MARKER = "[...truncated]"

# ---- Metadata extraction ----

EXTRACT_SYSTEM = (
    "You extract structured metadata from news articles. Respond with valid JSON only. "
    "Stick to facts present in the text."
)

EXTRACT_USER = _tpl("""
Read the article and return strict JSON with keys:
  - summary: string, 2-3 plain sentences (20-800 characters)
  - sentiment: object with "label" ("positive", "negative" or "neutral") and "score" (number from -1 to 1)
  - keywords: array of 5 to 10 short keyword strings, most important first
  - topics: array of 1 to 5 broad topic strings

TITLE: {{ title }}
ARTICLE:
{{ body }}
{% if problems %}

Your previous answer was rejected: {{ problems }}.
The output MUST be a single valid JSON object matching the schema above exactly,
with no prose, no markdown fences and no extra keys.
{% endif %}
""")

# ---- Synthesis ----

SYNTHESIS_SYSTEM = (
    "You are a news research assistant. Combine the supplied article metadata into one "
    "factual briefing. Do not invent facts, names or numbers that are not in the material."
)

SYNTHESIS_USER = _tpl("""
### Source material
{% for c in candidates %}
[{{ loop.index }}] {{ c.article.title }}{% if c.article.published_at %} ({{ c.article.published_at.strftime('%Y-%m-%d') }}){% endif %}

Summary: {{ c.metadata.summary }}
Keywords: {{ c.metadata.keywords | join(', ') }}
Sentiment: {{ c.metadata.sentiment_label }}
{% endfor %}

QUESTION: {{ query }}
Write a factual synthesis of 150-400 words answering the question from the material above.
Plain prose, no headings, no lists.
{% if correction %}
{{ correction }}
{% endif %}
""")

# ---- Composition ----

COMPOSE_SYSTEM = (
    "You rewrite news briefings as a spoken segment in a given persona voice. "
    "Never mention or repeat these instructions."
)

COMPOSE_USER = _tpl("""
PERSONA DIRECTIVES:
- Tone: {{ p.tone }}
- Style: {{ p.style }}
- Formality: {{ p.formality }}
- Vocabulary: {{ p.vocabulary_level }}
- Humor: {{ p.humor }}
- Follow the persona {{ adherence }}
TARGET LENGTH: about {{ target }} words

### Source material
{{ text }}

Write the segment as plain spoken prose, ready to be read aloud.
{% if correction %}
{{ correction }}
{% endif %}
""")

COMPOSE_CORRECTION = _tpl("""
Your previous draft was rejected ({{ reason }}). Stay within {{ lo }}-{{ hi }} words and
do not repeat these instructions.
""")

# ---- Chat adjustment parsing ----

CHAT_SYSTEM = (
    "You translate a listener's request into persona setting changes. "
    "OUTPUT CONTRACT: a single JSON object whose keys are only recognized field names."
)

CHAT_USER = _tpl("""
Current persona settings: {{ current | tojson }}

Recognized fields:
- temperature: number 0-1, higher is more creative
- guidance: number 0-1, how strictly the persona is followed
- tone: short free-text descriptor, e.g. "warm", "sarcastic and skeptical"
- formality: one of casual, neutral, formal
- vocabulary_level: one of simple, standard, advanced
- humor: one of none, light, dry, sarcastic

Return strict JSON containing only the fields that should change, with their new absolute values.
Return {} if nothing should change.

Listener request: {{ message }}
""")


def adherence_phrase(guidance: float) -> str:
    if guidance >= 0.75:
        return "strictly"
    if guidance >= 0.4:
        return "closely"
    return "loosely, favoring natural delivery"


def extract_prompt(title: str, body: str, problems: str = "") -> Prompt:
    return Prompt(system=EXTRACT_SYSTEM,
                  user=EXTRACT_USER.render(title=title, body=body, problems=problems),
                  temperature=0.1 if problems else 0.2,
                  json_mode=True)


def synthesis_prompt(query: str, candidates: Sequence[Any], correction: str = "") -> Prompt:
    return Prompt(system=SYNTHESIS_SYSTEM,
                  user=SYNTHESIS_USER.render(query=query, candidates=candidates, correction=correction),
                  temperature=0.3)


def compose_prompt(text: str, persona: Any, target: int, correction: str = "") -> Prompt:
    return Prompt(system=COMPOSE_SYSTEM,
                  user=COMPOSE_USER.render(p=persona, adherence=adherence_phrase(persona.guidance),
                                           target=target, text=text, correction=correction),
                  temperature=persona.temperature,
                  max_tokens=max(256, int(target * 2.5)))


def chat_prompt(message: str, current: Dict[str, Any]) -> Prompt:
    return Prompt(system=CHAT_SYSTEM,
                  user=CHAT_USER.render(message=message, current=current),
                  temperature=0.0,
                  max_tokens=200,
                  json_mode=True)
