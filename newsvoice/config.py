import os
from dotenv import load_dotenv
from pathlib import Path
from typing import Optional
from openai import OpenAI

# Go up one level from newsvoice/ to root/
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# ---- Model backend (any OpenAI-compatible server: Ollama, llama.cpp, vLLM) ----
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "http://localhost:11434/v1")
LLM_API_KEY = os.getenv("LLM_API_KEY", "local")
LLM_MODEL = os.getenv("LLM_MODEL", "llama3.1:8b-instruct")
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "1024"))

# ---- Inference gate ----
GATE_MAX_QUEUE_DEPTH = int(os.getenv("GATE_MAX_QUEUE_DEPTH", "64"))
GATE_TIMEOUT_INTERACTIVE_S = float(os.getenv("GATE_TIMEOUT_INTERACTIVE_S", "30"))
GATE_TIMEOUT_SYNTHESIS_S = float(os.getenv("GATE_TIMEOUT_SYNTHESIS_S", "180"))
GATE_TIMEOUT_BATCH_S = float(os.getenv("GATE_TIMEOUT_BATCH_S", "900"))
GATE_HISTORY_SIZE = int(os.getenv("GATE_HISTORY_SIZE", "500"))

# ---- Cache ----
CACHE_TTL_S = float(os.getenv("CACHE_TTL_S", str(6 * 3600)))
CACHE_KEY_PREFIX_CHARS = int(os.getenv("CACHE_KEY_PREFIX_CHARS", "2000"))
CACHE_PURGE_INTERVAL_MIN = int(os.getenv("CACHE_PURGE_INTERVAL_MIN", "60"))

# ---- Retrieval ----
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
RETRIEVAL_MIN_RELEVANCE = float(os.getenv("RETRIEVAL_MIN_RELEVANCE", "0.15"))
RETRIEVAL_HALF_LIFE_H = float(os.getenv("RETRIEVAL_HALF_LIFE_H", "48"))
RETRIEVAL_RECENCY_WEIGHT = float(os.getenv("RETRIEVAL_RECENCY_WEIGHT", "0.3"))

# ---- Stage limits ----
QUERY_MAX_CHARS = int(os.getenv("QUERY_MAX_CHARS", "500"))
INPUT_MAX_CHARS = int(os.getenv("INPUT_MAX_CHARS", "60000"))
EXTRACT_MAX_BODY_CHARS = int(os.getenv("EXTRACT_MAX_BODY_CHARS", "9000"))
SYNTHESIS_MAX_CHARS = int(os.getenv("SYNTHESIS_MAX_CHARS", "6000"))
COMPOSE_TARGET_WORDS = int(os.getenv("COMPOSE_TARGET_WORDS", "300"))
COMPOSE_TOLERANCE = float(os.getenv("COMPOSE_TOLERANCE", "0.4"))
CHAT_MESSAGE_MAX_CHARS = int(os.getenv("CHAT_MESSAGE_MAX_CHARS", "1000"))

# ---- Personas ----
PERSONAS_FILE = os.getenv("PERSONAS_FILE", str(Path(__file__).resolve().parent / "personas.json"))
DEFAULT_PERSONA = os.getenv("DEFAULT_PERSONA", "anchor")

# ---- Ingestion ----
FEED_URLS = [u.strip() for u in os.getenv("FEED_URLS", "").split(",") if u.strip()]
INGEST_INTERVAL_MIN = int(os.getenv("INGEST_INTERVAL_MIN", "30"))
INGEST_SINCE_HOURS = int(os.getenv("INGEST_SINCE_HOURS", "24"))
TIMEZONE = os.getenv("TIMEZONE", "America/New_York")
DB_FILE = os.getenv("DB_FILE", "newsvoice.db")

_client: Optional[OpenAI] = None


def get_client() -> OpenAI:
    # Built lazily so importing config never needs a reachable model server
    global _client
    if _client is None:
        _client = OpenAI(base_url=LLM_BASE_URL, api_key=LLM_API_KEY)
    return _client
