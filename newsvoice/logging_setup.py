# newsvoice/logging_setup.py
"""
Logging for the service.

Events are logged as UPPER_SNAKE names with their fields passed through
``extra=``; ExtraFieldsFormatter renders those fields as key=value pairs after
the message. Every record also carries the current request id (set by the HTTP
middleware) and chat session id (set by the chat adjuster).

Gate job records (INFERENCE_JOB) additionally go to their own rotating file so
queue behaviour can be inspected without the request noise.
"""
import logging
from logging.config import dictConfig
from logging import LogRecord
from pathlib import Path
import contextvars
import os

request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")
session_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("session_id", default="-")

BASE_DIR = Path(__file__).resolve().parents[1]  # project root (folder that contains 'newsvoice/')
LOG_DIR = Path(os.getenv("LOG_DIR", BASE_DIR / "logs"))
LOG_FILE = LOG_DIR / "newsvoice.log"
INFERENCE_LOG_FILE = LOG_DIR / "inference.log"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Attributes every LogRecord has; anything else on a record came in through extra=
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("x", 0, "", 0, "", None, None))) | {
    "message", "asctime", "request_id", "session_id", "taskName",
}


class RequestIdFilter(logging.Filter):
    def filter(self, record: LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.session_id = session_id_var.get()
        return True


class ExtraFieldsFormatter(logging.Formatter):
    """Standard line format followed by the record's extra fields, sorted by key."""

    def format(self, record: LogRecord) -> str:
        line = super().format(record)
        fields = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS and not k.startswith("_")}
        if not fields:
            return line
        rendered = " ".join(f"{k}={fields[k]!r}" if isinstance(fields[k], str) else f"{k}={fields[k]}"
                            for k in sorted(fields))
        return f"{line} | {rendered}"


_configured = False


def setup_logging() -> Path:
    global _configured
    if _configured:
        return LOG_FILE
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    line = "%(asctime)s | %(levelname)s | %(name)s | req=%(request_id)s sess=%(session_id)s | %(message)s"
    rotating = {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "events",
        "filters": ["context"],
        "when": "midnight",
        "backupCount": 14,
        "encoding": "utf-8",
    }
    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"context": {"()": RequestIdFilter}},
        "formatters": {
            "events": {"()": ExtraFieldsFormatter, "fmt": line},
            "uvicorn_access": {"format": "%(asctime)s | %(levelname)s | %(message)s"},
        },
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "events", "filters": ["context"]},
            "file": {**rotating, "filename": str(LOG_FILE)},
            "inference_file": {**rotating, "filename": str(INFERENCE_LOG_FILE)},
            "uvicorn_console": {"class": "logging.StreamHandler", "formatter": "uvicorn_access"},
        },
        "loggers": {
            # Children (newsvoice.chat, newsvoice.store, ...) propagate to root's handlers
            "newsvoice": {"level": LOG_LEVEL, "propagate": True},
            "newsvoice.gate": {"handlers": ["inference_file"], "level": LOG_LEVEL, "propagate": True},

            "apscheduler": {"handlers": ["console", "file"], "level": "INFO", "propagate": False},

            # The OpenAI client logs every HTTP request at INFO
            "openai": {"handlers": ["console", "file"], "level": "WARNING", "propagate": False},
            "httpx": {"handlers": ["console", "file"], "level": "WARNING", "propagate": False},

            "uvicorn.error": {"handlers": ["uvicorn_console", "file"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["uvicorn_console", "file"], "level": "INFO", "propagate": False},
        },
        "root": {"handlers": ["console", "file"], "level": LOG_LEVEL},
    })
    _configured = True

    logging.getLogger("newsvoice").info("LOGGING_READY", extra={"log_file": str(LOG_FILE),
                                                                "inference_log": str(INFERENCE_LOG_FILE)})
    return LOG_FILE


def get_logger(name: str = "newsvoice") -> logging.Logger:
    return logging.getLogger(name)
