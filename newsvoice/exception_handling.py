# newsvoice/exception_handling.py
from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .errors import (
    InputRejectedUnsafe,
    InputTooLong,
    JobCancelled,
    ModelExecutionFailure,
    ModelQueueTimeout,
    NewsVoiceError,
    PersonaNotFound,
)
from .logging_setup import get_logger

logger = get_logger("newsvoice.exceptions")

STATUS_BY_ERROR = {
    InputTooLong: 413,
    InputRejectedUnsafe: 422,
    PersonaNotFound: 404,
    ModelQueueTimeout: 503,
    JobCancelled: 503,
    ModelExecutionFailure: 502,
}


def status_for(exc: NewsVoiceError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[cls]
    return 500


async def newsvoice_exception_handler(request: Request, exc: NewsVoiceError):
    status_code = status_for(exc)
    logger.warning(
        "NEWSVOICE_ERROR",
        extra={"handled": True, "path": str(request.url.path), "status_code": status_code,
               "error": type(exc).__name__},
    )
    headers = {"Retry-After": "5"} if exc.retryable else None
    return JSONResponse(exc.to_dict(), status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(
        "HTTP_EXCEPTION",
        extra={"handled": True, "path": str(request.url.path), "status_code": exc.status_code},
    )
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


async def unhandled_exception_handler(request: Request, exc: Exception):
    # Log full traceback as "unhandled"
    logger.exception(
        "UNHANDLED_EXCEPTION",
        extra={"handled": False, "path": str(request.url.path)},
    )
    return JSONResponse({"detail": "Internal Server Error"}, status_code=500)


def register_exception_handlers(app: FastAPI) -> None:
    """
    NewsVoiceError subclasses first, then HTTP errors, then the catch-all.
    Call from newsvoice/main.py after creating the FastAPI app.
    """
    app.add_exception_handler(NewsVoiceError, newsvoice_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
