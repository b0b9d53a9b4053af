# newsvoice/middleware.py
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .logging_setup import request_id_var, session_id_var, get_logger

logger = get_logger("newsvoice.http")

REQUEST_ID_HEADER = "x-request-id"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a correlation id to everything logged while serving a request.

    An upstream x-request-id is kept so a call can be followed across services;
    otherwise a short one is minted. Chat routes also bind the session id from
    the path, so gate and persona events for that call carry it.
    """

    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        req_token = request_id_var.set(req_id)
        sess_token = None
        parts = request.url.path.strip("/").split("/")
        if len(parts) >= 2 and parts[0] == "chat":
            sess_token = session_id_var.set(parts[1])

        start = time.perf_counter()
        status = 500  # stays 500 if the app raised before producing a response
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers[REQUEST_ID_HEADER] = req_id
            return response
        except Exception:
            # Re-raised so the registered exception handlers still answer
            logger.exception("REQUEST_FAILED", extra={"method": request.method, "path": request.url.path})
            raise
        finally:
            logger.info("REQUEST_DONE", extra={
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "elapsed_ms": round((time.perf_counter() - start) * 1000, 1),
            })
            if sess_token is not None:
                session_id_var.reset(sess_token)
            request_id_var.reset(req_token)
