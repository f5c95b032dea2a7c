from __future__ import annotations
import uuid
from typing import Callable
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from stlbridge.obs.logging_setup import get_logger, request_id_var

logger = get_logger(__name__)

# Probes are polled constantly; keep them out of the info log
QUIET_PATHS = frozenset({"/health", "/ready", "/live", "/metrics/prometheus"})

class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns each request an id, binds it to every log line written while
    the request is handled and echoes it in the response headers.

    Import jobs started by the request inherit the id, so a job's background
    logs can be traced back to the call that created it.
    """

    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers[self.header_name] = request_id
        log = logger.debug if request.url.path in QUIET_PATHS else logger.info
        log("Request completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code)
        return response
