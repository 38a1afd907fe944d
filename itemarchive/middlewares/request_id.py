from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
principal_ctx_var: ContextVar[str | None] = ContextVar("principal_id", default=None)
logger = logging.getLogger("itemarchive.request")


def add_request_log_fields(request: Request, **fields: Any) -> None:
    """Attach fields to this request's ``request.completed`` log line.

    Routers use it to report what a call did, e.g. how many items an
    archive request changed and on whose behalf.
    """

    current = getattr(request.state, "log_fields", None) or {}
    current.update(fields)
    request.state.log_fields = current


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate each request and log one summary line when it completes."""

    def __init__(self, app, header_name: str = "X-Request-ID") -> None:  # type: ignore[override]
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid4())
        token = request_id_ctx_var.set(request_id)
        principal_token = principal_ctx_var.set(None)
        request.state.request_id = request_id
        request.state.log_fields = {}
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
            principal_ctx_var.reset(principal_token)
        duration_ms = (time.perf_counter() - start) * 1000
        response.headers[self.header_name] = request_id
        response.headers.setdefault("X-Response-Time", f"{duration_ms:.2f}ms")

        fields = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration_ms, 2),
        }
        # Set by require_api_key; the context var does not survive call_next.
        principal = getattr(request.state, "principal", None)
        if principal:
            fields["principal"] = principal
        fields.update(getattr(request.state, "log_fields", None) or {})
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "request.completed", extra={"extra_data": fields})
        return response
