from __future__ import annotations

from .request_id import RequestIdMiddleware, add_request_log_fields, principal_ctx_var, request_id_ctx_var

__all__ = [
    "RequestIdMiddleware",
    "add_request_log_fields",
    "request_id_ctx_var",
    "principal_ctx_var",
]
