from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Mapping

from ..middlewares import principal_ctx_var, request_id_ctx_var


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, tagged with the service and environment."""

    def __init__(self, *, service: str | None = None, env: str | None = None) -> None:
        super().__init__()
        self.service = service
        self.env = env

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.utcnow().isoformat(timespec="milliseconds") + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.service:
            payload["service"] = self.service
        if self.env:
            payload["env"] = self.env
        request_id = request_id_ctx_var.get()
        if request_id:
            payload["request_id"] = request_id
        principal = principal_ctx_var.get()
        if principal:
            payload["principal"] = principal
        extra = getattr(record, "extra_data", None)
        if isinstance(extra, Mapping):
            payload.update(extra)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


def configure_logging(level: str | int = logging.INFO, *, service: str | None = None, env: str | None = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter(service=service, env=env))
    logging.root.handlers = [handler]
    logging.root.setLevel(level.upper() if isinstance(level, str) else level)
    # uvicorn's access log repeats request.completed
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
