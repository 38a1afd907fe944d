from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ArchiveServiceError(Exception):
    """Base class for failures the API reports with a stable error code."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"

    def __init__(self, message: str, *, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ItemNotFoundError(ArchiveServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "item_not_found"

    def __init__(self, item_ids: list[int] | int) -> None:
        ids = [item_ids] if isinstance(item_ids, int) else list(item_ids)
        noun = "Item" if len(ids) == 1 else "Items"
        super().__init__(f"{noun} not found: {', '.join(str(i) for i in ids)}", details={"ids": ids})
        self.item_ids = ids


class InvalidTransitionError(ArchiveServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"


class DuplicateItemError(ArchiveServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "duplicate_item"


class BatchTooLargeError(ArchiveServiceError):
    status_code = 422
    code = "batch_too_large"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Batch of {size} ids exceeds the limit of {limit}",
            details={"size": size, "limit": limit},
        )


class TransactionTimeoutError(ArchiveServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "transaction_timeout"


class VectorStoreError(ArchiveServiceError):
    """Transient vector store failure. Safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "vector_store_unavailable"


class ErrorEnvelope(JSONResponse):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        payload: dict[str, Any] = {"code": code, "message": message}
        if details is not None:
            payload["details"] = details
        super().__init__(payload, status_code=status_code, headers=headers)


async def service_error_handler(request: Request, exc: ArchiveServiceError):
    if exc.status_code >= 500:
        logger.warning(
            "request.service_error",
            extra={"extra_data": {"code": exc.code, "path": request.url.path, "error": exc.message}},
        )
    return ErrorEnvelope(status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    if isinstance(detail, str):
        message = detail
    else:
        message = "Error"
    details = detail if isinstance(detail, dict) else None
    return ErrorEnvelope(
        status_code=exc.status_code,
        code="http_error",
        message=message,
        details=details,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return ErrorEnvelope(
        status_code=422,
        code="validation_error",
        message="Validation failed",
        details={"errors": jsonable_encoder(exc.errors())},
    )
