from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..core.errors import ItemNotFoundError
from ..core.settings import AppSettings, get_settings
from ..crud.items import get_item
from ..db.session import get_db
from ..deps.auth import require_api_key
from ..deps.vector import get_vector_store
from ..middlewares import add_request_log_fields
from ..models.item import ItemStatus
from ..schemas.vector import (
    DrainReportOut,
    VectorHitOut,
    VectorRecordOut,
    VectorSearchRequest,
    VectorUpsert,
)
from ..services.vector_sync import drain_pending, index_item, sync_status
from ..vector import VectorStore

router = APIRouter(prefix="/api/v1", tags=["vectors"], dependencies=[Depends(require_api_key)])


@router.put("/items/{item_id}/vector", response_model=VectorRecordOut)
def api_index_item(
    item_id: int,
    payload: VectorUpsert,
    db: Session = Depends(get_db),
    store: VectorStore = Depends(get_vector_store),
    settings: AppSettings = Depends(get_settings),
):
    item = get_item(db, item_id)
    if not item:
        raise ItemNotFoundError(item_id)
    try:
        record = index_item(store, item, payload.embedding, settings=settings)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"item_id": record.item_id, "metadata": record.metadata, "dimension": len(record.embedding)}


@router.post("/vectors/search", response_model=list[VectorHitOut])
def api_search(payload: VectorSearchRequest, store: VectorStore = Depends(get_vector_store)):
    where = None if payload.include_archived else {"status": ItemStatus.ACTIVE.value}
    hits = store.search(payload.vector, top_k=payload.top_k, where=where)
    return [{"item_id": hit.item_id, "score": hit.score, "metadata": hit.metadata} for hit in hits]


@router.post("/vector-sync/drain", response_model=DrainReportOut)
def api_drain(
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1, le=10000),
    db: Session = Depends(get_db),
    store: VectorStore = Depends(get_vector_store),
    settings: AppSettings = Depends(get_settings),
):
    report = drain_pending(db, store, limit=limit, settings=settings).as_dict()
    add_request_log_fields(request, drain=report)
    return report


@router.get("/vector-sync/status")
def api_sync_status(db: Session = Depends(get_db)) -> dict[str, int]:
    return sync_status(db)
