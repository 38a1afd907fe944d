from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..core.errors import ItemNotFoundError, VectorStoreError
from ..core.settings import AppSettings, get_settings
from ..crud.history import list_history
from ..crud.items import (
    create_item,
    find_by_ids,
    get_item,
    list_items,
    list_revisions,
    load_items,
    update_item,
)
from ..db.session import get_db
from ..deps.auth import AuthContext, require_api_key
from ..deps.vector import get_vector_store
from ..middlewares import add_request_log_fields
from ..models.item import Item, ItemStatus
from ..schemas.item import (
    ArchiveRequest,
    ArchiveResultOut,
    HistoryOut,
    ItemCreate,
    ItemOut,
    ItemRefOut,
    ItemUpdate,
    LookupRequest,
    RevisionOut,
)
from ..services.archive import archive_selected
from ..services.vector_sync import index_item
from ..vector import VectorStore

router = APIRouter(prefix="/api/v1/items", tags=["items"])
logger = logging.getLogger(__name__)


def _require_item(db: Session, item_id: int) -> Item:
    item = get_item(db, item_id)
    if not item:
        raise ItemNotFoundError(item_id)
    return item


@router.get("", response_model=list[ItemOut])
def api_list(
    status: Optional[ItemStatus] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_api_key),
):
    return list_items(db, status=status.value if status else None, limit=limit, offset=offset)


@router.post("", response_model=ItemOut, status_code=201)
def api_create(
    request: Request,
    payload: ItemCreate,
    db: Session = Depends(get_db),
    store: VectorStore = Depends(get_vector_store),
    settings: AppSettings = Depends(get_settings),
    auth: AuthContext = Depends(require_api_key),
):
    data = payload.model_dump(exclude={"embedding"})
    try:
        # Reject a bad embedding before anything is written.
        embedding = store.validate_embedding(payload.embedding) if payload.embedding else None
        item = create_item(db, data, actor=auth.subject)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    add_request_log_fields(request, item_id=item.id)
    if embedding:
        try:
            index_item(store, item, embedding, settings=settings)
        except VectorStoreError:
            # The item is committed; PUT /items/{id}/vector can index it later.
            logger.exception("item.index_failed", extra={"extra_data": {"item_id": item.id}})
            add_request_log_fields(request, index_failed=True)
    return item


@router.post("/lookup")
def api_lookup(
    payload: LookupRequest,
    db: Session = Depends(get_db),
    settings: AppSettings = Depends(get_settings),
    auth: AuthContext = Depends(require_api_key),
):
    if payload.full:
        items = load_items(db, payload.ids, chunk_size=settings.QUERY_CHUNK_SIZE)
        return [ItemOut.model_validate(item) for item in items]
    refs = find_by_ids(db, payload.ids, chunk_size=settings.QUERY_CHUNK_SIZE)
    return [ItemRefOut(**ref._asdict()) for ref in refs]


@router.post("/archive", response_model=ArchiveResultOut)
def api_archive(
    request: Request,
    payload: ArchiveRequest,
    db: Session = Depends(get_db),
    store: VectorStore = Depends(get_vector_store),
    settings: AppSettings = Depends(get_settings),
    auth: AuthContext = Depends(require_api_key),
):
    try:
        result = archive_selected(
            db,
            payload.ids,
            actor=auth.subject,
            reason=payload.reason,
            on_behalf_of=payload.actor,
            strict=payload.strict,
            store=store,
            settings=settings,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    add_request_log_fields(
        request,
        on_behalf_of=payload.actor,
        requested=len(payload.ids),
        archived=len(result.archived),
        not_found=len(result.not_found),
        vector_sync=result.vector_sync,
    )
    return result.as_dict()


@router.get("/{item_id}", response_model=ItemOut)
def api_get(item_id: int, db: Session = Depends(get_db), auth: AuthContext = Depends(require_api_key)):
    return _require_item(db, item_id)


@router.patch("/{item_id}", response_model=ItemOut)
def api_update(
    item_id: int,
    payload: ItemUpdate,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_api_key),
):
    item = _require_item(db, item_id)
    try:
        return update_item(db, item, payload.model_dump(exclude_unset=True), actor=auth.subject)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/{item_id}/revisions", response_model=list[RevisionOut])
def api_revisions(item_id: int, db: Session = Depends(get_db), auth: AuthContext = Depends(require_api_key)):
    _require_item(db, item_id)
    return list_revisions(db, item_id)


@router.get("/{item_id}/history", response_model=list[HistoryOut])
def api_history(
    item_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_api_key),
):
    _require_item(db, item_id)
    return list_history(db, item_id, limit=limit)
