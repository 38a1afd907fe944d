"""Item CRUD helpers and batch lookups."""

from __future__ import annotations

from typing import Iterable, NamedTuple, Sequence

from sqlalchemy import desc, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from ..core.clock import utcnow_iso
from ..core.errors import DuplicateItemError, InvalidTransitionError
from ..models.item import HistoryAction, Item, ItemRevision, ItemStatus
from ..services.vector_sync import enqueue_metadata_sync
from .history import record_history_bulk

DEFAULT_CHUNK_SIZE = 500
EDITABLE_FIELDS = ("title", "body", "attributes")


class ItemRef(NamedTuple):
    """The columns needed to decide what a batch operation should do."""

    id: int
    external_key: str
    status: str
    current_revision: int
    updated_at: str


def _unique_ids(ids: Iterable[int]) -> list[int]:
    return list(dict.fromkeys(int(i) for i in ids))


def _chunks(values: Sequence[int], size: int):
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _clean_text(value: object, field: str, *, required: bool) -> str | None:
    if value is None:
        value = ""
    if not isinstance(value, str):
        raise ValueError(f"{field} must be a string")
    text = value.strip()
    if required and not text:
        raise ValueError(f"{field} is required")
    return text or None


def _clean_attributes(value: object) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("attributes must be an object")
    return dict(value)


def list_items(db: Session, *, status: str | None = None, limit: int = 100, offset: int = 0) -> list[Item]:
    stmt = select(Item).order_by(desc(Item.id)).limit(limit).offset(offset)
    if status:
        stmt = stmt.where(Item.status == status)
    return db.execute(stmt).scalars().all()


def get_item(db: Session, item_id: int) -> Item | None:
    return db.get(Item, item_id)


def create_item(db: Session, payload: dict, *, actor: str | None = None) -> Item:
    external_key = _clean_text(payload.get("external_key"), "external_key", required=True)
    title = _clean_text(payload.get("title"), "title", required=True)
    body = payload.get("body")
    attributes = _clean_attributes(payload.get("attributes"))
    now = utcnow_iso()

    item = Item(
        external_key=external_key,
        title=title,
        body=body,
        attributes=attributes,
        status=ItemStatus.ACTIVE.value,
        current_revision=1,
        created_at=now,
        updated_at=now,
    )
    db.add(item)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateItemError(
            f"An item with external_key {external_key!r} already exists",
            details={"external_key": external_key},
        ) from exc

    db.add(
        ItemRevision(
            item_id=item.id,
            revision=1,
            title=title,
            body=body,
            attributes=attributes,
            author=actor,
            created_at=now,
        )
    )
    record_history_bulk(
        db,
        [
            {
                "item_id": item.id,
                "action": HistoryAction.CREATED,
                "to_status": ItemStatus.ACTIVE,
                "actor": actor,
                "created_at": now,
            }
        ],
    )
    db.commit()
    db.refresh(item)
    return item


def update_item(db: Session, item: Item, payload: dict, *, actor: str | None = None) -> Item:
    """Apply an edit as a new revision.

    Unknown keys are ignored. Archived items are read-only. An edit that
    changes nothing writes nothing.

    The row is only written while it is still ACTIVE at the revision that
    was loaded. If an archive or another edit committed in between, nothing
    is written and ``InvalidTransitionError`` is raised.
    """

    if item.is_archived:
        raise InvalidTransitionError(
            f"Item {item.id} is archived and cannot be edited",
            details={"id": item.id, "status": item.status},
        )

    changes: dict[str, object] = {}
    if "title" in payload:
        changes["title"] = _clean_text(payload.get("title"), "title", required=True)
    if "body" in payload:
        changes["body"] = payload.get("body")
    if "attributes" in payload:
        changes["attributes"] = _clean_attributes(payload.get("attributes"))
    changes = {key: value for key, value in changes.items() if getattr(item, key) != value}
    if not changes:
        return item

    now = utcnow_iso()
    item_id = item.id
    expected_revision = item.current_revision or 0
    revision = expected_revision + 1
    snapshot = {key: changes.get(key, getattr(item, key)) for key in EDITABLE_FIELDS}

    guarded = (
        update(Item)
        .where(
            Item.id == item_id,
            Item.status == ItemStatus.ACTIVE.value,
            Item.current_revision == expected_revision,
        )
        .values(**changes, current_revision=revision, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if db.execute(guarded).rowcount != 1:
        db.rollback()
        current = db.get(Item, item_id)
        raise InvalidTransitionError(
            f"Item {item_id} was archived or changed concurrently and cannot be edited",
            details={
                "id": item_id,
                "status": current.status if current else None,
                "expected_revision": expected_revision,
            },
        )

    db.add(
        ItemRevision(
            item_id=item_id,
            revision=revision,
            author=actor,
            created_at=now,
            **snapshot,
        )
    )
    record_history_bulk(
        db,
        [
            {
                "item_id": item_id,
                "action": HistoryAction.UPDATED,
                "from_status": ItemStatus.ACTIVE,
                "to_status": ItemStatus.ACTIVE,
                "actor": actor,
                "created_at": now,
            }
        ],
    )
    enqueue_metadata_sync(
        db,
        {item_id: {"title": snapshot["title"], "revision": revision, "updated_at": now}},
    )
    db.commit()
    db.refresh(item)
    return item


def list_revisions(db: Session, item_id: int) -> list[ItemRevision]:
    stmt = select(ItemRevision).where(ItemRevision.item_id == item_id).order_by(ItemRevision.revision)
    return db.execute(stmt).scalars().all()


def find_by_ids(db: Session, ids: Iterable[int], *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[ItemRef]:
    """Fetch lightweight references for many items.

    Only the columns in ``ItemRef`` are selected; bodies, attributes and
    revisions are never loaded. The result follows the first-occurrence
    order of ``ids`` with duplicates dropped, and unknown ids are left out.
    """

    wanted = _unique_ids(ids)
    if not wanted:
        return []
    found: dict[int, ItemRef] = {}
    for chunk in _chunks(wanted, chunk_size):
        stmt = select(
            Item.id,
            Item.external_key,
            Item.status,
            Item.current_revision,
            Item.updated_at,
        ).where(Item.id.in_(chunk))
        for row in db.execute(stmt):
            found[row.id] = ItemRef(*row)
    return [found[i] for i in wanted if i in found]


def load_items(
    db: Session,
    ids: Iterable[int],
    *,
    with_revisions: bool = False,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> list[Item]:
    """Fetch full items in input order, optionally with revisions eager-loaded."""

    wanted = _unique_ids(ids)
    if not wanted:
        return []
    found: dict[int, Item] = {}
    for chunk in _chunks(wanted, chunk_size):
        stmt = select(Item).where(Item.id.in_(chunk))
        if with_revisions:
            stmt = stmt.options(selectinload(Item.revisions))
        for item in db.execute(stmt).scalars():
            found[item.id] = item
    return [found[i] for i in wanted if i in found]
