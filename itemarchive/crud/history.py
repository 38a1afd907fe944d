"""Append-only lifecycle history."""

from __future__ import annotations

from typing import Iterable, Mapping

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from ..core.clock import utcnow_iso
from ..models.item import ItemHistory

HISTORY_FIELDS = (
    "item_id",
    "action",
    "from_status",
    "to_status",
    "actor",
    "on_behalf_of",
    "reason",
    "created_at",
)


def record_history_bulk(db: Session, entries: Iterable[Mapping[str, object]]) -> int:
    """Insert many history rows with a single statement.

    The caller owns the transaction; nothing is committed here.
    """

    now = utcnow_iso()
    rows = []
    for entry in entries:
        row = {field: entry.get(field) for field in HISTORY_FIELDS}
        if row["item_id"] is None or not row["action"]:
            raise ValueError("history entries need item_id and action")
        for key in ("action", "from_status", "to_status"):
            row[key] = getattr(row[key], "value", row[key])
        row["created_at"] = row["created_at"] or now
        rows.append(row)
    if not rows:
        return 0
    db.execute(insert(ItemHistory), rows)
    return len(rows)


def list_history(db: Session, item_id: int, limit: int = 100) -> list[ItemHistory]:
    stmt = (
        select(ItemHistory)
        .where(ItemHistory.item_id == item_id)
        .order_by(ItemHistory.created_at, ItemHistory.id)
        .limit(limit)
    )
    return db.execute(stmt).scalars().all()
