"""Archive many items in one bounded transaction.

The whole request costs a fixed number of statements per chunk of ids: one
lightweight SELECT to partition the ids, one guarded UPDATE (preceded by a
locking SELECT on dialects without RETURNING), one history INSERT and one
outbox INSERT. No statement is issued per item.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Iterable, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.clock import utcnow_iso
from ..core.errors import BatchTooLargeError, ItemNotFoundError
from ..core.settings import AppSettings, get_settings
from ..crud.history import record_history_bulk
from ..crud.items import find_by_ids
from ..db.session import Deadline, transaction
from ..models.item import HistoryAction, Item, ItemStatus
from ..vector import VectorStore
from .vector_sync import drain_pending, enqueue_metadata_sync, unsynced_count

logger = logging.getLogger(__name__)


@dataclass
class ArchiveResult:
    archived: list[int] = field(default_factory=list)
    already_archived: list[int] = field(default_factory=list)
    not_found: list[int] = field(default_factory=list)
    # none | synced | pending
    vector_sync: str = "none"
    pending_jobs: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _chunks(values: Sequence[int], size: int):
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _mark_archived(
    db: Session,
    ids: Sequence[int],
    *,
    actor: str | None,
    now: str,
    deadline: Deadline,
    chunk_size: int,
) -> set[int]:
    """Flip ACTIVE rows to ARCHIVED and return the ids this call changed.

    The ``status = 'ACTIVE'`` guard makes a concurrent archive of the same
    row a no-op here, so only one request ever records its history. Where
    the dialect cannot return updated ids, the chunk's ACTIVE rows are
    locked first (``SELECT ... FOR UPDATE``) and only those are updated.
    """

    if not ids:
        return set()
    use_returning = bool(getattr(db.get_bind().dialect, "update_returning", False))
    archived: set[int] = set()
    for chunk in _chunks(ids, chunk_size):
        if not use_returning:
            locked = (
                select(Item.id)
                .where(Item.id.in_(chunk), Item.status == ItemStatus.ACTIVE.value)
                .with_for_update()
            )
            chunk = list(db.execute(locked).scalars())
            if not chunk:
                deadline.check("archive update")
                continue
        stmt = (
            update(Item)
            .where(Item.id.in_(chunk), Item.status == ItemStatus.ACTIVE.value)
            .values(
                status=ItemStatus.ARCHIVED.value,
                archived_at=now,
                archived_by=actor,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if use_returning:
            archived.update(db.execute(stmt.returning(Item.id)).scalars())
        else:
            db.execute(stmt)
            archived.update(chunk)
        deadline.check("archive update")
    return archived


def archive_selected(
    db: Session,
    ids: Iterable[int],
    *,
    actor: str | None,
    reason: str | None = None,
    on_behalf_of: str | None = None,
    strict: bool = False,
    store: VectorStore | None = None,
    settings: AppSettings | None = None,
) -> ArchiveResult:
    """Archive the given items.

    Unknown ids are reported in ``not_found``, or raise ``ItemNotFoundError``
    with nothing changed when ``strict`` is set. Items that are already
    archived are reported and left untouched. The status change, history
    rows and outbox jobs commit together. Vector metadata follows after the
    commit and never undoes it.

    ``actor`` is who performed the archive and becomes ``archived_by``.
    ``on_behalf_of`` is only recorded on the history rows.
    """

    settings = settings or get_settings()
    wanted = list(dict.fromkeys(int(i) for i in ids))
    if not wanted:
        raise ValueError("ids must not be empty")
    if len(wanted) > settings.ARCHIVE_MAX_BATCH:
        raise BatchTooLargeError(len(wanted), settings.ARCHIVE_MAX_BATCH)

    result = ArchiveResult()
    job_ids: list[int] = []
    started = time.perf_counter()
    with transaction(db, timeout_sec=settings.ARCHIVE_TX_TIMEOUT_SEC) as deadline:
        refs = {ref.id: ref for ref in find_by_ids(db, wanted, chunk_size=settings.QUERY_CHUNK_SIZE)}
        deadline.check("archive lookup")
        result.not_found = [i for i in wanted if i not in refs]
        if strict and result.not_found:
            raise ItemNotFoundError(result.not_found)

        active = [i for i in wanted if i in refs and refs[i].status == ItemStatus.ACTIVE.value]
        now = utcnow_iso()
        changed = _mark_archived(
            db,
            active,
            actor=actor,
            now=now,
            deadline=deadline,
            chunk_size=settings.QUERY_CHUNK_SIZE,
        )
        result.archived = [i for i in active if i in changed]
        result.already_archived = [i for i in wanted if i in refs and i not in changed]

        if result.archived:
            record_history_bulk(
                db,
                (
                    {
                        "item_id": item_id,
                        "action": HistoryAction.ARCHIVED,
                        "from_status": ItemStatus.ACTIVE,
                        "to_status": ItemStatus.ARCHIVED,
                        "actor": actor,
                        "reason": reason,
                        "on_behalf_of": on_behalf_of,
                        "created_at": now,
                    }
                    for item_id in result.archived
                ),
            )
            job_ids = enqueue_metadata_sync(
                db,
                {
                    item_id: {"status": ItemStatus.ARCHIVED.value, "archived_at": now}
                    for item_id in result.archived
                },
            )
            deadline.check("archive history")

    logger.info(
        "archive.committed",
        extra={
            "extra_data": {
                "requested": len(wanted),
                "archived": len(result.archived),
                "already_archived": len(result.already_archived),
                "not_found": len(result.not_found),
                "actor": actor,
                "on_behalf_of": on_behalf_of,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            }
        },
    )

    if not result.archived:
        return result

    if store is not None and not settings.deferred_vector_sync:
        try:
            drain_pending(db, store, job_ids=job_ids, settings=settings)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("archive.vector_sync_bookkeeping_failed")
    result.pending_jobs = unsynced_count(db, job_ids, chunk_size=settings.QUERY_CHUNK_SIZE)
    result.vector_sync = "pending" if result.pending_jobs else "synced"
    return result
