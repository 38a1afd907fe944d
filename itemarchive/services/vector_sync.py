"""Mirror item metadata into the vector store.

Item changes write patches to the ``vector_sync_jobs`` outbox inside their
own transaction. The patches reach the vector store later, either right
after commit (inline mode) or from the worker (deferred mode). In both
cases batches go through ``bulk_update_metadata`` with retries.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..core.clock import utcnow_iso
from ..core.errors import VectorStoreError
from ..core.retry import call_with_retry
from ..core.settings import AppSettings, get_settings
from ..models.item import Item
from ..models.sync_job import SyncJobStatus, VectorSyncJob
from ..vector import VectorRecord, VectorStore

logger = logging.getLogger(__name__)

LAST_ERROR_MAX_LEN = 500


@dataclass
class DrainReport:
    processed: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    retried: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def item_metadata(item: Item) -> dict[str, Any]:
    """Fields copied from an item into its vector record."""

    return {
        "status": item.status,
        "external_key": item.external_key,
        "title": item.title,
        "revision": item.current_revision,
        "updated_at": item.updated_at,
    }


def _retrying(settings: AppSettings, func, label: str):
    return call_with_retry(
        func,
        max_retries=settings.VECTOR_SYNC_MAX_RETRIES,
        base_delay=settings.VECTOR_SYNC_BASE_DELAY,
        max_delay=settings.VECTOR_SYNC_MAX_DELAY,
        retry_on=(VectorStoreError,),
        label=label,
    )


def bulk_update_metadata(
    store: VectorStore,
    updates: Mapping[int, Mapping[str, Any]],
    *,
    settings: AppSettings | None = None,
) -> set[int]:
    """Push metadata patches to ``store`` in batches, retrying transient failures.

    Returns every item id the store reported as updated. Once one batch
    exhausts its retries its ``VectorStoreError`` propagates. Batches that
    already went through stay applied, and the patches can be re-sent
    safely.
    """

    settings = settings or get_settings()
    ids = list(updates)
    updated: set[int] = set()
    size = settings.VECTOR_SYNC_BATCH_SIZE
    for start in range(0, len(ids), size):
        batch = {item_id: updates[item_id] for item_id in ids[start : start + size]}
        updated |= _retrying(settings, lambda: store.bulk_update_metadata(batch), "vector_store.bulk_update_metadata")
    return updated


def _chunks(values: Sequence[int], size: int):
    for start in range(0, len(values), size):
        yield values[start : start + size]


def enqueue_metadata_sync(db: Session, patches: Mapping[int, Mapping[str, Any]]) -> list[int]:
    """Add one PENDING outbox job per item and return the new job ids.

    The jobs are flushed, not committed. SQLAlchemy batches the flush into
    multi-row INSERT ... RETURNING statements where the dialect allows it.
    """

    if not patches:
        return []
    now = utcnow_iso()
    jobs = [
        VectorSyncJob(
            item_id=item_id,
            payload=dict(patch),
            status=SyncJobStatus.PENDING.value,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        for item_id, patch in patches.items()
    ]
    db.add_all(jobs)
    db.flush()
    return [job.id for job in jobs]


def _pending_jobs(
    db: Session,
    *,
    limit: int | None,
    job_ids: Sequence[int] | None,
    chunk_size: int,
) -> list[VectorSyncJob]:
    stmt = (
        select(VectorSyncJob)
        .where(VectorSyncJob.status == SyncJobStatus.PENDING.value)
        .order_by(VectorSyncJob.id)
    )
    if db.get_bind().dialect.name == "postgresql":
        # Parallel workers each claim a disjoint set of jobs.
        stmt = stmt.with_for_update(skip_locked=True)
    if job_ids is None:
        if limit:
            stmt = stmt.limit(limit)
        return list(db.execute(stmt).scalars())

    jobs: list[VectorSyncJob] = []
    for chunk in _chunks(sorted(job_ids), chunk_size):
        if limit and len(jobs) >= limit:
            break
        scoped = stmt.where(VectorSyncJob.id.in_(chunk))
        if limit:
            scoped = scoped.limit(limit - len(jobs))
        jobs.extend(db.execute(scoped).scalars())
    return jobs


def _update_jobs(db: Session, job_ids: Sequence[int], chunk_size: int, **values: Any) -> None:
    for chunk in _chunks(job_ids, chunk_size):
        db.execute(
            update(VectorSyncJob)
            .where(VectorSyncJob.id.in_(chunk))
            .values(**values)
            .execution_options(synchronize_session=False)
        )


def drain_pending(
    db: Session,
    store: VectorStore,
    *,
    limit: int | None = None,
    job_ids: Iterable[int] | None = None,
    settings: AppSettings | None = None,
) -> DrainReport:
    """Deliver pending outbox jobs to the vector store and record the outcome.

    ``job_ids`` restricts the drain to those jobs; jobs that are no longer
    PENDING are ignored. Jobs for the same item are merged (later patches
    win) so each item is sent once. Jobs whose item has no vector record
    count as ``skipped`` and are still marked DONE. On a vector store
    failure every claimed job gets one more attempt recorded. Jobs that
    reach ``VECTOR_SYNC_MAX_ATTEMPTS`` become FAILED and the rest stay
    PENDING.
    """

    settings = settings or get_settings()
    chunk_size = settings.QUERY_CHUNK_SIZE
    report = DrainReport()
    scoped_ids = None if job_ids is None else list(dict.fromkeys(job_ids))
    if scoped_ids is not None and not scoped_ids:
        return report

    jobs = _pending_jobs(db, limit=limit, job_ids=scoped_ids, chunk_size=chunk_size)
    if not jobs:
        db.rollback()
        return report

    report.processed = len(jobs)
    merged: dict[int, dict[str, Any]] = {}
    for job in jobs:
        merged.setdefault(job.item_id, {}).update(job.payload or {})
    claimed = [job.id for job in jobs]
    now = utcnow_iso()

    try:
        updated = bulk_update_metadata(store, merged, settings=settings)
    except VectorStoreError as exc:
        give_up = [job.id for job in jobs if (job.attempts or 0) + 1 >= settings.VECTOR_SYNC_MAX_ATTEMPTS]
        _update_jobs(
            db,
            claimed,
            chunk_size,
            attempts=VectorSyncJob.attempts + 1,
            last_error=str(exc)[:LAST_ERROR_MAX_LEN],
            updated_at=now,
        )
        _update_jobs(db, give_up, chunk_size, status=SyncJobStatus.FAILED.value)
        db.commit()
        report.failed = len(give_up)
        report.retried = len(claimed) - len(give_up)
        logger.warning(
            "vector_sync.drain_failed",
            extra={"extra_data": {**report.as_dict(), "error": str(exc)}},
        )
        return report

    _update_jobs(
        db,
        claimed,
        chunk_size,
        status=SyncJobStatus.DONE.value,
        attempts=VectorSyncJob.attempts + 1,
        last_error=None,
        updated_at=now,
    )
    db.commit()
    report.synced = len(updated)
    report.skipped = len(merged) - len(updated)
    logger.info("vector_sync.drained", extra={"extra_data": report.as_dict()})
    return report


def unsynced_count(db: Session, job_ids: Sequence[int], *, chunk_size: int) -> int:
    """How many of ``job_ids`` are not DONE yet."""

    total = 0
    for chunk in _chunks(list(job_ids), chunk_size):
        stmt = select(func.count(VectorSyncJob.id)).where(
            VectorSyncJob.id.in_(chunk),
            VectorSyncJob.status != SyncJobStatus.DONE.value,
        )
        total += int(db.execute(stmt).scalar_one())
    return total


def sync_status(db: Session) -> dict[str, int]:
    counts = {status.value: 0 for status in SyncJobStatus}
    stmt = select(VectorSyncJob.status, func.count(VectorSyncJob.id)).group_by(VectorSyncJob.status)
    for status, count in db.execute(stmt):
        counts[status] = int(count)
    return counts


def index_item(
    store: VectorStore,
    item: Item,
    embedding: Sequence[float],
    *,
    settings: AppSettings | None = None,
) -> VectorRecord:
    """Store ``item``'s embedding together with its current metadata."""

    settings = settings or get_settings()
    record = VectorRecord(item_id=item.id, embedding=store.validate_embedding(embedding), metadata=item_metadata(item))
    _retrying(settings, lambda: store.upsert([record]), "vector_store.upsert")
    return record
