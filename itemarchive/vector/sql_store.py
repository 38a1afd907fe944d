"""Vector table kept in a relational database.

The table has its own declarative base so it can live in a separate
database (``VECTOR_DB_URL``) from the items it mirrors.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import JSON, Column, Integer, Text, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ..core.clock import utcnow_iso
from ..core.errors import VectorStoreError
from .store import VectorStore, matches, rank
from .types import VectorRecord

logger = logging.getLogger(__name__)

VectorBase = declarative_base()


class ItemVector(VectorBase):
    __tablename__ = "item_vectors"

    item_id = Column(Integer, primary_key=True, autoincrement=False)
    embedding = Column(JSON, nullable=False)
    # ``metadata`` is reserved on declarative classes.
    payload = Column("metadata", JSON, nullable=False, default=dict)
    updated_at = Column(Text, nullable=False)


class SqlVectorStore(VectorStore):
    """``VectorStore`` over the ``item_vectors`` table.

    Every call uses its own short session. Database errors surface as
    ``VectorStoreError`` so callers can retry them.
    """

    def __init__(self, session_factory: sessionmaker, dimension: int | None = None, chunk_size: int = 500) -> None:
        super().__init__(dimension)
        self.session_factory = session_factory
        self.chunk_size = chunk_size

    def _run(self, label: str, work):
        session: Session = self.session_factory()
        try:
            result = work(session)
            session.commit()
            return result
        except SQLAlchemyError as exc:
            session.rollback()
            raise VectorStoreError(f"vector store {label} failed: {exc.__class__.__name__}") from exc
        finally:
            session.close()

    def upsert(self, records: Sequence[VectorRecord]) -> None:
        rows = {
            record.item_id: {
                "item_id": record.item_id,
                "embedding": self.validate_embedding(record.embedding),
                "payload": dict(record.metadata),
            }
            for record in records
        }
        if not rows:
            return

        def work(session: Session) -> None:
            now = utcnow_iso()
            for row in rows.values():
                session.merge(ItemVector(updated_at=now, **row))

        self._run("upsert", work)

    def get(self, item_id: int) -> VectorRecord | None:
        def work(session: Session) -> VectorRecord | None:
            row = session.get(ItemVector, item_id)
            if row is None:
                return None
            return VectorRecord(row.item_id, list(row.embedding), dict(row.payload or {}))

        return self._run("get", work)

    def bulk_update_metadata(self, updates: Mapping[int, Mapping[str, Any]]) -> set[int]:
        if not updates:
            return set()
        ids = list(updates)

        def work(session: Session) -> set[int]:
            current: dict[int, dict[str, Any]] = {}
            for start in range(0, len(ids), self.chunk_size):
                chunk = ids[start : start + self.chunk_size]
                stmt = select(ItemVector.item_id, ItemVector.payload).where(ItemVector.item_id.in_(chunk))
                for item_id, payload in session.execute(stmt):
                    current[item_id] = dict(payload or {})
            if not current:
                return set()
            now = utcnow_iso()
            # ORM bulk UPDATE by primary key: one executemany for all rows.
            session.execute(
                update(ItemVector),
                [
                    {"item_id": item_id, "payload": {**payload, **updates[item_id]}, "updated_at": now}
                    for item_id, payload in current.items()
                ],
            )
            return set(current)

        updated = self._run("bulk_update_metadata", work)
        logger.debug(
            "vector_store.metadata_updated",
            extra={"extra_data": {"requested": len(ids), "updated": len(updated)}},
        )
        return updated

    def delete(self, item_ids: Iterable[int]) -> int:
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return 0

        def work(session: Session) -> int:
            removed = 0
            for start in range(0, len(ids), self.chunk_size):
                chunk = ids[start : start + self.chunk_size]
                result = session.execute(delete(ItemVector).where(ItemVector.item_id.in_(chunk)))
                removed += result.rowcount or 0
            return removed

        return self._run("delete", work)

    def search(self, query, *, top_k=5, where=None):
        def work(session: Session):
            rows = session.execute(select(ItemVector.item_id, ItemVector.embedding, ItemVector.payload)).all()
            candidates = [
                (item_id, embedding, payload or {})
                for item_id, embedding, payload in rows
                if matches(payload or {}, where)
            ]
            return rank(query, candidates, top_k)

        return self._run("search", work)
