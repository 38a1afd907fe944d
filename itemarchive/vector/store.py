"""Vector store interface and the in-process implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, Sequence

import numpy as np

from .types import VectorHit, VectorRecord


class VectorStore(ABC):
    """Index of item embeddings with metadata mirrored from the database.

    The database stays authoritative. Metadata here is a copy used to
    filter searches (for example to hide archived items) and may lag
    behind until pending sync jobs are drained.
    """

    def __init__(self, dimension: int | None = None) -> None:
        self.dimension = dimension

    @abstractmethod
    def upsert(self, records: Sequence[VectorRecord]) -> None:
        """Insert or replace records."""

    @abstractmethod
    def get(self, item_id: int) -> VectorRecord | None:
        """Fetch one record or ``None``."""

    @abstractmethod
    def bulk_update_metadata(self, updates: Mapping[int, Mapping[str, Any]]) -> set[int]:
        """Shallow-merge each patch into the stored metadata.

        Ids without a record are skipped rather than created. Returns the
        ids that were updated.
        """

    @abstractmethod
    def delete(self, item_ids: Iterable[int]) -> int:
        """Remove records; returns how many existed."""

    @abstractmethod
    def search(
        self,
        query: Sequence[float],
        *,
        top_k: int = 5,
        where: Mapping[str, Any] | None = None,
    ) -> list[VectorHit]:
        """Rank records by cosine similarity to ``query``."""

    def validate_embedding(self, embedding: Sequence[float]) -> list[float]:
        values = [float(v) for v in embedding]
        if not values:
            raise ValueError("embedding must not be empty")
        if self.dimension is not None and len(values) != self.dimension:
            raise ValueError(f"embedding has {len(values)} dimensions, expected {self.dimension}")
        return values


def matches(metadata: Mapping[str, Any], where: Mapping[str, Any] | None) -> bool:
    if not where:
        return True
    return all(metadata.get(key) == value for key, value in where.items())


def rank(
    query: Sequence[float],
    candidates: Iterable[tuple[int, Sequence[float], Mapping[str, Any]]],
    top_k: int,
) -> list[VectorHit]:
    """Cosine-rank ``(item_id, embedding, metadata)`` candidates against ``query``."""

    q = np.asarray(query, dtype=np.float32)
    q_norm = np.linalg.norm(q)
    if q_norm == 0 or top_k <= 0:
        return []
    q = q / q_norm
    hits: list[VectorHit] = []
    for item_id, embedding, metadata in candidates:
        v = np.asarray(embedding, dtype=np.float32)
        if v.shape != q.shape:
            continue
        norm = np.linalg.norm(v)
        if norm == 0:
            continue
        score = float(np.dot(q, v / norm))
        hits.append(VectorHit(item_id=item_id, score=score, metadata=dict(metadata)))
    hits.sort(key=lambda hit: (-hit.score, hit.item_id))
    return hits[:top_k]


class InMemoryVectorStore(VectorStore):
    """Dictionary-backed store for tests and single-process setups."""

    def __init__(self, dimension: int | None = None) -> None:
        super().__init__(dimension)
        self._records: dict[int, VectorRecord] = {}

    def upsert(self, records: Sequence[VectorRecord]) -> None:
        for record in records:
            embedding = self.validate_embedding(record.embedding)
            self._records[record.item_id] = VectorRecord(record.item_id, embedding, dict(record.metadata))

    def get(self, item_id: int) -> VectorRecord | None:
        record = self._records.get(item_id)
        if record is None:
            return None
        return VectorRecord(record.item_id, list(record.embedding), dict(record.metadata))

    def bulk_update_metadata(self, updates: Mapping[int, Mapping[str, Any]]) -> set[int]:
        updated: set[int] = set()
        for item_id, patch in updates.items():
            record = self._records.get(item_id)
            if record is None:
                continue
            record.metadata = {**record.metadata, **patch}
            updated.add(item_id)
        return updated

    def delete(self, item_ids: Iterable[int]) -> int:
        removed = 0
        for item_id in item_ids:
            if self._records.pop(item_id, None) is not None:
                removed += 1
        return removed

    def search(self, query, *, top_k=5, where=None):
        candidates = (
            (r.item_id, r.embedding, r.metadata) for r in self._records.values() if matches(r.metadata, where)
        )
        return rank(query, candidates, top_k)

    def __len__(self) -> int:
        return len(self._records)
