from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class VectorUpsert(BaseModel):
    embedding: list[float] = Field(min_length=1)


class VectorRecordOut(BaseModel):
    item_id: int
    metadata: dict[str, Any]
    dimension: int


class VectorSearchRequest(BaseModel):
    vector: list[float] = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=100)
    include_archived: bool = False


class VectorHitOut(BaseModel):
    item_id: int
    score: float
    metadata: dict[str, Any]


class DrainReportOut(BaseModel):
    processed: int
    synced: int
    skipped: int
    failed: int
    retried: int
