from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class VectorRecord:
    """One item's embedding plus the metadata mirrored from the database."""

    item_id: int
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorHit:
    item_id: int
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)
