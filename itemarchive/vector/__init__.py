from .sql_store import ItemVector, SqlVectorStore, VectorBase
from .store import InMemoryVectorStore, VectorStore
from .types import VectorHit, VectorRecord

__all__ = [
    "InMemoryVectorStore",
    "ItemVector",
    "SqlVectorStore",
    "VectorBase",
    "VectorHit",
    "VectorRecord",
    "VectorStore",
]
