from __future__ import annotations

from functools import lru_cache

from sqlalchemy.orm import sessionmaker

from ..core.settings import settings
from ..db.session import build_engine, engine
from ..vector import SqlVectorStore, VectorBase, VectorStore


@lru_cache(maxsize=1)
def get_vector_store() -> VectorStore:
    """Process-wide vector store built from ``VECTOR_DB_URL`` (or ``DB_URL``)."""

    vector_engine = engine if settings.vector_db_url == settings.DB_URL else build_engine(settings.vector_db_url)
    if settings.AUTO_CREATE_SCHEMA:
        VectorBase.metadata.create_all(bind=vector_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=vector_engine)
    return SqlVectorStore(factory, dimension=settings.VECTOR_DIMENSION, chunk_size=settings.QUERY_CHUNK_SIZE)
