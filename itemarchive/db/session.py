"""SQLAlchemy engine, session helpers and bounded transactions."""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ..core.errors import TransactionTimeoutError
from ..core.settings import settings


def build_engine(url: str) -> Engine:
    # SQLite connections are shared by FastAPI worker threads.
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


# Created once per process; connections are opened lazily.
engine = build_engine(settings.DB_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
# Parent class for the item, history and outbox models.
Base = declarative_base()


def get_db():
    """FastAPI dependency that yields a session and guarantees cleanup."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class Deadline:
    """Wall-clock budget for one unit of work."""

    def __init__(self, timeout_sec: float | None) -> None:
        self.timeout_sec = timeout_sec
        self.started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    @property
    def remaining(self) -> float | None:
        if self.timeout_sec is None:
            return None
        return self.timeout_sec - self.elapsed

    def expired(self) -> bool:
        remaining = self.remaining
        return remaining is not None and remaining <= 0

    def check(self, stage: str = "transaction") -> None:
        if self.expired():
            raise TransactionTimeoutError(
                f"{stage} exceeded {self.timeout_sec:g}s",
                details={"stage": stage, "elapsed_sec": round(self.elapsed, 3)},
            )


@contextmanager
def transaction(db: Session, timeout_sec: float | None = None) -> Iterator[Deadline]:
    """Run the enclosed block as one transaction with an optional deadline.

    The block commits on success and rolls back on any exception. On
    PostgreSQL the timeout is also pushed down as ``statement_timeout`` so a
    single slow statement cannot outlive the budget; elsewhere the deadline
    is checked by callers between steps and once more before commit.
    """

    deadline = Deadline(timeout_sec)
    try:
        if timeout_sec and db.get_bind().dialect.name == "postgresql":
            # SET does not accept bind parameters.
            db.execute(text(f"SET LOCAL statement_timeout = {int(timeout_sec * 1000)}"))
        yield deadline
        deadline.check("commit")
        db.commit()
    except Exception:
        db.rollback()
        raise
