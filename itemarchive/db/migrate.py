"""Idempotent, additive schema upgrades for existing databases."""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

# Columns added after the first release of each table.
ADDED_COLUMNS: dict[str, dict[str, str]] = {
    "items": {
        "archived_at": "TEXT",
        "archived_by": "TEXT",
    },
    "item_history": {
        "on_behalf_of": "TEXT",
    },
    "vector_sync_jobs": {
        "last_error": "TEXT",
    },
}

# Composite indexes backing the archive and outbox queries:
#   items(status, id)                 -> status partition of an id batch
#   item_history(item_id, created_at) -> per-item history listing
#   vector_sync_jobs(status, id)      -> oldest pending jobs first
COMPOSITE_INDEXES: tuple[tuple[str, str, tuple[str, ...], bool], ...] = (
    ("items", "ix_items_status_id", ("status", "id"), False),
    ("item_revisions", "ux_item_revisions_item_revision", ("item_id", "revision"), True),
    ("item_history", "ix_item_history_item_created", ("item_id", "created_at"), False),
    ("vector_sync_jobs", "ix_vector_sync_jobs_status_id", ("status", "id"), False),
)


def _column_names(engine: Engine, table: str) -> set[str]:
    return {column["name"] for column in inspect(engine).get_columns(table)}


def _add_column(engine: Engine, table: str, col_def: str) -> None:
    with engine.begin() as conn:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {col_def}"))


def _create_index_if_not_exists(engine: Engine, table: str, name: str, cols: Iterable[str], unique: bool = False) -> None:
    cols_sql = ", ".join(cols)
    unique_sql = "UNIQUE " if unique else ""
    with engine.begin() as conn:
        conn.execute(text(f"CREATE {unique_sql}INDEX IF NOT EXISTS {name} ON {table} ({cols_sql})"))


def run_migrations(engine: Engine) -> None:
    """Bring an existing schema up to date with the models."""

    tables = set(inspect(engine).get_table_names())
    for table, needed in ADDED_COLUMNS.items():
        if table not in tables:
            continue
        existing = _column_names(engine, table)
        for name, dtype in needed.items():
            if name not in existing:
                logger.info("migrate.add_column", extra={"extra_data": {"table": table, "column": name}})
                _add_column(engine, table, f"{name} {dtype}")

    for table, name, cols, unique in COMPOSITE_INDEXES:
        if table in tables:
            _create_index_if_not_exists(engine, table, name, cols, unique=unique)
