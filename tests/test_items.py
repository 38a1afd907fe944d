"""Tests for item CRUD, revisions and batch lookups."""

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))

from itemarchive.core.errors import DuplicateItemError, InvalidTransitionError
from itemarchive.core.settings import AppSettings
from itemarchive.crud.history import list_history, record_history_bulk
from itemarchive.crud.items import (
    ItemRef,
    create_item,
    find_by_ids,
    get_item,
    list_items,
    list_revisions,
    load_items,
    update_item,
)
from itemarchive.db.session import Base
from itemarchive.models.item import HistoryAction, ItemStatus
from itemarchive.models.sync_job import VectorSyncJob
from itemarchive.services.archive import archive_selected

# Ensure models are registered so metadata tables are created
from itemarchive.models import item as item_model  # noqa: F401
from itemarchive.models import sync_job as sync_job_model  # noqa: F401


@pytest.fixture()
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(engine):
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def _make(db, key, title="Widget", **extra):
    return create_item(db, {"external_key": key, "title": title, **extra}, actor="tester")


def test_create_item_writes_first_revision_and_history(db_session):
    item = _make(db_session, "  SKU-1 ", title=" Widget ", body="first", attributes={"color": "red"})

    assert item.external_key == "SKU-1"
    assert item.title == "Widget"
    assert item.status == ItemStatus.ACTIVE.value
    assert item.current_revision == 1
    assert item.created_at.endswith("Z")

    revisions = list_revisions(db_session, item.id)
    assert [r.revision for r in revisions] == [1]
    assert revisions[0].attributes == {"color": "red"}
    assert revisions[0].author == "tester"

    history = list_history(db_session, item.id)
    assert [h.action for h in history] == [HistoryAction.CREATED.value]
    assert history[0].to_status == ItemStatus.ACTIVE.value


def test_create_item_requires_key_and_title(db_session):
    with pytest.raises(ValueError):
        create_item(db_session, {"external_key": " ", "title": "x"})
    with pytest.raises(ValueError):
        create_item(db_session, {"external_key": "k", "title": None})
    with pytest.raises(ValueError):
        create_item(db_session, {"external_key": "k", "title": "t", "attributes": ["not", "a", "dict"]})


def test_create_item_rejects_duplicate_key(db_session):
    _make(db_session, "SKU-DUP")
    with pytest.raises(DuplicateItemError):
        _make(db_session, "SKU-DUP")
    # Session is usable again after the failed insert
    assert len(list_items(db_session)) == 1


def test_update_item_appends_revision_and_enqueues_sync(db_session):
    item = _make(db_session, "SKU-2", body="v1")

    updated = update_item(db_session, item, {"title": "Widget v2", "unknown": "ignored"}, actor="editor")

    assert updated.current_revision == 2
    assert updated.title == "Widget v2"
    assert updated.body == "v1"
    revisions = list_revisions(db_session, item.id)
    assert [(r.revision, r.title) for r in revisions] == [(1, "Widget"), (2, "Widget v2")]
    actions = [h.action for h in list_history(db_session, item.id)]
    assert actions == [HistoryAction.CREATED.value, HistoryAction.UPDATED.value]

    jobs = db_session.query(VectorSyncJob).filter_by(item_id=item.id).all()
    assert len(jobs) == 1
    assert jobs[0].payload["title"] == "Widget v2"
    assert jobs[0].payload["revision"] == 2


def test_update_item_without_changes_is_a_noop(db_session):
    item = _make(db_session, "SKU-3", body="same")

    result = update_item(db_session, item, {"title": "Widget", "body": "same"})

    assert result.current_revision == 1
    assert len(list_revisions(db_session, item.id)) == 1
    assert db_session.query(VectorSyncJob).count() == 0


def test_update_archived_item_is_rejected(db_session):
    item = _make(db_session, "SKU-4")
    item.status = ItemStatus.ARCHIVED.value
    db_session.commit()

    with pytest.raises(InvalidTransitionError):
        update_item(db_session, item, {"title": "nope"})


@pytest.fixture()
def file_sessions(tmp_path):
    # Two sessions on separate connections, like two API requests
    engine = create_engine(f"sqlite:///{tmp_path / 'items.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    first, second = factory(), factory()
    try:
        yield first, second
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_update_loses_to_archive_committed_after_load(file_sessions):
    editor, archiver = file_sessions
    item_id = _make(editor, "RACE-1").id
    stale = get_item(editor, item_id)
    assert stale.status == ItemStatus.ACTIVE.value

    archive_selected(archiver, [item_id], actor="archiver", settings=AppSettings(VECTOR_SYNC_MODE="deferred"))

    with pytest.raises(InvalidTransitionError) as exc_info:
        update_item(editor, stale, {"title": "edited after archive"}, actor="editor")
    assert exc_info.value.details["status"] == ItemStatus.ARCHIVED.value

    editor.expire_all()
    item = get_item(editor, item_id)
    assert item.status == ItemStatus.ARCHIVED.value
    assert item.title == "Widget"
    assert item.current_revision == 1
    assert len(list_revisions(editor, item_id)) == 1
    actions = [h.action for h in list_history(editor, item_id)]
    assert actions == [HistoryAction.CREATED.value, HistoryAction.ARCHIVED.value]


def test_update_rejects_edit_based_on_an_old_revision(file_sessions):
    first, second = file_sessions
    item_id = _make(first, "RACE-2").id
    stale = get_item(first, item_id)

    update_item(second, get_item(second, item_id), {"title": "second wins"}, actor="second")

    with pytest.raises(InvalidTransitionError):
        update_item(first, stale, {"title": "first loses"}, actor="first")

    first.expire_all()
    assert get_item(first, item_id).title == "second wins"
    assert [r.revision for r in list_revisions(first, item_id)] == [1, 2]


def test_list_items_filters_by_status_newest_first(db_session):
    first = _make(db_session, "A")
    second = _make(db_session, "B")
    third = _make(db_session, "C")
    second.status = ItemStatus.ARCHIVED.value
    db_session.commit()

    assert [i.id for i in list_items(db_session)] == [third.id, second.id, first.id]
    assert [i.id for i in list_items(db_session, status="ACTIVE")] == [third.id, first.id]
    assert [i.id for i in list_items(db_session, limit=1, offset=1)] == [second.id]


def test_find_by_ids_keeps_order_drops_duplicates_and_missing(db_session):
    a = _make(db_session, "A")
    b = _make(db_session, "B")
    c = _make(db_session, "C")

    refs = find_by_ids(db_session, [c.id, 999, a.id, c.id, b.id], chunk_size=2)

    assert [r.id for r in refs] == [c.id, a.id, b.id]
    assert all(isinstance(r, ItemRef) for r in refs)
    assert refs[0] == ItemRef(c.id, "C", "ACTIVE", 1, c.updated_at)


def test_find_by_ids_selects_only_reference_columns(engine, db_session):
    item = _make(db_session, "LIGHT", body="a long body that should not be read")
    statements = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", capture)
    try:
        find_by_ids(db_session, [item.id])
    finally:
        event.remove(engine, "before_cursor_execute", capture)

    selects = [s for s in statements if s.lstrip().upper().startswith("SELECT")]
    assert len(selects) == 1
    assert "body" not in selects[0]
    assert "attributes" not in selects[0]


def test_find_by_ids_with_no_ids_skips_the_query(db_session):
    assert find_by_ids(db_session, []) == []


def test_load_items_eager_loads_revisions(engine, db_session):
    a = _make(db_session, "A")
    b = _make(db_session, "B")
    update_item(db_session, b, {"title": "B2"})
    a_id, b_id = a.id, b.id
    db_session.expire_all()
    statements = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", capture)
    try:
        items = load_items(db_session, [b_id, a_id], with_revisions=True)
        revision_counts = [len(i.revisions) for i in items]
    finally:
        event.remove(engine, "before_cursor_execute", capture)

    assert [i.id for i in items] == [b_id, a_id]
    assert revision_counts == [2, 1]
    # One query for the items and one for all of their revisions
    assert len(statements) == 2


def test_record_history_bulk_validates_entries(db_session):
    item = _make(db_session, "H")
    assert record_history_bulk(db_session, []) == 0
    with pytest.raises(ValueError):
        record_history_bulk(db_session, [{"item_id": item.id}])

    record_history_bulk(
        db_session,
        [
            {"item_id": item.id, "action": HistoryAction.UPDATED, "actor": "a"},
            {"item_id": item.id, "action": "UPDATED", "actor": "b"},
        ],
    )
    db_session.commit()
    assert [h.actor for h in list_history(db_session, item.id)] == ["tester", "a", "b"]


def test_get_item_returns_none_for_unknown_id(db_session):
    assert get_item(db_session, 12345) is None
