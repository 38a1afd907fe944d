"""HTTP tests for the items and vector endpoints."""

import json
import logging
import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))

from itemarchive.core.errors import VectorStoreError
from itemarchive.core.logging import JsonLogFormatter
from itemarchive.core.settings import AppSettings, get_settings
from itemarchive.db.session import Base, get_db
from itemarchive.deps import auth as auth_deps
from itemarchive.deps.vector import get_vector_store
from itemarchive.main import create_app
from itemarchive.vector import InMemoryVectorStore


@pytest.fixture()
def test_settings():
    return AppSettings(
        METRICS_ENABLED=False,
        AUTO_CREATE_SCHEMA=False,
        ARCHIVE_MAX_BATCH=5,
        VECTOR_SYNC_MAX_RETRIES=0,
        VECTOR_SYNC_BASE_DELAY=0,
        VECTOR_SYNC_MAX_DELAY=0,
    )


@pytest.fixture()
def store():
    return InMemoryVectorStore(dimension=2)


@pytest.fixture()
def app(test_settings, store):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    application = create_app(test_settings)
    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_vector_store] = lambda: store
    application.dependency_overrides[get_settings] = lambda: test_settings
    return application


@pytest.fixture()
def client(app):
    return TestClient(app)


def _create(client, key, title="Widget", embedding=None):
    payload = {"external_key": key, "title": title, "attributes": {"kind": "demo"}}
    if embedding is not None:
        payload["embedding"] = embedding
    resp = client.post("/api/v1/items", json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health_and_request_id(client):
    resp = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert resp.headers["X-Request-ID"] == "req-123"


def test_item_lifecycle(client, store):
    item = _create(client, "SKU-1", embedding=[1.0, 0.0])
    assert item["status"] == "ACTIVE"
    assert item["current_revision"] == 1
    assert store.get(item["id"]).metadata["title"] == "Widget"

    resp = client.patch(f"/api/v1/items/{item['id']}", json={"title": "Widget 2"})
    assert resp.status_code == 200
    assert resp.json()["current_revision"] == 2

    revisions = client.get(f"/api/v1/items/{item['id']}/revisions").json()
    assert [r["title"] for r in revisions] == ["Widget", "Widget 2"]

    history = client.get(f"/api/v1/items/{item['id']}/history").json()
    assert [h["action"] for h in history] == ["CREATED", "UPDATED"]
    assert history[0]["actor"] == "anonymous"

    fetched = client.get(f"/api/v1/items/{item['id']}").json()
    assert fetched["title"] == "Widget 2"
    assert fetched["attributes"] == {"kind": "demo"}


def test_error_envelopes(client):
    _create(client, "DUP")

    dup = client.post("/api/v1/items", json={"external_key": "DUP", "title": "again"})
    assert dup.status_code == 409
    assert dup.json()["code"] == "duplicate_item"

    missing = client.get("/api/v1/items/999")
    assert missing.status_code == 404
    assert missing.json() == {
        "code": "item_not_found",
        "message": "Item not found: 999",
        "details": {"ids": [999]},
    }

    invalid = client.post("/api/v1/items", json={"external_key": "X"})
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "validation_error"

    blank = client.post("/api/v1/items", json={"external_key": "Y", "title": "   "})
    assert blank.status_code == 422
    assert blank.json()["code"] == "http_error"

    wrong_dim = client.post("/api/v1/items", json={"external_key": "Z", "title": "t", "embedding": [1, 2, 3]})
    assert wrong_dim.status_code == 422


def test_lookup_returns_refs_or_full_items(client):
    a = _create(client, "A")
    b = _create(client, "B")

    refs = client.post("/api/v1/items/lookup", json={"ids": [b["id"], 404, a["id"]]}).json()
    assert [r["id"] for r in refs] == [b["id"], a["id"]]
    assert set(refs[0]) == {"id", "external_key", "status", "current_revision", "updated_at"}

    full = client.post("/api/v1/items/lookup", json={"ids": [a["id"]], "full": True}).json()
    assert full[0]["title"] == "Widget"
    assert full[0]["attributes"] == {"kind": "demo"}


def test_archive_endpoint_hides_items_from_search(client, store):
    a = _create(client, "A", embedding=[1.0, 0.0])
    b = _create(client, "B", embedding=[0.8, 0.2])

    resp = client.post(
        "/api/v1/items/archive",
        json={"ids": [a["id"], a["id"], 404], "reason": "obsolete", "actor": "ops"},
    )
    assert resp.status_code == 200
    assert resp.json() == {
        "archived": [a["id"]],
        "already_archived": [],
        "not_found": [404],
        "vector_sync": "synced",
        "pending_jobs": 0,
    }

    archived = client.get(f"/api/v1/items/{a['id']}").json()
    assert archived["status"] == "ARCHIVED"
    # The authenticated caller is the actor; the body only names who asked
    assert archived["archived_by"] == "anonymous"
    last = client.get(f"/api/v1/items/{a['id']}/history").json()[-1]
    assert (last["action"], last["actor"], last["on_behalf_of"]) == ("ARCHIVED", "anonymous", "ops")

    hits = client.post("/api/v1/vectors/search", json={"vector": [1.0, 0.0]}).json()
    assert [h["item_id"] for h in hits] == [b["id"]]
    hits = client.post("/api/v1/vectors/search", json={"vector": [1.0, 0.0], "include_archived": True}).json()
    assert [h["item_id"] for h in hits] == [a["id"], b["id"]]

    edit = client.patch(f"/api/v1/items/{a['id']}", json={"title": "nope"})
    assert edit.status_code == 409
    assert edit.json()["code"] == "invalid_transition"

    listed = client.get("/api/v1/items", params={"status": "ARCHIVED"}).json()
    assert [i["id"] for i in listed] == [a["id"]]


def test_archive_validation(client):
    empty = client.post("/api/v1/items/archive", json={"ids": []})
    assert empty.status_code == 422
    assert empty.json()["code"] == "validation_error"

    too_many = client.post("/api/v1/items/archive", json={"ids": [1, 2, 3, 4, 5, 6]})
    assert too_many.status_code == 422
    assert too_many.json()["code"] == "batch_too_large"
    assert too_many.json()["details"] == {"size": 6, "limit": 5}

    strict = client.post("/api/v1/items/archive", json={"ids": [41], "strict": True})
    assert strict.status_code == 404


def test_deferred_archive_then_drain(app, client, store, test_settings):
    deferred = test_settings.model_copy(update={"VECTOR_SYNC_MODE": "deferred"})
    app.dependency_overrides[get_settings] = lambda: deferred
    a = _create(client, "A", embedding=[1.0, 0.0])

    result = client.post("/api/v1/items/archive", json={"ids": [a["id"]]}).json()
    assert result["vector_sync"] == "pending"
    assert store.get(a["id"]).metadata["status"] == "ACTIVE"
    assert client.get("/api/v1/vector-sync/status").json()["PENDING"] == 1

    report = client.post("/api/v1/vector-sync/drain").json()
    assert report == {"processed": 1, "synced": 1, "skipped": 0, "failed": 0, "retried": 0}
    assert store.get(a["id"]).metadata["status"] == "ARCHIVED"
    assert client.get("/api/v1/vector-sync/status").json() == {"PENDING": 0, "DONE": 1, "FAILED": 0}


def test_index_vector_endpoint(client, store):
    item = _create(client, "V")

    resp = client.put(f"/api/v1/items/{item['id']}/vector", json={"embedding": [0.0, 1.0]})
    assert resp.status_code == 200
    assert resp.json()["dimension"] == 2
    assert store.get(item["id"]).metadata["external_key"] == "V"

    assert client.put("/api/v1/items/999/vector", json={"embedding": [0.0, 1.0]}).status_code == 404
    assert client.put(f"/api/v1/items/{item['id']}/vector", json={"embedding": [1.0]}).status_code == 422


def test_api_key_is_enforced_when_configured(client, monkeypatch):
    monkeypatch.setattr(auth_deps.settings, "API_KEY", "secret")

    assert client.get("/api/v1/items").status_code == 401
    wrong = client.get("/api/v1/items", headers={"X-API-Key": "nope"})
    assert wrong.status_code == 401
    assert wrong.json()["message"] == "Invalid API key"

    ok = client.post(
        "/api/v1/items",
        json={"external_key": "K", "title": "Keyed"},
        headers={"X-API-Key": "secret"},
    )
    assert ok.status_code == 201
    history = client.get(f"/api/v1/items/{ok.json()['id']}/history", headers={"X-API-Key": "secret"}).json()
    assert history[0]["actor"] == "api-key"


class UnreachableStore(InMemoryVectorStore):
    def upsert(self, records):
        raise VectorStoreError("vector backend unavailable")


def test_create_succeeds_when_indexing_fails(app, client):
    down = UnreachableStore(dimension=2)
    app.dependency_overrides[get_vector_store] = lambda: down

    resp = client.post("/api/v1/items", json={"external_key": "IDX", "title": "t", "embedding": [1.0, 0.0]})
    assert resp.status_code == 201
    assert down.get(resp.json()["id"]) is None

    retry = client.post("/api/v1/items", json={"external_key": "IDX", "title": "t", "embedding": [1.0, 0.0]})
    assert retry.status_code == 409
    listed = client.get("/api/v1/items").json()
    assert [i["external_key"] for i in listed] == ["IDX"]


def test_request_log_carries_archive_outcome(client, caplog):
    a = _create(client, "LOG")

    with caplog.at_level(logging.INFO, logger="itemarchive.request"):
        client.post("/api/v1/items/archive", json={"ids": [a["id"], 404], "actor": "ops"})

    completed = [
        r.extra_data
        for r in caplog.records
        if r.getMessage() == "request.completed" and r.extra_data["path"] == "/api/v1/items/archive"
    ]
    assert len(completed) == 1
    fields = completed[0]
    assert fields["principal"] == "anonymous"
    assert fields["on_behalf_of"] == "ops"
    assert (fields["requested"], fields["archived"], fields["not_found"]) == (2, 1, 1)


def test_json_log_lines_name_the_service():
    record = logging.LogRecord("itemarchive.test", logging.INFO, __file__, 1, "archive.committed", None, None)
    record.extra_data = {"archived": 3}

    line = json.loads(JsonLogFormatter(service="Item Archive", env="test").format(record))

    assert line["service"] == "Item Archive"
    assert line["env"] == "test"
    assert line["message"] == "archive.committed"
    assert line["archived"] == 3
