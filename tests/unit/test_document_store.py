from __future__ import annotations

from datetime import datetime

import pytest

from reqagent.errors import ContextStoreError
from reqagent.models.document import StoredDocument
from reqagent.runtime.document_store import (
    InMemoryDocumentStore,
    SQLiteDocumentStore,
    scan_generated_documents,
)


def _doc(doc_id: str, **overrides) -> StoredDocument:
    fields = {
        "id": doc_id,
        "project_id": "p1",
        "name": doc_id.title(),
        "type": "risk-register",
        "category": "planning",
        "content": f"content of {doc_id}",
        "status": "approved",
        "last_modified": datetime(2026, 1, 1),
    }
    fields.update(overrides)
    return StoredDocument(**fields)


# ── In-memory ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_in_memory_filters_inactive_and_foreign():
    store = InMemoryDocumentStore([
        _doc("a"),
        _doc("b", deleted=True),
        _doc("c", status="archived"),
        _doc("d", project_id="p2"),
    ])
    await store.save_document(_doc("e", status="draft"))

    ids = sorted(d.id for d in await store.list_documents("p1"))
    assert ids == ["a", "e"]


# ── SQLite ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_sqlite_round_trip(tmp_path):
    store = SQLiteDocumentStore(str(tmp_path / "nested" / "docs.db"))
    await store.initialize()
    await store.save_document(
        _doc("old", quality_score=71.5, word_count=120, last_modified=datetime(2025, 1, 1))
    )
    await store.save_document(_doc("new", last_modified=datetime(2026, 3, 1)))
    await store.save_document(_doc("gone", deleted=True))
    await store.save_document(_doc("arch", status="archived"))

    docs = await store.list_documents("p1")

    assert [d.id for d in docs] == ["new", "old"]
    old = docs[1]
    assert old.quality_score == 71.5
    assert old.word_count == 120
    assert old.last_modified == datetime(2025, 1, 1)
    assert old.category == "planning"


@pytest.mark.asyncio
async def test_sqlite_save_replaces(tmp_path):
    store = SQLiteDocumentStore(str(tmp_path / "docs.db"))
    await store.initialize()
    await store.save_document(_doc("a", content="v1"))
    await store.save_document(_doc("a", content="v2"))
    (doc,) = await store.list_documents("p1")
    assert doc.content == "v2"


@pytest.mark.asyncio
async def test_sqlite_without_schema_raises(tmp_path):
    store = SQLiteDocumentStore(str(tmp_path / "empty.db"))
    with pytest.raises(ContextStoreError):
        await store.list_documents("p1")


# ── Directory scan ────────────────────────────────────────────────────────


def test_scan_generated_documents(tmp_path):
    (tmp_path / "strategy").mkdir()
    (tmp_path / "strategy" / "project-charter.md").write_text("# Charter\nGoals here")
    (tmp_path / "risk-register.md").write_text("risks")
    (tmp_path / "notes.txt").write_text("ignored")

    docs = {d.type: d for d in scan_generated_documents(tmp_path, project_id="demo")}

    assert set(docs) == {"project-charter", "risk-register"}
    charter = docs["project-charter"]
    assert charter.category == "strategy"
    assert charter.id == "strategy/project-charter.md"
    assert charter.name == "Project Charter"
    assert charter.project_id == "demo"
    assert charter.word_count == 4
    assert docs["risk-register"].category == "general"


def test_scan_undecodable_file(tmp_path):
    bad = tmp_path / "legacy-notes.md"
    bad.write_bytes(b"caf\xe9 minutes\xff")

    with pytest.raises(ContextStoreError, match="cannot read") as excinfo:
        scan_generated_documents(tmp_path)

    assert excinfo.value.context == {"path": str(bad)}
    assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)


def test_scan_missing_directory(tmp_path):
    with pytest.raises(ContextStoreError, match="not a directory"):
        scan_generated_documents(tmp_path / "nope")
