"""Project document stores: in-memory, SQLite, and a markdown directory scan."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Protocol

import aiosqlite

from reqagent.errors import ContextStoreError
from reqagent.models.document import ACTIVE_STATUSES, StoredDocument

log = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'uncategorized',
    content TEXT NOT NULL DEFAULT '',
    quality_score REAL,
    status TEXT NOT NULL DEFAULT 'draft',
    last_modified TEXT NOT NULL,
    word_count INTEGER,
    deleted INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_documents_project ON documents(project_id);
"""


class DocumentStore(Protocol):
    async def list_documents(self, project_id: str) -> list[StoredDocument]: ...

    async def save_document(self, doc: StoredDocument) -> None: ...


def _is_active(doc: StoredDocument) -> bool:
    return not doc.deleted and doc.status in ACTIVE_STATUSES


class InMemoryDocumentStore:
    def __init__(self, documents: list[StoredDocument] | None = None) -> None:
        self._docs: dict[str, StoredDocument] = {}
        for doc in documents or []:
            self._docs[doc.id] = doc

    async def list_documents(self, project_id: str) -> list[StoredDocument]:
        return [
            d for d in self._docs.values() if d.project_id == project_id and _is_active(d)
        ]

    async def save_document(self, doc: StoredDocument) -> None:
        self._docs[doc.id] = doc


class SQLiteDocumentStore:
    """Documents persisted in a single SQLite table."""

    def __init__(self, db_path: str = "data/documents.db") -> None:
        self._db_path = db_path

    async def initialize(self) -> None:
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            async with aiosqlite.connect(self._db_path) as db:
                await db.executescript(_CREATE_TABLE)
                await db.commit()
        except sqlite3.Error as exc:
            raise ContextStoreError(
                f"cannot initialize document store: {exc}",
                context={"db_path": self._db_path},
            ) from exc

    async def save_document(self, doc: StoredDocument) -> None:
        try:
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO documents
                        (id, project_id, name, type, category, content,
                         quality_score, status, last_modified, word_count, deleted)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        doc.id,
                        doc.project_id,
                        doc.name,
                        doc.type,
                        doc.category,
                        doc.content,
                        doc.quality_score,
                        doc.status,
                        doc.last_modified.isoformat(),
                        doc.word_count,
                        int(doc.deleted),
                    ),
                )
                await db.commit()
        except sqlite3.Error as exc:
            raise ContextStoreError(
                f"cannot save document {doc.id}: {exc}",
                context={"document_id": doc.id},
            ) from exc

    async def list_documents(self, project_id: str) -> list[StoredDocument]:
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        query = (
            "SELECT id, project_id, name, type, category, content, quality_score, "
            "status, last_modified, word_count "
            f"FROM documents WHERE project_id = ? AND deleted = 0 AND status IN ({placeholders}) "
            "ORDER BY last_modified DESC"
        )
        try:
            async with aiosqlite.connect(self._db_path) as db:
                cursor = await db.execute(query, (project_id, *ACTIVE_STATUSES))
                rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            raise ContextStoreError(
                f"cannot list documents for project {project_id}: {exc}",
                context={"project_id": project_id},
            ) from exc

        return [
            StoredDocument(
                id=row[0],
                project_id=row[1],
                name=row[2],
                type=row[3],
                category=row[4],
                content=row[5],
                quality_score=row[6],
                status=row[7],
                last_modified=datetime.fromisoformat(row[8]),
                word_count=row[9],
            )
            for row in rows
        ]


def scan_generated_documents(root: str | Path, project_id: str = "local") -> list[StoredDocument]:
    """Read every ``*.md`` under ``root`` as a stored document.

    The file stem is the document type and the parent directory name is
    the category (``general`` at the top level).
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise ContextStoreError(
            f"not a directory: {root_path}",
            context={"path": str(root_path)},
        )

    docs: list[StoredDocument] = []
    for path in sorted(root_path.rglob("*.md")):
        try:
            content = path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError) as exc:
            raise ContextStoreError(
                f"cannot read {path}: {exc}",
                context={"path": str(path)},
            ) from exc
        category = path.parent.name if path.parent != root_path else "general"
        docs.append(
            StoredDocument(
                id=str(path.relative_to(root_path)),
                project_id=project_id,
                name=path.stem.replace("-", " ").title(),
                type=path.stem,
                category=category,
                content=content,
                status="draft",
                last_modified=datetime.fromtimestamp(path.stat().st_mtime),
                word_count=len(content.split()),
            )
        )
    log.info("store.scanned path=%s documents=%d", root_path, len(docs))
    return docs
