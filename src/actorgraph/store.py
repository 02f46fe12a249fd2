from __future__ import annotations

import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from .errors import StoreUnavailable, ValidationError, require_id


SCHEMA_VERSION = 1


@dataclass(frozen=True)
class Document:
    doc_id: int
    scope_id: int
    path: str
    title: str
    raw_content: str

    @property
    def source_ref(self) -> str:
        return self.path


def now() -> int:
    return int(time.time())


def connect(db_path: str | os.PathLike[str], *, check_same_thread: bool = True) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block in one write transaction.

    Joins an already open transaction instead of nesting. Any sqlite3 failure
    rolls back and surfaces as StoreUnavailable.
    """
    if conn.in_transaction:
        yield conn
        return

    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Could not open a write transaction: {e}") from e

    try:
        yield conn
    except sqlite3.Error as e:
        conn.rollback()
        raise StoreUnavailable(str(e)) from e
    except BaseException:
        conn.rollback()
        raise
    else:
        try:
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailable(f"Commit failed: {e}") from e


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scopes (
          id INTEGER PRIMARY KEY,
          name TEXT NOT NULL UNIQUE COLLATE NOCASE,
          created_at INTEGER NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
          id INTEGER PRIMARY KEY,
          scope_id INTEGER NOT NULL REFERENCES scopes(id) ON DELETE CASCADE,
          path TEXT NOT NULL,
          title TEXT NOT NULL,
          sha256 TEXT NOT NULL,
          raw_content TEXT NOT NULL,
          extraction_status TEXT NOT NULL DEFAULT 'pending',
          extraction_error TEXT,
          created_at INTEGER NOT NULL,
          UNIQUE (scope_id, path)
        );
        """
    )

    # Tag store: flat entity tags per document, read back for co-occurrence edges.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS document_tags (
          document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
          tag_type TEXT NOT NULL,
          tag_value TEXT NOT NULL,
          PRIMARY KEY (document_id, tag_type, tag_value)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_document_tags_value ON document_tags(tag_type, tag_value);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS extraction_blocklist (
          id INTEGER PRIMARY KEY,
          tag_value TEXT NOT NULL COLLATE NOCASE,
          blocked_type TEXT NOT NULL,
          correct_type TEXT,
          reason TEXT NOT NULL DEFAULT 'reclassified',
          created_at INTEGER NOT NULL,
          UNIQUE (tag_value, blocked_type)
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS extraction_queue (
          id INTEGER PRIMARY KEY,
          document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
          status TEXT NOT NULL
            CHECK (status IN ('pending', 'processing', 'complete', 'failed', 'dead')),
          attempts INTEGER NOT NULL DEFAULT 0,
          error_message TEXT,
          created_at INTEGER NOT NULL,
          started_at INTEGER,
          completed_at INTEGER,
          updated_at INTEGER NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_queue_status ON extraction_queue(status, created_at, id);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_queue_document ON extraction_queue(document_id);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS actors (
          id INTEGER PRIMARY KEY,
          scope_id INTEGER NOT NULL REFERENCES scopes(id) ON DELETE CASCADE,
          name TEXT NOT NULL COLLATE NOCASE,
          actor_type TEXT NOT NULL,
          role TEXT,
          team TEXT,
          organization TEXT,
          description TEXT,
          confidence REAL NOT NULL DEFAULT 0.8,
          mention_count INTEGER NOT NULL DEFAULT 1,
          created_at INTEGER NOT NULL,
          updated_at INTEGER NOT NULL,
          last_seen_at INTEGER NOT NULL,
          UNIQUE (scope_id, actor_type, name)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_actors_scope ON actors(scope_id, actor_type);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS relationships (
          id INTEGER PRIMARY KEY,
          scope_id INTEGER NOT NULL REFERENCES scopes(id) ON DELETE CASCADE,
          source_actor_id INTEGER NOT NULL REFERENCES actors(id) ON DELETE CASCADE,
          target_actor_id INTEGER NOT NULL REFERENCES actors(id) ON DELETE CASCADE,
          relationship_type TEXT NOT NULL,
          context TEXT,
          strength REAL NOT NULL DEFAULT 1.0,
          confidence REAL NOT NULL,
          is_approved INTEGER NOT NULL DEFAULT 1,
          source_ref TEXT,
          created_at INTEGER NOT NULL,
          updated_at INTEGER NOT NULL,
          UNIQUE (scope_id, source_actor_id, relationship_type, target_actor_id)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_relationships_scope ON relationships(scope_id);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS suggestions (
          id INTEGER PRIMARY KEY,
          scope_id INTEGER NOT NULL REFERENCES scopes(id) ON DELETE CASCADE,
          source_actor_id INTEGER NOT NULL REFERENCES actors(id) ON DELETE CASCADE,
          target_actor_id INTEGER NOT NULL REFERENCES actors(id) ON DELETE CASCADE,
          relationship_type TEXT NOT NULL,
          source_text TEXT NOT NULL DEFAULT '',
          confidence REAL NOT NULL,
          base_confidence REAL NOT NULL,
          evidence_count INTEGER NOT NULL DEFAULT 1,
          source_documents TEXT NOT NULL DEFAULT '[]',
          context_samples TEXT NOT NULL DEFAULT '[]',
          is_approved INTEGER NOT NULL DEFAULT 0,
          is_dismissed INTEGER NOT NULL DEFAULT 0,
          last_seen_at INTEGER NOT NULL,
          created_at INTEGER NOT NULL,
          reviewed_at INTEGER
        );
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_suggestions_tuple
        ON suggestions(scope_id, source_actor_id, target_actor_id, relationship_type);
        """
    )

    conn.execute(
        "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
        ("schema_version", str(SCHEMA_VERSION)),
    )
    conn.commit()


def ensure_scope(conn: sqlite3.Connection, name: str) -> int:
    name = (name or "").strip()
    if not name:
        raise ValidationError("scope name is required")
    row = conn.execute("SELECT id FROM scopes WHERE name = ?", (name,)).fetchone()
    if row is not None:
        return int(row["id"])
    with transaction(conn):
        cur = conn.execute("INSERT INTO scopes(name, created_at) VALUES(?, ?)", (name, now()))
    return int(cur.lastrowid)


def get_scope_id(conn: sqlite3.Connection, name: str) -> int | None:
    row = conn.execute("SELECT id FROM scopes WHERE name = ?", ((name or "").strip(),)).fetchone()
    return int(row["id"]) if row is not None else None


def upsert_document(
    conn: sqlite3.Connection,
    *,
    scope_id: int,
    path: str,
    title: str,
    sha256: str,
    raw_content: str,
) -> tuple[int, bool]:
    """Insert/update a document.

    Returns: (doc_id, changed)
    """
    scope_id = require_id(scope_id, "scope_id")

    row = conn.execute(
        "SELECT id, sha256 FROM documents WHERE scope_id = ? AND path = ?",
        (scope_id, path),
    ).fetchone()

    with transaction(conn):
        if row is None:
            cur = conn.execute(
                """
                INSERT INTO documents(scope_id, path, title, sha256, raw_content, created_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (scope_id, path, title, sha256, raw_content, now()),
            )
            return int(cur.lastrowid), True

        doc_id = int(row["id"])
        if row["sha256"] == sha256:
            # No change
            return doc_id, False

        conn.execute(
            """
            UPDATE documents
            SET title=?, sha256=?, raw_content=?, extraction_status='pending', extraction_error=NULL
            WHERE id=?
            """,
            (title, sha256, raw_content, doc_id),
        )
        # Tags are re-derived on the next extraction.
        conn.execute("DELETE FROM document_tags WHERE document_id = ?", (doc_id,))
    return doc_id, True


def get_document(conn: sqlite3.Connection, doc_id: int) -> Document | None:
    row = conn.execute(
        "SELECT id, scope_id, path, title, raw_content FROM documents WHERE id = ?",
        (int(doc_id),),
    ).fetchone()
    if row is None:
        return None
    return _document(row)


def iter_documents(conn: sqlite3.Connection, *, scope_id: int | None = None) -> Iterable[Document]:
    if scope_id is None:
        cur = conn.execute("SELECT id, scope_id, path, title, raw_content FROM documents ORDER BY id")
    else:
        cur = conn.execute(
            "SELECT id, scope_id, path, title, raw_content FROM documents WHERE scope_id = ? ORDER BY id",
            (int(scope_id),),
        )
    for row in cur.fetchall():
        yield _document(row)


def set_extraction_status(conn: sqlite3.Connection, doc_id: int, status: str, error: str | None = None) -> None:
    conn.execute(
        "UPDATE documents SET extraction_status = ?, extraction_error = ? WHERE id = ?",
        (status, error, int(doc_id)),
    )


def _document(row: sqlite3.Row) -> Document:
    return Document(
        doc_id=int(row["id"]),
        scope_id=int(row["scope_id"]),
        path=str(row["path"]),
        title=str(row["title"]),
        raw_content=str(row["raw_content"] or ""),
    )
