from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from .. import store
from ..pipeline.queue import ExtractionQueue
from . import markdown as md
from .utils import relpath, sha256_file

logger = logging.getLogger(__name__)

SUPPORTED_TEXT_EXTS = {".md", ".markdown", ".txt"}


@dataclass(frozen=True)
class IngestOptions:
    input_dir: Path
    scope: str
    enqueue: bool = True


def iter_files(root: Path) -> Iterable[Path]:
    for p in sorted(root.rglob("*")):
        if not p.is_file():
            continue
        if p.name.startswith("."):
            continue
        yield p


def document_title(path: Path, text: str) -> str:
    """First heading in the file, else the file name."""
    for sec in md.split_sections(text):
        if sec.level and sec.title:
            return sec.title
    return path.stem


def ingest_into_db(
    *,
    conn: sqlite3.Connection,
    options: IngestOptions,
    queue: ExtractionQueue | None = None,
) -> dict[str, Any]:
    store.init_db(conn)
    scope_id = store.ensure_scope(conn, options.scope)
    if queue is None and options.enqueue:
        queue = ExtractionQueue(conn)

    docs_seen = 0
    docs_changed = 0
    enqueued = 0

    for path in iter_files(options.input_dir):
        if path.suffix.lower() not in SUPPORTED_TEXT_EXTS:
            continue

        docs_seen += 1
        text = path.read_text(encoding="utf-8", errors="replace")

        doc_id, changed = store.upsert_document(
            conn,
            scope_id=scope_id,
            path=relpath(path, options.input_dir),
            title=document_title(path, text),
            sha256=sha256_file(path),
            raw_content=text,
        )
        if not changed:
            continue

        docs_changed += 1
        if queue is not None and options.enqueue:
            queue.enqueue(doc_id)
            enqueued += 1

    logger.info(
        "Ingested %s into scope %r: %d seen, %d changed, %d enqueued",
        options.input_dir,
        options.scope,
        docs_seen,
        docs_changed,
        enqueued,
    )
    return {
        "scope_id": scope_id,
        "documents_seen": docs_seen,
        "documents_changed": docs_changed,
        "enqueued": enqueued,
    }
