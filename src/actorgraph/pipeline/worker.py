from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeout

from ..graph.builder import GraphBuilder
from ..graph.evidence import EvidenceAccumulator, SaveStats
from ..graph.sqlite_graph import add_document_tags
from ..oracle.extractor import ExtractionOracle
from ..oracle.types import Extraction
from ..store import Document, get_document, iter_documents, transaction
from .queue import ExtractionQueue, QueueItem

logger = logging.getLogger(__name__)

# Actor types that double as flat document tags.
_TAGGED_TYPES = frozenset({"person", "project", "system", "organization"})


def entity_tags(extraction: Extraction) -> list[tuple[str, str]]:
    out: list[tuple[str, str]] = []
    seen: set[tuple[str, str]] = set()
    for ent in extraction.entities:
        tag_type = ent.type.value
        name = ent.name.strip()
        if tag_type not in _TAGGED_TYPES or not name:
            continue
        key = (tag_type, name.lower())
        if key in seen:
            continue
        seen.add(key)
        out.append((tag_type, name))
    return out


class ExtractionWorker:
    """Single-threaded poll loop: queue item -> oracle -> evidence accumulator.

    One item is in flight at a time. When run in a background thread via
    ``start()``, open the connection with ``check_same_thread=False``.
    """

    def __init__(
        self,
        *,
        queue: ExtractionQueue,
        oracle: ExtractionOracle,
        evidence: EvidenceAccumulator,
        graph: GraphBuilder | None = None,
        poll_interval_s: float = 10.0,
        extract_timeout_s: float = 180.0,
    ):
        self.queue = queue
        self.oracle = oracle
        self.evidence = evidence
        self.graph = graph
        self.poll_interval_s = float(poll_interval_s)
        self.extract_timeout_s = float(extract_timeout_s)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._inflight: Future | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        return self.queue.conn

    @property
    def busy(self) -> bool:
        """True while an oracle call from a timed-out attempt is still running."""
        return self._inflight is not None and not self._inflight.done()

    # --- loop ---------------------------------------------------------------

    def run_once(self) -> QueueItem | None:
        """Process the next pending item, if any. Returns the item's final state.

        Returns None without claiming anything while a timed-out oracle call
        is still running, so at most one extraction reaches the backend.
        """
        if self.busy:
            logger.debug("Previous oracle call still running, not polling")
            return None
        item = self.queue.poll_next()
        if item is None:
            return None

        doc = get_document(self.conn, item.document_id)
        if doc is None:
            return self.queue.mark_failed(item.id, f"document {item.document_id} not found", retryable=False)

        logger.info("Extracting document %s (%s), attempt %d", doc.doc_id, doc.path, item.attempts + 1)
        if not doc.raw_content.strip():
            logger.info("Document %s is empty, nothing to extract", doc.doc_id)
            return self.queue.mark_complete(item.id)

        try:
            extraction = self._extract_with_timeout(doc.raw_content)
            stats = self._save(doc, extraction)
        except FuturesTimeout:
            return self.queue.mark_failed(item.id, f"extraction timed out after {self.extract_timeout_s:g}s")
        except Exception as e:
            logger.exception("Extraction failed for document %s", doc.doc_id)
            return self.queue.mark_failed(item.id, str(e) or type(e).__name__)
        except BaseException as e:
            # KeyboardInterrupt/SystemExit: hand the item back before unwinding.
            logger.warning("Interrupted while processing document %s", doc.doc_id)
            self.queue.mark_failed(item.id, f"interrupted ({type(e).__name__})")
            raise

        done = self.queue.mark_complete(item.id)
        logger.info(
            "Document %s done via %s: %d actors, %d suggestions, %d relationships",
            doc.doc_id,
            extraction.backend or extraction.source,
            stats.actors_written,
            stats.suggestions_written,
            stats.relationships_written,
        )
        return done

    def run_forever(self) -> None:
        logger.info("Extraction worker started (poll every %gs)", self.poll_interval_s)
        self.queue.requeue_stale()
        while not self._stop.is_set():
            try:
                item = self.run_once()
            except Exception:
                logger.exception("Extraction worker iteration failed")
                item = None
            if item is None:
                self._stop.wait(self.poll_interval_s)
        logger.info("Extraction worker stopped")

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="extraction-worker", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop to stop and wait for the in-flight item to settle."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    # --- backfill -----------------------------------------------------------

    def backfill(self, scope_id: int | None = None) -> dict[str, int]:
        """Re-run extraction over every stored document, bypassing the queue."""
        processed = 0
        suggestions = 0
        errors = 0
        for doc in iter_documents(self.conn, scope_id=scope_id):
            if not doc.raw_content.strip():
                continue
            if self.busy:
                wait([self._inflight], timeout=self.extract_timeout_s)
                if self.busy:
                    logger.error("Backfill stopped: a timed-out oracle call is still running")
                    break
            try:
                stats = self._save(doc, self._extract_with_timeout(doc.raw_content))
            except Exception:
                logger.exception("Backfill failed for document %s", doc.doc_id)
                errors += 1
                continue
            processed += 1
            suggestions += stats.suggestions_written

        logger.info("Backfill done: %d processed, %d suggestions, %d errors", processed, suggestions, errors)
        return {"processed": processed, "suggestions": suggestions, "errors": errors}

    # --- internals ----------------------------------------------------------

    def _extract_with_timeout(self, text: str) -> Extraction:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="oracle")
        try:
            self._inflight = pool.submit(self.oracle.extract, text)
            return self._inflight.result(timeout=self.extract_timeout_s)
        finally:
            # Do not block on a hung backend; the thread finishes in the background.
            pool.shutdown(wait=False)

    def _save(self, doc: Document, extraction: Extraction) -> SaveStats:
        with transaction(self.conn):
            stats = self.evidence.save(extraction, doc.scope_id, source_ref=doc.source_ref)
            stored, blocked = add_document_tags(self.conn, document_id=doc.doc_id, tags=entity_tags(extraction))
        if blocked:
            logger.info("Skipped %d blocklisted tags for document %s", blocked, doc.doc_id)
        logger.debug("Stored %d tags for document %s", stored, doc.doc_id)
        if self.graph is not None:
            self.graph.invalidate(doc.scope_id)
        return stats

