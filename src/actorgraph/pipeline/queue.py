from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum

from ..errors import InvalidTransition, StoreUnavailable, ValidationError, require_id
from ..store import now, set_extraction_status, transaction

logger = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    DEAD = "dead"


# dead/failed -> pending only happens through retry_dead()/retry_failed().
_TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.PROCESSING}),
    QueueStatus.PROCESSING: frozenset(
        {QueueStatus.COMPLETE, QueueStatus.PENDING, QueueStatus.DEAD, QueueStatus.FAILED}
    ),
    QueueStatus.COMPLETE: frozenset(),
    QueueStatus.FAILED: frozenset({QueueStatus.PENDING}),
    QueueStatus.DEAD: frozenset({QueueStatus.PENDING}),
}


def check_transition(current: QueueStatus, target: QueueStatus) -> None:
    if target not in _TRANSITIONS[current]:
        raise InvalidTransition(f"queue item cannot go from {current.value} to {target.value}")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3

    def next_status(self, attempts: int) -> QueueStatus:
        """Status after a retryable failure, given the attempt count so far."""
        return QueueStatus.PENDING if attempts < self.max_attempts else QueueStatus.DEAD


@dataclass(frozen=True)
class QueueItem:
    id: int
    document_id: int
    status: QueueStatus
    attempts: int
    error_message: str | None
    created_at: int
    started_at: int | None
    completed_at: int | None
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QueueItem":
        return cls(
            id=int(row["id"]),
            document_id=int(row["document_id"]),
            status=QueueStatus(row["status"]),
            attempts=int(row["attempts"]),
            error_message=row["error_message"],
            created_at=int(row["created_at"]),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            updated_at=int(row["updated_at"]),
        )


class ExtractionQueue:
    """Durable FIFO of documents awaiting extraction, stored in ``extraction_queue``.

    Items are never deleted. A retryable failure puts the item back to
    pending until the retry policy runs out; then it is dead until an
    operator calls ``retry_dead``.
    """

    def __init__(self, conn: sqlite3.Connection, *, policy: RetryPolicy | None = None):
        self.conn = conn
        self.policy = policy or RetryPolicy()

    def enqueue(self, document_id: int) -> int:
        document_id = require_id(document_id, "document_id")
        with transaction(self.conn):
            if self.conn.execute("SELECT 1 FROM documents WHERE id = ?", (document_id,)).fetchone() is None:
                raise ValidationError(f"document {document_id} does not exist")
            row = self.conn.execute(
                """
                SELECT id FROM extraction_queue
                WHERE document_id = ? AND status IN ('pending', 'processing')
                ORDER BY id
                LIMIT 1
                """,
                (document_id,),
            ).fetchone()
            if row is not None:
                return int(row["id"])

            ts = now()
            cur = self.conn.execute(
                """
                INSERT INTO extraction_queue(document_id, status, attempts, created_at, updated_at)
                VALUES (?, 'pending', 0, ?, ?)
                """,
                (document_id, ts, ts),
            )
            set_extraction_status(self.conn, document_id, "pending")
        logger.debug("Enqueued document %s as item %s", document_id, cur.lastrowid)
        return int(cur.lastrowid)

    def poll_next(self) -> QueueItem | None:
        """Claim the oldest pending item, or return None when the queue is idle."""
        with transaction(self.conn):
            row = self.conn.execute(
                """
                SELECT id FROM extraction_queue
                WHERE status = 'pending'
                ORDER BY created_at, id
                LIMIT 1
                """
            ).fetchone()
            if row is None:
                return None

            ts = now()
            cur = self.conn.execute(
                """
                UPDATE extraction_queue
                SET status = 'processing', started_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (ts, ts, int(row["id"])),
            )
            if cur.rowcount != 1:
                return None
            item = self._fetch(int(row["id"]))
            set_extraction_status(self.conn, item.document_id, "processing")
        return item

    def mark_complete(self, item_id: int) -> QueueItem:
        item_id = require_id(item_id, "item_id")
        with transaction(self.conn):
            item = self._fetch(item_id)
            check_transition(item.status, QueueStatus.COMPLETE)
            ts = now()
            self.conn.execute(
                """
                UPDATE extraction_queue
                SET status = 'complete', completed_at = ?, updated_at = ?, error_message = NULL
                WHERE id = ?
                """,
                (ts, ts, item_id),
            )
            set_extraction_status(self.conn, item.document_id, "complete")
            return self._fetch(item_id)

    def mark_failed(self, item_id: int, reason: str, *, retryable: bool = True) -> QueueItem:
        """Record a failed attempt.

        Retryable failures go back to pending until ``max_attempts`` is
        reached, then to dead. Non-retryable failures go straight to failed.
        """
        item_id = require_id(item_id, "item_id")
        reason = (reason or "unknown error").strip()
        with transaction(self.conn):
            item = self._fetch(item_id)
            attempts = item.attempts + 1
            target = self.policy.next_status(attempts) if retryable else QueueStatus.FAILED
            check_transition(item.status, target)

            self.conn.execute(
                """
                UPDATE extraction_queue
                SET status = ?, attempts = ?, error_message = ?, updated_at = ?
                WHERE id = ?
                """,
                (target.value, attempts, reason, now(), item_id),
            )
            if target is QueueStatus.PENDING:
                set_extraction_status(self.conn, item.document_id, "pending", reason)
            else:
                set_extraction_status(self.conn, item.document_id, "failed", reason)
            updated = self._fetch(item_id)

        if target is QueueStatus.PENDING:
            logger.warning(
                "Item %s failed (attempt %d/%d), will retry: %s",
                item_id,
                attempts,
                self.policy.max_attempts,
                reason,
            )
        elif target is QueueStatus.DEAD:
            logger.error("Item %s is dead after %d attempts: %s", item_id, attempts, reason)
        else:
            logger.error("Item %s failed permanently: %s", item_id, reason)
        return updated

    def retry_failed(self) -> int:
        return self._reset(QueueStatus.FAILED)

    def retry_dead(self) -> int:
        return self._reset(QueueStatus.DEAD)

    def requeue_stale(self) -> int:
        """Return items left in processing by a stopped worker to pending.

        The interrupted attempt is not counted. Only call this while no other
        worker is processing items from the same database.
        """
        with transaction(self.conn):
            doc_ids = [
                int(r["document_id"])
                for r in self.conn.execute(
                    "SELECT document_id FROM extraction_queue WHERE status = 'processing'"
                ).fetchall()
            ]
            cur = self.conn.execute(
                """
                UPDATE extraction_queue
                SET status = 'pending', started_at = NULL, updated_at = ?
                WHERE status = 'processing'
                """,
                (now(),),
            )
            for doc_id in doc_ids:
                set_extraction_status(self.conn, doc_id, "pending")
        if cur.rowcount:
            logger.warning("Requeued %d items abandoned in processing", cur.rowcount)
        return int(cur.rowcount)

    def get_stats(self) -> dict[str, int]:
        stats = {s.value: 0 for s in QueueStatus}
        for r in self._query("SELECT status, COUNT(*) AS n FROM extraction_queue GROUP BY status", ()):
            stats[str(r["status"])] = int(r["n"])
        return stats

    def get_item(self, item_id: int) -> QueueItem | None:
        item_id = require_id(item_id, "item_id")
        rows = self._query("SELECT * FROM extraction_queue WHERE id = ?", (item_id,))
        return QueueItem.from_row(rows[0]) if rows else None

    def list_items(self, status: QueueStatus | str | None = None, limit: int = 50) -> list[QueueItem]:
        if status is None:
            rows = self._query(
                "SELECT * FROM extraction_queue ORDER BY created_at, id LIMIT ?",
                (int(limit),),
            )
        else:
            rows = self._query(
                "SELECT * FROM extraction_queue WHERE status = ? ORDER BY created_at, id LIMIT ?",
                (QueueStatus(status).value, int(limit)),
            )
        return [QueueItem.from_row(r) for r in rows]

    def _reset(self, status: QueueStatus) -> int:
        check_transition(status, QueueStatus.PENDING)
        with transaction(self.conn):
            doc_ids = [
                int(r["document_id"])
                for r in self.conn.execute(
                    "SELECT document_id FROM extraction_queue WHERE status = ?",
                    (status.value,),
                ).fetchall()
            ]
            cur = self.conn.execute(
                """
                UPDATE extraction_queue
                SET status = 'pending', attempts = 0, error_message = NULL, updated_at = ?
                WHERE status = ?
                """,
                (now(), status.value),
            )
            for doc_id in doc_ids:
                set_extraction_status(self.conn, doc_id, "pending")
        if cur.rowcount:
            logger.info("Reset %d %s items to pending", cur.rowcount, status.value)
        return int(cur.rowcount)

    def _fetch(self, item_id: int) -> QueueItem:
        row = self.conn.execute("SELECT * FROM extraction_queue WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            raise ValidationError(f"queue item {item_id} does not exist")
        return QueueItem.from_row(row)

    def _query(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e
