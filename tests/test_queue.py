import unittest

from actorgraph import store
from actorgraph.errors import InvalidTransition, ValidationError
from actorgraph.pipeline.queue import ExtractionQueue, QueueStatus, RetryPolicy


def _db_with_docs(n=2):
    conn = store.connect(":memory:")
    store.init_db(conn)
    scope_id = store.ensure_scope(conn, "rte")
    doc_ids = []
    for i in range(n):
        doc_id, _ = store.upsert_document(
            conn,
            scope_id=scope_id,
            path=f"notes/{i}.md",
            title=f"note {i}",
            sha256=f"sha{i}",
            raw_content=f"Note {i}",
        )
        doc_ids.append(doc_id)
    return conn, doc_ids


def _doc_status(conn, doc_id):
    row = conn.execute("SELECT extraction_status, extraction_error FROM documents WHERE id = ?", (doc_id,)).fetchone()
    return row["extraction_status"], row["extraction_error"]


class TestExtractionQueue(unittest.TestCase):
    def setUp(self):
        self.conn, self.docs = _db_with_docs()
        self.queue = ExtractionQueue(self.conn, policy=RetryPolicy(max_attempts=3))

    def tearDown(self):
        self.conn.close()

    def test_enqueue_is_idempotent_while_active(self):
        first = self.queue.enqueue(self.docs[0])
        self.assertEqual(self.queue.enqueue(self.docs[0]), first)

        item = self.queue.poll_next()
        self.assertEqual(item.id, first)
        # Still active while processing.
        self.assertEqual(self.queue.enqueue(self.docs[0]), first)

        self.queue.mark_complete(first)
        again = self.queue.enqueue(self.docs[0])
        self.assertNotEqual(again, first)
        self.assertEqual(self.queue.get_item(first).status, QueueStatus.COMPLETE)

    def test_poll_is_fifo_and_claims(self):
        a = self.queue.enqueue(self.docs[0])
        b = self.queue.enqueue(self.docs[1])

        first = self.queue.poll_next()
        self.assertEqual(first.id, a)
        self.assertEqual(first.status, QueueStatus.PROCESSING)
        self.assertIsNotNone(first.started_at)
        self.assertEqual(_doc_status(self.conn, self.docs[0])[0], "processing")

        self.assertEqual(self.queue.poll_next().id, b)
        self.assertIsNone(self.queue.poll_next())

    def test_requeue_stale_releases_processing_items(self):
        a = self.queue.enqueue(self.docs[0])
        b = self.queue.enqueue(self.docs[1])
        self.queue.poll_next()

        self.assertEqual(self.queue.requeue_stale(), 1)
        self.assertEqual(self.queue.requeue_stale(), 0)

        item = self.queue.get_item(a)
        self.assertEqual(item.status, QueueStatus.PENDING)
        self.assertEqual(item.attempts, 0)
        self.assertIsNone(item.started_at)
        self.assertEqual(_doc_status(self.conn, self.docs[0])[0], "pending")
        self.assertEqual(self.queue.get_item(b).status, QueueStatus.PENDING)
        # FIFO order is kept.
        self.assertEqual(self.queue.poll_next().id, a)

    def test_complete_flags_document(self):
        item_id = self.queue.enqueue(self.docs[0])
        self.queue.poll_next()
        done = self.queue.mark_complete(item_id)
        self.assertEqual(done.status, QueueStatus.COMPLETE)
        self.assertIsNotNone(done.completed_at)
        self.assertEqual(_doc_status(self.conn, self.docs[0]), ("complete", None))

    def test_dead_after_max_attempts_and_stays_dead(self):
        item_id = self.queue.enqueue(self.docs[0])
        statuses = []
        for i in range(3):
            item = self.queue.poll_next()
            self.assertEqual(item.id, item_id)
            statuses.append(self.queue.mark_failed(item_id, f"boom {i}").status)

        self.assertEqual(statuses, [QueueStatus.PENDING, QueueStatus.PENDING, QueueStatus.DEAD])
        dead = self.queue.get_item(item_id)
        self.assertEqual(dead.attempts, 3)
        self.assertEqual(dead.error_message, "boom 2")
        self.assertIsNone(self.queue.poll_next())
        self.assertEqual(_doc_status(self.conn, self.docs[0]), ("failed", "boom 2"))

    def test_retry_dead_resets_and_is_next(self):
        item_id = self.queue.enqueue(self.docs[0])
        for _ in range(3):
            self.queue.poll_next()
            self.queue.mark_failed(item_id, "ollama down")

        self.assertEqual(self.queue.retry_dead(), 1)
        item = self.queue.get_item(item_id)
        self.assertEqual(item.status, QueueStatus.PENDING)
        self.assertEqual(item.attempts, 0)
        self.assertIsNone(item.error_message)
        self.assertEqual(self.queue.poll_next().id, item_id)
        self.assertEqual(self.queue.retry_dead(), 0)

    def test_non_retryable_failure(self):
        item_id = self.queue.enqueue(self.docs[0])
        self.queue.poll_next()
        item = self.queue.mark_failed(item_id, "document missing", retryable=False)
        self.assertEqual(item.status, QueueStatus.FAILED)
        self.assertIsNone(self.queue.poll_next())

        self.assertEqual(self.queue.retry_failed(), 1)
        self.assertEqual(self.queue.get_item(item_id).status, QueueStatus.PENDING)

    def test_stats_include_every_status(self):
        self.assertEqual(self.queue.get_stats(), {"pending": 0, "processing": 0, "complete": 0, "failed": 0, "dead": 0})
        self.queue.enqueue(self.docs[0])
        self.queue.enqueue(self.docs[1])
        self.queue.poll_next()
        stats = self.queue.get_stats()
        self.assertEqual(stats["pending"], 1)
        self.assertEqual(stats["processing"], 1)
        self.assertEqual(len(stats), 5)

    def test_illegal_transitions(self):
        item_id = self.queue.enqueue(self.docs[0])
        with self.assertRaises(InvalidTransition):
            self.queue.mark_complete(item_id)
        with self.assertRaises(InvalidTransition):
            self.queue.mark_failed(item_id, "not started")

        self.queue.poll_next()
        self.queue.mark_complete(item_id)
        with self.assertRaises(InvalidTransition):
            self.queue.mark_complete(item_id)
        # Rejected transitions leave the row untouched.
        self.assertEqual(self.queue.get_item(item_id).attempts, 0)

    def test_invalid_ids(self):
        with self.assertRaises(ValidationError):
            self.queue.enqueue(None)
        with self.assertRaises(ValidationError):
            self.queue.enqueue(9999)
        with self.assertRaises(ValidationError):
            self.queue.mark_complete(0)
        with self.assertRaises(ValidationError):
            self.queue.mark_failed(12345, "nope")
        self.assertEqual(self.queue.get_stats()["pending"], 0)

    def test_list_items(self):
        a = self.queue.enqueue(self.docs[0])
        self.queue.enqueue(self.docs[1])
        self.queue.poll_next()
        self.assertEqual([i.id for i in self.queue.list_items("processing")], [a])
        self.assertEqual(len(self.queue.list_items()), 2)


if __name__ == "__main__":
    unittest.main()
