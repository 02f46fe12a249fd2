import threading
import time
import unittest

from actorgraph import store
from actorgraph.graph.builder import GraphBuilder
from actorgraph.graph.evidence import EvidenceAccumulator
from actorgraph.graph.sqlite_graph import block_tag
from actorgraph.oracle import ExtractionOracle
from actorgraph.pipeline.queue import ExtractionQueue, QueueStatus
from actorgraph.pipeline.worker import ExtractionWorker, entity_tags


STANDUP = "Jan works with the Backend team on the Matcher API."


class SlowOracle:
    def __init__(self, delay):
        self.delay = delay

    def extract(self, text):
        time.sleep(self.delay)
        return ExtractionOracle().extract(text)


class CrashingOracle:
    def extract(self, text):
        raise RuntimeError("backend exploded")


class InterruptingOracle:
    def extract(self, text):
        raise KeyboardInterrupt


class GatedOracle:
    def __init__(self):
        self.release = threading.Event()

    def extract(self, text):
        self.release.wait(5)
        return ExtractionOracle().extract(text)


class SignallingOracle:
    def __init__(self):
        self.called = threading.Event()

    def extract(self, text):
        self.called.set()
        return ExtractionOracle().extract(text)


class WorkerTestCase(unittest.TestCase):
    def setUp(self):
        self.conn = store.connect(":memory:", check_same_thread=False)
        store.init_db(self.conn)
        self.scope = store.ensure_scope(self.conn, "rte")
        self.queue = ExtractionQueue(self.conn)
        self.evidence = EvidenceAccumulator(self.conn)
        self.graph = GraphBuilder(self.conn)

    def tearDown(self):
        self.conn.close()

    def add_doc(self, path, text):
        doc_id, _ = store.upsert_document(
            self.conn, scope_id=self.scope, path=path, title=path, sha256=path + str(len(text)), raw_content=text
        )
        return doc_id

    def worker(self, oracle=None, **kw):
        return ExtractionWorker(
            queue=self.queue,
            oracle=oracle or ExtractionOracle(),
            evidence=self.evidence,
            graph=self.graph,
            poll_interval_s=kw.pop("poll_interval_s", 0.01),
            **kw,
        )


class TestRunOnce(WorkerTestCase):
    def test_standup_extracted_twice(self):
        worker = self.worker()
        for path in ("standup-1.md", "standup-2.md"):
            self.queue.enqueue(self.add_doc(path, STANDUP))

        self.assertEqual(worker.run_once().status, QueueStatus.COMPLETE)
        self.assertEqual(worker.run_once().status, QueueStatus.COMPLETE)
        self.assertIsNone(worker.run_once())

        actors = {a["name"]: a for a in self.evidence.get_actors(self.scope)}
        self.assertEqual(actors["Jan"]["actor_type"], "person")
        self.assertEqual(actors["Jan"]["mention_count"], 2)
        self.assertEqual(actors["Backend team"]["actor_type"], "team")

        [sg] = self.evidence.get_suggestions_inbox(self.scope)["suggestions"]
        self.assertEqual((sg["source_name"], sg["relationship_type"], sg["target_name"]), ("Jan", "works_with", "Backend team"))
        self.assertEqual(sg["evidence_count"], 2)
        self.assertAlmostEqual(sg["confidence"], 0.6)
        self.assertEqual(sg["source_documents"], ["standup-1.md", "standup-2.md"])
        self.assertEqual(self.evidence.get_relationships(self.scope), [])

        status = self.conn.execute("SELECT DISTINCT extraction_status FROM documents").fetchall()
        self.assertEqual([r[0] for r in status], ["complete"])

    def test_entity_tags_are_stored_minus_blocklist(self):
        with store.transaction(self.conn):
            block_tag(self.conn, tag_value="matcher api", blocked_type="system", correct_type="project")
        doc_id = self.add_doc("standup.md", STANDUP)
        self.queue.enqueue(doc_id)
        self.worker().run_once()

        tags = {
            (r["tag_type"], r["tag_value"])
            for r in self.conn.execute("SELECT tag_type, tag_value FROM document_tags WHERE document_id = ?", (doc_id,))
        }
        self.assertEqual(tags, {("person", "Jan")})

    def test_save_invalidates_graph_cache(self):
        before = self.graph.build_graph(self.scope)
        self.queue.enqueue(self.add_doc("standup.md", STANDUP))
        self.worker().run_once()
        after = self.graph.build_graph(self.scope)
        self.assertIsNot(after, before)
        self.assertEqual(len(after["nodes"]), 3)

    def test_empty_document_completes(self):
        item_id = self.queue.enqueue(self.add_doc("empty.md", "   \n"))
        self.assertEqual(self.worker().run_once().status, QueueStatus.COMPLETE)
        self.assertEqual(self.queue.get_item(item_id).status, QueueStatus.COMPLETE)

    def test_timeout_fails_with_retry(self):
        item_id = self.queue.enqueue(self.add_doc("standup.md", STANDUP))
        item = self.worker(SlowOracle(0.5), extract_timeout_s=0.05).run_once()

        self.assertEqual(item.id, item_id)
        self.assertEqual(item.status, QueueStatus.PENDING)
        self.assertEqual(item.attempts, 1)
        self.assertIn("timed out", item.error_message)
        self.assertEqual(self.evidence.get_actors(self.scope), [])

    def test_oracle_crash_goes_dead_after_max_attempts(self):
        self.queue.enqueue(self.add_doc("standup.md", STANDUP))
        worker = self.worker(CrashingOracle())
        statuses = [worker.run_once().status for _ in range(3)]
        self.assertEqual(statuses, [QueueStatus.PENDING, QueueStatus.PENDING, QueueStatus.DEAD])
        self.assertIsNone(worker.run_once())
        self.assertEqual(self.queue.get_stats()["dead"], 1)

    def test_no_second_oracle_call_while_timed_out_call_runs(self):
        oracle = GatedOracle()
        item_id = self.queue.enqueue(self.add_doc("standup.md", STANDUP))
        worker = self.worker(oracle, extract_timeout_s=0.05)

        self.assertEqual(worker.run_once().status, QueueStatus.PENDING)
        self.assertTrue(worker.busy)
        self.assertIsNone(worker.run_once())
        self.assertEqual(self.queue.get_item(item_id).status, QueueStatus.PENDING)

        oracle.release.set()
        deadline = time.monotonic() + 5
        while worker.busy and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertFalse(worker.busy)
        self.assertEqual(worker.run_once().status, QueueStatus.COMPLETE)

    def test_interrupt_returns_item_to_queue(self):
        doc_id = self.add_doc("standup.md", STANDUP)
        item_id = self.queue.enqueue(doc_id)

        with self.assertRaises(KeyboardInterrupt):
            self.worker(InterruptingOracle()).run_forever()

        item = self.queue.get_item(item_id)
        self.assertEqual(item.status, QueueStatus.PENDING)
        self.assertIn("interrupted", item.error_message)
        self.assertEqual(self.queue.enqueue(doc_id), item_id)
        self.assertEqual(self.queue.poll_next().id, item_id)


class TestLoop(WorkerTestCase):
    def test_start_and_stop(self):
        oracle = SignallingOracle()
        item_id = self.queue.enqueue(self.add_doc("standup.md", STANDUP))
        worker = self.worker(oracle)

        worker.start()
        self.assertTrue(oracle.called.wait(5))
        worker.stop(timeout=5)

        self.assertEqual(self.queue.get_item(item_id).status, QueueStatus.COMPLETE)

    def test_start_recovers_abandoned_item(self):
        item_id = self.queue.enqueue(self.add_doc("standup.md", STANDUP))
        self.assertEqual(self.queue.poll_next().id, item_id)
        oracle = SignallingOracle()
        worker = self.worker(oracle)

        worker.start()
        self.assertTrue(oracle.called.wait(5))
        worker.stop(timeout=5)

        item = self.queue.get_item(item_id)
        self.assertEqual(item.status, QueueStatus.COMPLETE)
        self.assertEqual(item.attempts, 0)


class TestBackfill(WorkerTestCase):
    def test_backfill_bypasses_queue(self):
        self.add_doc("a.md", STANDUP)
        self.add_doc("b.md", STANDUP)
        self.add_doc("empty.md", "")

        res = self.worker().backfill(self.scope)

        self.assertEqual(res, {"processed": 2, "suggestions": 2, "errors": 0})
        self.assertEqual(self.queue.get_stats()["pending"], 0)
        [sg] = self.evidence.get_suggestions_inbox(self.scope)["suggestions"]
        self.assertEqual(sg["evidence_count"], 2)

    def test_backfill_counts_errors(self):
        self.add_doc("a.md", STANDUP)
        res = self.worker(CrashingOracle()).backfill()
        self.assertEqual(res, {"processed": 0, "suggestions": 0, "errors": 1})


class TestEntityTags(unittest.TestCase):
    def test_only_taggable_types_once(self):
        ext = ExtractionOracle().extract("Jan works with the Backend team on the Matcher API. Jan owns Jira.")
        tags = entity_tags(ext)
        self.assertIn(("person", "Jan"), tags)
        self.assertIn(("system", "Matcher API"), tags)
        self.assertNotIn("team", {t for t, _ in tags})
        self.assertEqual(len(tags), len(set(tags)))


if __name__ == "__main__":
    unittest.main()
