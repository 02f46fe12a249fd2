import sqlite3
import unittest
from unittest import mock

from actorgraph import store
from actorgraph.errors import StoreUnavailable
from actorgraph.graph.dedup import ActorDeduplicator, name_similarity
from actorgraph.graph.evidence import EvidenceAccumulator
from actorgraph.oracle.types import ActorType, Entity, ExtractedRelationship, Extraction


def _person(name, **kw):
    return Entity(name=name, type=ActorType.PERSON, confidence=kw.pop("confidence", 0.8), **kw)


def _rel(source, target, rel_type="works_with", confidence=0.6):
    return ExtractedRelationship(source=source, target=target, type=rel_type, confidence=confidence, context=f"{source} and {target}")


class DedupTestCase(unittest.TestCase):
    def setUp(self):
        self.conn = store.connect(":memory:")
        store.init_db(self.conn)
        self.scope = store.ensure_scope(self.conn, "rte")
        self.acc = EvidenceAccumulator(self.conn)
        self.dedup = ActorDeduplicator(self.conn)

    def tearDown(self):
        self.conn.close()

    def actor_id(self, name):
        return int(self.conn.execute("SELECT id FROM actors WHERE name = ?", (name,)).fetchone()["id"])


class TestMergeDuplicates(DedupTestCase):
    def _seed(self):
        team = Entity(name="Backend team", type=ActorType.TEAM, confidence=0.7)
        self.acc.save(Extraction(entities=[_person("Jan de Vries", confidence=0.9), team], relationships=[_rel("Jan de Vries", "Backend team")]), self.scope, "a.md")
        self.acc.save(Extraction(entities=[_person("Jan de Vrie", team="Backend"), team], relationships=[_rel("Jan de Vrie", "Backend team")]), self.scope, "b.md")
        self.acc.save(Extraction(entities=[_person("Jan de Vries")]), self.scope)

        primary, dup, team_id = self.actor_id("Jan de Vries"), self.actor_id("Jan de Vrie"), self.actor_id("Backend team")
        self.acc.save_relationship(self.scope, dup, primary, "works_with")
        self.acc.save_relationship(self.scope, dup, team_id, "member_of", confidence=0.9)
        self.acc.save_relationship(self.scope, primary, team_id, "member_of", confidence=0.6)
        return primary, dup, team_id

    def test_merge_rewrites_every_reference(self):
        primary, dup, team_id = self._seed()

        res = self.dedup.merge_duplicates(self.scope)

        self.assertEqual(res.merged, 1)
        self.assertEqual(res.groups[0].primary, "Jan de Vries")
        self.assertEqual(res.groups[0].merged, ["Jan de Vrie"])
        self.assertEqual(self.conn.execute("PRAGMA foreign_key_check").fetchall(), [])
        for table in ("relationships", "suggestions"):
            n = self.conn.execute(
                f"SELECT COUNT(*) AS n FROM {table} WHERE source_actor_id = ? OR target_actor_id = ?",
                (dup, dup),
            ).fetchone()["n"]
            self.assertEqual(n, 0)

        # Self-loop dropped, colliding member_of kept once.
        rels = self.conn.execute("SELECT * FROM relationships").fetchall()
        self.assertEqual([(r["source_actor_id"], r["relationship_type"], r["target_actor_id"]) for r in rels], [(primary, "member_of", team_id)])

    def test_failed_merge_leaves_store_untouched(self):
        _, dup, _ = self._seed()
        snapshot = {
            table: [tuple(r) for r in self.conn.execute(f"SELECT * FROM {table} ORDER BY id")]
            for table in ("actors", "relationships", "suggestions")
        }

        with mock.patch.object(self.dedup, "_collapse_suggestions", side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertRaises(StoreUnavailable):
                self.dedup.merge_duplicates(self.scope)

        self.assertFalse(self.conn.in_transaction)
        for table, rows in snapshot.items():
            self.assertEqual([tuple(r) for r in self.conn.execute(f"SELECT * FROM {table} ORDER BY id")], rows)
        self.assertIsNotNone(self.conn.execute("SELECT 1 FROM actors WHERE id = ?", (dup,)).fetchone())

    def test_merge_combines_actor_and_suggestions(self):
        primary, _, _ = self._seed()
        self.dedup.merge_duplicates(self.scope)

        jan = self.conn.execute("SELECT * FROM actors WHERE id = ?", (primary,)).fetchone()
        self.assertEqual(jan["mention_count"], 3)
        self.assertEqual(jan["team"], "Backend")
        self.assertAlmostEqual(jan["confidence"], 0.9)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) AS n FROM actors").fetchone()["n"], 2)

        [sg] = self.acc.get_suggestions_inbox(self.scope)["suggestions"]
        self.assertEqual(sg["evidence_count"], 2)
        self.assertEqual(sorted(sg["source_documents"]), ["a.md", "b.md"])

    def test_dismissal_survives_merge(self):
        team = Entity(name="Backend team", type=ActorType.TEAM, confidence=0.7)
        self.acc.save(Extraction(entities=[_person("Jan de Vrie"), team], relationships=[_rel("Jan de Vrie", "Backend team", "owns")]), self.scope)
        sg_id = self.acc.get_suggestions_inbox(self.scope)["suggestions"][0]["id"]
        self.acc.dismiss_suggestion(sg_id, self.scope)
        self.acc.save(Extraction(entities=[_person("Jan de Vries")]), self.scope)

        self.dedup.merge_duplicates(self.scope)
        self.acc.save(Extraction(relationships=[_rel("Jan de Vries", "Backend team", "owns")]), self.scope)
        self.assertEqual(self.acc.get_suggestions_inbox(self.scope)["suggestions"], [])

    def test_types_are_never_mixed(self):
        self.acc.save(
            Extraction(
                entities=[
                    Entity(name="Atlas", type=ActorType.PERSON, confidence=0.8),
                    Entity(name="Atlas", type=ActorType.SYSTEM, confidence=0.8),
                ]
            ),
            self.scope,
        )
        self.assertEqual(self.dedup.find_groups(self.scope), [])
        self.assertEqual(self.dedup.merge_duplicates(self.scope).merged, 0)

    def test_nothing_to_merge(self):
        self.acc.save(Extraction(entities=[_person("Clara"), _person("Pieter de Vries")]), self.scope)
        res = self.dedup.merge_duplicates(self.scope)
        self.assertEqual(res.merged, 0)
        self.assertEqual(res.groups, [])


class TestCanonicalChoice(unittest.TestCase):
    NAMES = ["Pieter Jansen", "Pieter Janssen", "Pieter Janse"]

    def _merge(self, names):
        conn = store.connect(":memory:")
        store.init_db(conn)
        scope = store.ensure_scope(conn, "rte")
        acc = EvidenceAccumulator(conn)
        for n in names:
            acc.save(Extraction(entities=[_person(n)]), scope)
        res = ActorDeduplicator(conn).merge_duplicates(scope)
        remaining = [r["name"] for r in conn.execute("SELECT name FROM actors").fetchall()]
        conn.close()
        return res, remaining

    def test_longest_name_wins_regardless_of_order(self):
        res_a, left_a = self._merge(self.NAMES)
        res_b, left_b = self._merge(list(reversed(self.NAMES)))

        self.assertEqual(left_a, ["Pieter Janssen"])
        self.assertEqual(left_b, ["Pieter Janssen"])
        self.assertEqual(sorted(res_a.groups[0].merged), sorted(res_b.groups[0].merged))
        self.assertEqual(res_a.merged, 2)


class TestSimilarity(DedupTestCase):
    def test_name_similarity(self):
        self.assertEqual(name_similarity("Jan", "jan "), 1.0)
        self.assertGreaterEqual(name_similarity("Jan de Vries", "Jan de Vrie"), 0.8)
        self.assertLess(name_similarity("Jan", "Clara"), 0.8)

    def test_find_similar(self):
        self.acc.save(Extraction(entities=[_person("Jan de Vries"), _person("Clara")]), self.scope)
        hit = self.dedup.find_similar(self.scope, "Jan de Vris", "person")
        self.assertEqual(hit["name"], "Jan de Vries")
        self.assertIsNone(self.dedup.find_similar(self.scope, "Jan de Vris", "team"))


if __name__ == "__main__":
    unittest.main()
