from __future__ import annotations

import json
import logging
import sqlite3
from collections import defaultdict
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any

from rapidfuzz import fuzz

from ..errors import require_id
from ..store import now, transaction
from .evidence import MAX_CONTEXT_SAMPLES, MAX_SOURCE_DOCUMENTS, json_list

logger = logging.getLogger(__name__)

DEDUP_THRESHOLD = 0.8

_FILL_COLUMNS = ("role", "team", "organization", "description")


def name_similarity(a: str, b: str) -> float:
    """Normalized edit similarity in [0, 1], case-insensitive."""
    return fuzz.ratio(a.strip().lower(), b.strip().lower()) / 100.0


@dataclass(frozen=True)
class MergeGroup:
    primary: str
    primary_id: int
    merged: list[str]
    merged_ids: list[int]


@dataclass
class MergeResult:
    merged: int = 0
    groups: list[MergeGroup] = field(default_factory=list)


class _UnionFind:
    def __init__(self, items: list[int]):
        self.parent = {i: i for i in items}

    def find(self, x: int) -> int:
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # Smaller id becomes the root so results do not depend on call order.
            if rb < ra:
                ra, rb = rb, ra
            self.parent[rb] = ra


def _canonical_key(actor: sqlite3.Row) -> tuple:
    # Longest name wins; then the most mentioned; then the oldest row.
    return (-len(str(actor["name"])), -int(actor["mention_count"]), int(actor["id"]))


class ActorDeduplicator:
    """Merge near-duplicate actors within a scope.

    Within each actor type, every pair at or above the similarity threshold is
    linked and the connected components become merge groups. Each group is
    rewritten in its own transaction.
    """

    def __init__(self, conn: sqlite3.Connection, *, threshold: float = DEDUP_THRESHOLD):
        self.conn = conn
        self.threshold = float(threshold)

    def find_groups(self, scope_id: int) -> list[list[sqlite3.Row]]:
        scope_id = require_id(scope_id, "scope_id")
        actors = self.conn.execute(
            "SELECT * FROM actors WHERE scope_id = ? ORDER BY actor_type, name, id",
            (scope_id,),
        ).fetchall()

        by_type: dict[str, list[sqlite3.Row]] = defaultdict(list)
        for a in actors:
            by_type[str(a["actor_type"])].append(a)

        groups: list[list[sqlite3.Row]] = []
        for actor_type in sorted(by_type):
            members = by_type[actor_type]
            if len(members) < 2:
                continue
            uf = _UnionFind([int(a["id"]) for a in members])
            for a, b in combinations(members, 2):
                if name_similarity(str(a["name"]), str(b["name"])) >= self.threshold:
                    uf.union(int(a["id"]), int(b["id"]))

            components: dict[int, list[sqlite3.Row]] = defaultdict(list)
            for a in members:
                components[uf.find(int(a["id"]))].append(a)
            for comp in components.values():
                if len(comp) > 1:
                    groups.append(sorted(comp, key=_canonical_key))

        groups.sort(key=lambda g: (str(g[0]["actor_type"]), str(g[0]["name"]).lower()))
        return groups

    def merge_duplicates(self, scope_id: int) -> MergeResult:
        scope_id = require_id(scope_id, "scope_id")
        result = MergeResult()

        for group in self.find_groups(scope_id):
            primary, dups = group[0], group[1:]
            primary_id = int(primary["id"])
            dup_ids = [int(d["id"]) for d in dups]

            logger.info(
                "Merging into %r: %s",
                primary["name"],
                ", ".join(repr(d["name"]) for d in dups),
            )
            with transaction(self.conn):
                for dup_id in dup_ids:
                    self._absorb(scope_id, primary_id, dup_id)

            result.merged += len(dup_ids)
            result.groups.append(
                MergeGroup(
                    primary=str(primary["name"]),
                    primary_id=primary_id,
                    merged=[str(d["name"]) for d in dups],
                    merged_ids=dup_ids,
                )
            )

        logger.info("Merged %d duplicate actors in scope %s", result.merged, scope_id)
        return result

    def find_similar(self, scope_id: int, name: str, actor_type: str) -> dict[str, Any] | None:
        """Best existing actor of the same type at or above the threshold."""
        scope_id = require_id(scope_id, "scope_id")
        best = None
        best_score = 0.0
        for a in self.conn.execute(
            "SELECT * FROM actors WHERE scope_id = ? AND actor_type = ? ORDER BY id",
            (scope_id, actor_type),
        ).fetchall():
            score = name_similarity(name, str(a["name"]))
            if score >= self.threshold and score > best_score:
                best, best_score = a, score
        return dict(best) if best is not None else None

    def _absorb(self, scope_id: int, primary_id: int, dup_id: int) -> None:
        conn = self.conn

        # Relationships: drop rewrites that would loop or collide, move the rest.
        for col, other in (("source_actor_id", "target_actor_id"), ("target_actor_id", "source_actor_id")):
            conn.execute(
                f"DELETE FROM relationships WHERE {col} = ? AND {other} = ?",
                (dup_id, primary_id),
            )
        conn.execute(
            """
            UPDATE OR IGNORE relationships
            SET source_actor_id = CASE WHEN source_actor_id = ? THEN ? ELSE source_actor_id END,
                target_actor_id = CASE WHEN target_actor_id = ? THEN ? ELSE target_actor_id END,
                updated_at = ?
            WHERE source_actor_id = ? OR target_actor_id = ?
            """,
            (dup_id, primary_id, dup_id, primary_id, now(), dup_id, dup_id),
        )
        conn.execute(
            "DELETE FROM relationships WHERE source_actor_id = ? OR target_actor_id = ?",
            (dup_id, dup_id),
        )

        # Suggestions: self-loops go, everything else moves, then active duplicates collapse.
        for col, other in (("source_actor_id", "target_actor_id"), ("target_actor_id", "source_actor_id")):
            conn.execute(
                f"DELETE FROM suggestions WHERE {col} = ? AND {other} = ?",
                (dup_id, primary_id),
            )
        conn.execute(
            """
            UPDATE suggestions
            SET source_actor_id = CASE WHEN source_actor_id = ? THEN ? ELSE source_actor_id END,
                target_actor_id = CASE WHEN target_actor_id = ? THEN ? ELSE target_actor_id END
            WHERE source_actor_id = ? OR target_actor_id = ?
            """,
            (dup_id, primary_id, dup_id, primary_id, dup_id, dup_id),
        )
        self._collapse_suggestions(scope_id, primary_id)

        # Actor row: keep counts and fill gaps before deleting the duplicate.
        dup = conn.execute("SELECT * FROM actors WHERE id = ?", (dup_id,)).fetchone()
        if dup is None:
            return
        conn.execute(
            f"""
            UPDATE actors
            SET mention_count = mention_count + ?,
                confidence = MAX(confidence, ?),
                last_seen_at = MAX(last_seen_at, ?),
                {", ".join(f"{c} = COALESCE({c}, ?)" for c in _FILL_COLUMNS)},
                updated_at = ?
            WHERE id = ?
            """,
            (
                int(dup["mention_count"]),
                float(dup["confidence"]),
                int(dup["last_seen_at"]),
                *(dup[c] for c in _FILL_COLUMNS),
                now(),
                primary_id,
            ),
        )
        conn.execute("DELETE FROM actors WHERE id = ?", (dup_id,))

    def _collapse_suggestions(self, scope_id: int, actor_id: int) -> None:
        rows = self.conn.execute(
            """
            SELECT * FROM suggestions
            WHERE scope_id = ? AND is_approved = 0 AND is_dismissed = 0
              AND (source_actor_id = ? OR target_actor_id = ?)
            ORDER BY id
            """,
            (scope_id, actor_id, actor_id),
        ).fetchall()

        by_tuple: dict[tuple[int, int, str], list[sqlite3.Row]] = defaultdict(list)
        for r in rows:
            by_tuple[(int(r["source_actor_id"]), int(r["target_actor_id"]), str(r["relationship_type"]))].append(r)

        for dupes in by_tuple.values():
            if len(dupes) < 2:
                continue
            keep, rest = dupes[0], dupes[1:]
            docs = json_list(keep["source_documents"])
            samples = json_list(keep["context_samples"])
            evidence = int(keep["evidence_count"])
            confidence = float(keep["confidence"])
            base = float(keep["base_confidence"])
            for r in rest:
                evidence += int(r["evidence_count"])
                confidence = max(confidence, float(r["confidence"]))
                base = max(base, float(r["base_confidence"]))
                for d in json_list(r["source_documents"]):
                    if d not in docs and len(docs) < MAX_SOURCE_DOCUMENTS:
                        docs.append(d)
                for s in json_list(r["context_samples"]):
                    if len(samples) < MAX_CONTEXT_SAMPLES:
                        samples.append(s)
            self.conn.execute(
                """
                UPDATE suggestions
                SET evidence_count = ?, confidence = ?, base_confidence = ?,
                    source_documents = ?, context_samples = ?,
                    last_seen_at = MAX(last_seen_at, ?)
                WHERE id = ?
                """,
                (
                    evidence,
                    confidence,
                    base,
                    json.dumps(docs),
                    json.dumps(samples),
                    max(int(r["last_seen_at"]) for r in dupes),
                    int(keep["id"]),
                ),
            )
            self.conn.executemany("DELETE FROM suggestions WHERE id = ?", [(int(r["id"]),) for r in rest])
