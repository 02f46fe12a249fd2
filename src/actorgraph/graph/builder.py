from __future__ import annotations

import logging
import sqlite3
import threading
from collections import defaultdict
from itertools import combinations
from typing import Any, Iterable

from ..errors import StoreUnavailable, require_id
from .sqlite_graph import list_actors, tag_cooccurrences

logger = logging.getLogger(__name__)

NODE_BASE_SIZE = 10
NODE_SIZE_PER_DEGREE = 2

EDGE_WEIGHTS = {
    "explicit": 0.5,
    "implicit_team": 0.25,
    "implicit_org": 0.15,
    "tag_cooccurrence": 0.3,
}

NODE_COLORS = {
    "person": "#10b981",
    "team": "#06b6d4",
    "system": "#f59e0b",
    "organization": "#8b5cf6",
    "role": "#6366f1",
    "project": "#06b6d4",
    "location": "#ec4899",
    "technology": "#14b8a6",
    "unknown": "#6b7280",
}

RELATION_COLORS = {
    "works_with": "#4CAF50",
    "member_of": "#2196F3",
    "owns": "#FF9800",
    "reports_to": "#9C27B0",
    "depends_on": "#F44336",
    "blocks": "#E91E63",
    "related_to": "#9E9E9E",
}


def _pair(a: int, b: int) -> tuple[int, int]:
    return (a, b) if a < b else (b, a)


class GraphBuilder:
    """Presentation graph per scope, built from the store and cached.

    Edge precedence, one edge per actor pair: confirmed relationship > same
    team > same organization > tag co-occurrence. The cache is disposable;
    ``invalidate`` drops a scope after the store changes.
    """

    def __init__(self, conn: sqlite3.Connection, *, min_tag_docs: int = 2):
        self.conn = conn
        self.min_tag_docs = int(min_tag_docs)
        self._cache: dict[tuple, dict[str, Any]] = {}
        self._locks: dict[int, threading.Lock] = {}
        # Bumped on invalidation; a build started before the bump is not cached.
        self._generations: dict[int, int] = defaultdict(int)
        self._cache_lock = threading.Lock()

    def build_graph(
        self,
        scope_id: int,
        *,
        actor_types: Iterable[str] | None = None,
        include_implicit: bool = True,
        min_confidence: float = 0.0,
        refresh: bool = False,
    ) -> dict[str, Any]:
        """Return ``{"nodes": [...], "edges": [...]}``. Treat the result as read-only; it is shared."""
        scope_id = require_id(scope_id, "scope_id")
        types = tuple(sorted(set(actor_types or ())))
        key = (scope_id, types, bool(include_implicit), float(min_confidence))

        if not refresh:
            hit = self._cache.get(key)
            if hit is not None:
                return hit

        lock = self._locks.setdefault(scope_id, threading.Lock())
        with lock:
            if not refresh:
                hit = self._cache.get(key)
                if hit is not None:
                    return hit
            with self._cache_lock:
                generation = self._generations[scope_id]
            try:
                graph = self._build(scope_id, types, include_implicit, min_confidence)
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e
            with self._cache_lock:
                if self._generations[scope_id] == generation:
                    self._cache[key] = graph

        logger.info(
            "Built graph for scope %s: %d nodes, %d edges",
            scope_id,
            len(graph["nodes"]),
            len(graph["edges"]),
        )
        return graph

    def invalidate(self, scope_id: int) -> None:
        with self._cache_lock:
            self._generations[scope_id] += 1
            for key in list(self._cache):
                if key[0] == scope_id:
                    self._cache.pop(key, None)
        logger.debug("Invalidated graph cache for scope %s", scope_id)

    def clear_cache(self) -> None:
        with self._cache_lock:
            for scope_id in {key[0] for key in self._cache} | set(self._generations):
                self._generations[scope_id] += 1
            self._cache.clear()

    def get_stats(self, scope_id: int) -> dict[str, Any]:
        graph = self.build_graph(scope_id)
        by_source: dict[str, int] = defaultdict(int)
        by_node_type: dict[str, int] = defaultdict(int)
        by_edge_type: dict[str, int] = defaultdict(int)
        for n in graph["nodes"]:
            by_node_type[n["type"]] += 1
        for e in graph["edges"]:
            by_source[e["edge_source"]] += 1
            by_edge_type[e["type"]] += 1
        return {
            "node_count": len(graph["nodes"]),
            "edge_count": len(graph["edges"]),
            "explicit": by_source["explicit"],
            "implicit_team": by_source["implicit_team"],
            "implicit_org": by_source["implicit_org"],
            "tag_cooccurrence": by_source["tag_cooccurrence"],
            "by_node_type": dict(by_node_type),
            "by_edge_type": dict(by_edge_type),
        }

    def get_hubs(self, scope_id: int, limit: int = 10) -> list[dict[str, Any]]:
        nodes = self.build_graph(scope_id)["nodes"]
        ranked = sorted(nodes, key=lambda n: (-n["degree"], n["label"].lower()))
        return [{"id": n["id"], "name": n["label"], "type": n["type"], "degree": n["degree"]} for n in ranked[:limit]]

    # --- construction -------------------------------------------------------

    def _build(
        self,
        scope_id: int,
        actor_types: tuple[str, ...],
        include_implicit: bool,
        min_confidence: float,
    ) -> dict[str, Any]:
        actors = list_actors(self.conn, scope_id, actor_types=actor_types)
        nodes: dict[int, dict[str, Any]] = {}
        for a in actors:
            nodes[int(a["id"])] = {
                "id": int(a["id"]),
                "label": str(a["name"]),
                "type": str(a["actor_type"]),
                "role": a["role"],
                "team": a["team"],
                "organization": a["organization"],
                "mention_count": int(a["mention_count"]),
                "last_seen_at": a["last_seen_at"],
                "color": NODE_COLORS.get(str(a["actor_type"]), NODE_COLORS["unknown"]),
            }

        edges: dict[tuple[int, int], dict[str, Any]] = {}

        def add(a: int, b: int, edge: dict[str, Any]) -> None:
            if a == b or a not in nodes or b not in nodes:
                return
            if edge.get("confidence", 1.0) < min_confidence:
                return
            edges.setdefault(_pair(a, b), {"source": a, "target": b, **edge})

        rels = self.conn.execute(
            """
            SELECT id, source_actor_id, target_actor_id, relationship_type, context,
                   strength, confidence, source_ref
            FROM relationships
            WHERE scope_id = ? AND is_approved = 1
            ORDER BY confidence DESC, id
            """,
            (scope_id,),
        ).fetchall()
        for r in rels:
            rel_type = str(r["relationship_type"])
            confidence = float(r["confidence"])
            strength = float(r["strength"])
            add(
                int(r["source_actor_id"]),
                int(r["target_actor_id"]),
                {
                    "label": rel_type,
                    "type": rel_type,
                    "edge_source": "explicit",
                    "context": r["context"],
                    "confidence": confidence,
                    "strength": strength,
                    "source_ref": r["source_ref"],
                    "relationship_id": int(r["id"]),
                    "weight": confidence * strength * EDGE_WEIGHTS["explicit"],
                    "color": RELATION_COLORS.get(rel_type, RELATION_COLORS["related_to"]),
                    "style": "solid",
                },
            )

        if include_implicit:
            self._add_shared_attribute_edges(nodes, add, "team", "same_team", "implicit_team", "#10b981", "dashed")
            self._add_shared_attribute_edges(nodes, add, "organization", "same_org", "implicit_org", "#f59e0b", "dotted")
            self._add_tag_edges(scope_id, nodes, add)

        degree: dict[int, int] = defaultdict(int)
        for a, b in edges:
            degree[a] += 1
            degree[b] += 1
        for nid, node in nodes.items():
            node["degree"] = degree[nid]
            node["size"] = NODE_BASE_SIZE + degree[nid] * NODE_SIZE_PER_DEGREE

        out_edges = []
        for (a, b), e in sorted(edges.items()):
            e["id"] = f"{a}-{b}"
            e["source_label"] = nodes[e["source"]]["label"]
            e["target_label"] = nodes[e["target"]]["label"]
            out_edges.append(e)

        return {"nodes": [nodes[k] for k in sorted(nodes)], "edges": out_edges}

    @staticmethod
    def _add_shared_attribute_edges(nodes, add, attr: str, label: str, edge_source: str, color: str, style: str) -> None:
        groups: dict[str, list[int]] = defaultdict(list)
        display: dict[str, str] = {}
        for nid, n in sorted(nodes.items()):
            value = n.get(attr)
            if value and str(value).strip():
                k = str(value).strip().lower()
                groups[k].append(nid)
                display.setdefault(k, str(value).strip())

        for k, members in groups.items():
            for a, b in combinations(members, 2):
                add(
                    a,
                    b,
                    {
                        "label": label,
                        "type": label,
                        "edge_source": edge_source,
                        "context": f"Both in {attr}: {display[k]}",
                        "weight": EDGE_WEIGHTS[edge_source],
                        "color": color,
                        "style": style,
                    },
                )

    def _add_tag_edges(self, scope_id: int, nodes, add) -> None:
        by_name: dict[tuple[str, str], int] = {}
        for nid, n in sorted(nodes.items()):
            by_name.setdefault((n["type"], n["label"].lower()), nid)

        for row in tag_cooccurrences(self.conn, scope_id, min_docs=self.min_tag_docs):
            person_id = by_name.get(("person", str(row["person"]).lower()))
            other_id = by_name.get((str(row["other_type"]), str(row["other"]).lower()))
            if person_id is None or other_id is None:
                continue
            doc_count = int(row["doc_count"])
            add(
                person_id,
                other_id,
                {
                    "label": "works_on",
                    "type": "works_on",
                    "edge_source": "tag_cooccurrence",
                    "context": f"Tagged together in {doc_count} documents",
                    "doc_count": doc_count,
                    "weight": min(EDGE_WEIGHTS["tag_cooccurrence"] * (doc_count / 5), 0.5),
                    "color": "#8b5cf6",
                    "style": "dashed",
                },
            )
