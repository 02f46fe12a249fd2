from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from ..errors import StoreUnavailable, ValidationError, require_id
from ..oracle.types import ActorType, Extraction, clamp_confidence, norm_relation_type
from ..store import now, transaction
from .sqlite_graph import (
    actor_name_map,
    find_active_suggestion,
    get_relationship,
    get_suggestion,
    is_dismissed,
    list_actors,
    resolve_actor_id,
    upsert_actor,
    upsert_relationship,
)

logger = logging.getLogger(__name__)

IMPLICIT_ACTOR_CONFIDENCE = 0.3
MAX_CONTEXT_SAMPLES = 5
MAX_CONTEXT_CHARS = 500
MAX_SOURCE_DOCUMENTS = 20


@dataclass(frozen=True)
class SimmerPolicy:
    """How repeated evidence turns into confidence.

    confidence = min(cap, base + step * (evidence_count - 1)); anything
    extracted below ``discard_below`` never becomes a suggestion.
    """

    confidence_cap: float = 0.9
    step_per_evidence: float = 0.1
    discard_below: float = 0.3

    def simmered(self, base: float, evidence_count: int) -> float:
        return min(self.confidence_cap, base + self.step_per_evidence * (evidence_count - 1))


@dataclass(frozen=True)
class SaveStats:
    actors_written: int = 0
    relationships_written: int = 0
    suggestions_written: int = 0


class EvidenceAccumulator:
    """Owns every write to actors, suggestions and relationships."""

    def __init__(self, conn: sqlite3.Connection, *, policy: SimmerPolicy | None = None):
        self.conn = conn
        self.policy = policy or SimmerPolicy()

    # --- ingestion ----------------------------------------------------------

    def save(self, extraction: Extraction, scope_id: int, source_ref: str | None = None) -> SaveStats:
        """Persist one extraction in a single transaction.

        Relationships never become confirmed edges here: they are recorded as
        suggestions and gain confidence only through repeated evidence.
        """
        scope_id = require_id(scope_id, "scope_id")

        actors = 0
        relationships = 0
        suggestions = 0

        with transaction(self.conn):
            for ent in extraction.entities:
                name = ent.name.strip()
                if not name:
                    continue
                upsert_actor(
                    self.conn,
                    scope_id=scope_id,
                    name=name,
                    actor_type=ActorType.from_label(ent.type).value,
                    confidence=ent.confidence,
                    role=ent.role,
                    team=ent.team,
                    organization=ent.organization,
                    description=ent.description,
                )
                actors += 1

            name_map = actor_name_map(self.conn, scope_id)

            for rel in extraction.relationships:
                confidence = clamp_confidence(rel.confidence, 0.0)
                if confidence < self.policy.discard_below:
                    continue
                rel_type = norm_relation_type(rel.type)

                source_id = self._resolve_or_create(scope_id, name_map, rel.source)
                target_id = self._resolve_or_create(scope_id, name_map, rel.target)
                if source_id == target_id:
                    continue

                if is_dismissed(self.conn, scope_id, source_id, target_id, rel_type):
                    logger.debug("Skipping dismissed relationship %s -[%s]-> %s", rel.source, rel_type, rel.target)
                    continue

                confirmed = get_relationship(self.conn, scope_id, source_id, target_id, rel_type)
                if confirmed is not None:
                    upsert_relationship(
                        self.conn,
                        scope_id=scope_id,
                        source_id=source_id,
                        target_id=target_id,
                        rel_type=rel_type,
                        confidence=confidence,
                    )
                    relationships += 1
                    continue

                self._simmer(scope_id, source_id, target_id, rel_type, confidence, rel.context, source_ref)
                suggestions += 1

        logger.info(
            "Saved extraction for scope %s: %d actors, %d relationships, %d suggestions",
            scope_id,
            actors,
            relationships,
            suggestions,
        )
        return SaveStats(actors_written=actors, relationships_written=relationships, suggestions_written=suggestions)

    def _resolve_or_create(self, scope_id: int, name_map: dict[str, int], name: str) -> int:
        actor_id = resolve_actor_id(name_map, name)
        if actor_id is not None:
            return actor_id
        actor_id = upsert_actor(
            self.conn,
            scope_id=scope_id,
            name=name.strip(),
            actor_type=ActorType.UNKNOWN.value,
            confidence=IMPLICIT_ACTOR_CONFIDENCE,
        )
        name_map[name.strip().lower()] = actor_id
        logger.debug("Created implicit actor %r for unresolved relationship endpoint", name)
        return actor_id

    def _simmer(
        self,
        scope_id: int,
        source_id: int,
        target_id: int,
        rel_type: str,
        confidence: float,
        context: str | None,
        source_ref: str | None,
    ) -> None:
        ts = now()
        sample = (context or "")[:MAX_CONTEXT_CHARS]
        existing = find_active_suggestion(self.conn, scope_id, source_id, target_id, rel_type)

        if existing is None:
            self.conn.execute(
                """
                INSERT INTO suggestions(
                  scope_id, source_actor_id, target_actor_id, relationship_type, source_text,
                  confidence, base_confidence, evidence_count, source_documents, context_samples,
                  is_approved, is_dismissed, last_seen_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, 0, 0, ?, ?)
                """,
                (
                    scope_id,
                    source_id,
                    target_id,
                    rel_type,
                    context or "",
                    confidence,
                    confidence,
                    json.dumps([source_ref] if source_ref else []),
                    json.dumps([sample] if sample else []),
                    ts,
                    ts,
                ),
            )
            return

        count = int(existing["evidence_count"]) + 1
        docs = json_list(existing["source_documents"])
        samples = json_list(existing["context_samples"])
        if source_ref and source_ref not in docs and len(docs) < MAX_SOURCE_DOCUMENTS:
            docs.append(source_ref)
        if sample and len(samples) < MAX_CONTEXT_SAMPLES:
            samples.append(sample)

        simmered = self.policy.simmered(float(existing["base_confidence"]), count)
        # Never decrease, even if the policy changed since the row was written.
        simmered = max(simmered, float(existing["confidence"]))

        self.conn.execute(
            """
            UPDATE suggestions
            SET evidence_count = ?, source_documents = ?, context_samples = ?,
                confidence = ?, last_seen_at = ?
            WHERE id = ?
            """,
            (count, json.dumps(docs), json.dumps(samples), simmered, ts, int(existing["id"])),
        )
        logger.debug("Simmer: suggestion %s evidence %d, confidence %.0f%%", existing["id"], count, simmered * 100)

    # --- direct writes ------------------------------------------------------

    def save_relationship(
        self,
        scope_id: int,
        source_actor_id: int,
        target_actor_id: int,
        rel_type: str,
        *,
        confidence: float = 1.0,
        context: str | None = None,
        strength: float = 1.0,
        source_ref: str | None = None,
    ) -> bool:
        """Record a confirmed relationship without going through review."""
        scope_id = require_id(scope_id, "scope_id")
        source_actor_id = require_id(source_actor_id, "source_actor_id")
        target_actor_id = require_id(target_actor_id, "target_actor_id")
        if source_actor_id == target_actor_id:
            raise ValidationError("a relationship needs two different actors")
        with transaction(self.conn):
            return upsert_relationship(
                self.conn,
                scope_id=scope_id,
                source_id=source_actor_id,
                target_id=target_actor_id,
                rel_type=rel_type,
                confidence=confidence,
                context=context,
                strength=strength,
                source_ref=source_ref,
            )

    # --- review -------------------------------------------------------------

    def approve_suggestion(self, suggestion_id: int, scope_id: int) -> bool:
        suggestion_id = require_id(suggestion_id, "suggestion_id")
        scope_id = require_id(scope_id, "scope_id")
        with transaction(self.conn):
            sg = get_suggestion(self.conn, suggestion_id, scope_id)
            if sg is None or sg["is_dismissed"]:
                return False
            docs = json_list(sg["source_documents"])
            upsert_relationship(
                self.conn,
                scope_id=scope_id,
                source_id=int(sg["source_actor_id"]),
                target_id=int(sg["target_actor_id"]),
                rel_type=str(sg["relationship_type"]),
                confidence=float(sg["confidence"]),
                context=(sg["source_text"] or None),
                source_ref=(docs[0] if docs else None),
            )
            self.conn.execute(
                "UPDATE suggestions SET is_approved = 1, reviewed_at = ? WHERE id = ?",
                (now(), suggestion_id),
            )
        return True

    def reject_suggestion(self, suggestion_id: int, scope_id: int) -> bool:
        """Delete the suggestion; fresh evidence may bring it back."""
        suggestion_id = require_id(suggestion_id, "suggestion_id")
        scope_id = require_id(scope_id, "scope_id")
        with transaction(self.conn):
            cur = self.conn.execute(
                "DELETE FROM suggestions WHERE id = ? AND scope_id = ? AND is_approved = 0",
                (suggestion_id, scope_id),
            )
        return cur.rowcount > 0

    def dismiss_suggestion(self, suggestion_id: int, scope_id: int) -> bool:
        """Dismiss permanently; the same tuple is never suggested again."""
        suggestion_id = require_id(suggestion_id, "suggestion_id")
        scope_id = require_id(scope_id, "scope_id")
        with transaction(self.conn):
            cur = self.conn.execute(
                "UPDATE suggestions SET is_dismissed = 1, reviewed_at = ? WHERE id = ? AND scope_id = ? AND is_approved = 0",
                (now(), suggestion_id, scope_id),
            )
        return cur.rowcount > 0

    def check_auto_promotions(self, scope_id: int, min_evidence: int = 3, min_confidence: float = 0.7) -> list[dict[str, Any]]:
        """Active suggestions crossing both thresholds. Read-only."""
        scope_id = require_id(scope_id, "scope_id")
        rows = self._query(
            f"""
            {_SUGGESTION_SELECT}
            WHERE sg.scope_id = ? AND sg.is_approved = 0 AND sg.is_dismissed = 0
              AND sg.evidence_count >= ? AND sg.confidence >= ?
            ORDER BY sg.evidence_count DESC, sg.confidence DESC, sg.id
            """,
            (scope_id, int(min_evidence), float(min_confidence)),
        )
        logger.info("Found %d candidates for auto-promotion in scope %s", len(rows), scope_id)
        return [_suggestion_dict(r) for r in rows]

    def get_suggestions_inbox(
        self,
        scope_id: int,
        *,
        include_dismissed: bool = False,
        min_evidence: int = 0,
        sort_by: str = "evidence",
        limit: int = 50,
    ) -> dict[str, Any]:
        scope_id = require_id(scope_id, "scope_id")
        where = "sg.scope_id = ? AND sg.is_approved = 0"
        params: list[Any] = [scope_id]
        if not include_dismissed:
            where += " AND sg.is_dismissed = 0"
        if min_evidence > 0:
            where += " AND sg.evidence_count >= ?"
            params.append(int(min_evidence))

        if sort_by == "confidence":
            order = "sg.confidence DESC, sg.evidence_count DESC, sg.id"
        elif sort_by == "evidence":
            order = "sg.evidence_count DESC, sg.confidence DESC, sg.id"
        else:
            raise ValidationError(f"sort_by must be 'evidence' or 'confidence', got {sort_by!r}")

        rows = self._query(f"{_SUGGESTION_SELECT} WHERE {where} ORDER BY {order} LIMIT ?", (*params, int(limit)))
        stats = self._query(
            """
            SELECT
              COUNT(*) AS total,
              COALESCE(SUM(CASE WHEN evidence_count >= 3 THEN 1 ELSE 0 END), 0) AS strong_evidence,
              COALESCE(SUM(CASE WHEN confidence >= 0.7 THEN 1 ELSE 0 END), 0) AS high_confidence,
              COALESCE(SUM(CASE WHEN is_dismissed = 1 THEN 1 ELSE 0 END), 0) AS dismissed,
              COALESCE(AVG(evidence_count), 0) AS avg_evidence
            FROM suggestions
            WHERE scope_id = ? AND is_approved = 0
            """,
            (scope_id,),
        )[0]
        return {"suggestions": [_suggestion_dict(r) for r in rows], "stats": dict(stats)}

    # --- reads --------------------------------------------------------------

    def get_actors(self, scope_id: int) -> list[dict[str, Any]]:
        scope_id = require_id(scope_id, "scope_id")
        try:
            return [dict(r) for r in list_actors(self.conn, scope_id)]
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e

    def get_relationships(self, scope_id: int) -> list[dict[str, Any]]:
        scope_id = require_id(scope_id, "scope_id")
        rows = self._query(
            """
            SELECT r.*,
                   s.name AS source_name, s.actor_type AS source_type,
                   t.name AS target_name, t.actor_type AS target_type
            FROM relationships r
            LEFT JOIN actors s ON r.source_actor_id = s.id
            LEFT JOIN actors t ON r.target_actor_id = t.id
            WHERE r.scope_id = ?
            ORDER BY r.created_at DESC, r.id DESC
            """,
            (scope_id,),
        )
        return [dict(r) for r in rows]

    def _query(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e


_SUGGESTION_SELECT = """
SELECT sg.*,
       s.name AS source_name, s.actor_type AS source_type,
       t.name AS target_name, t.actor_type AS target_type
FROM suggestions sg
LEFT JOIN actors s ON sg.source_actor_id = s.id
LEFT JOIN actors t ON sg.target_actor_id = t.id
"""


def json_list(raw: Any) -> list[str]:
    try:
        val = json.loads(raw or "[]")
    except (TypeError, ValueError):
        return []
    return [str(v) for v in val] if isinstance(val, list) else []


def _suggestion_dict(row: sqlite3.Row) -> dict[str, Any]:
    d = dict(row)
    d["source_documents"] = json_list(d.get("source_documents"))
    d["context_samples"] = json_list(d.get("context_samples"))
    d["is_approved"] = bool(d.get("is_approved"))
    d["is_dismissed"] = bool(d.get("is_dismissed"))
    return d
