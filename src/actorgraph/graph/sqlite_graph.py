from __future__ import annotations

import sqlite3
from typing import Iterable

from ..store import now


def upsert_actor(
    conn: sqlite3.Connection,
    *,
    scope_id: int,
    name: str,
    actor_type: str,
    confidence: float,
    role: str | None = None,
    team: str | None = None,
    organization: str | None = None,
    description: str | None = None,
) -> int:
    ts = now()
    conn.execute(
        """
        INSERT INTO actors(
          scope_id, name, actor_type, role, team, organization, description,
          confidence, mention_count, created_at, updated_at, last_seen_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
        ON CONFLICT(scope_id, actor_type, name) DO UPDATE SET
          role = COALESCE(actors.role, excluded.role),
          team = COALESCE(actors.team, excluded.team),
          organization = COALESCE(actors.organization, excluded.organization),
          description = COALESCE(actors.description, excluded.description),
          confidence = MAX(actors.confidence, excluded.confidence),
          mention_count = actors.mention_count + 1,
          updated_at = excluded.updated_at,
          last_seen_at = excluded.last_seen_at
        """,
        (int(scope_id), name, actor_type, role, team, organization, description, float(confidence), ts, ts, ts),
    )
    row = conn.execute(
        "SELECT id FROM actors WHERE scope_id = ? AND actor_type = ? AND name = ?",
        (int(scope_id), actor_type, name),
    ).fetchone()
    return int(row["id"])


def actor_name_map(conn: sqlite3.Connection, scope_id: int) -> dict[str, int]:
    """Lower-cased name -> actor id. Person first names map too, unless taken."""
    rows = conn.execute(
        "SELECT id, name, actor_type FROM actors WHERE scope_id = ? ORDER BY mention_count DESC, id",
        (int(scope_id),),
    ).fetchall()

    out: dict[str, int] = {}
    for r in rows:
        out.setdefault(str(r["name"]).lower(), int(r["id"]))
    for r in rows:
        if r["actor_type"] == "person":
            first = str(r["name"]).split(" ")[0].lower()
            out.setdefault(first, int(r["id"]))
    return out


def resolve_actor_id(name_map: dict[str, int], name: str | None) -> int | None:
    if not name:
        return None
    lower = name.strip().lower()
    if lower in name_map:
        return name_map[lower]
    first = lower.split(" ")[0]
    return name_map.get(first)


def get_actor(conn: sqlite3.Connection, actor_id: int):
    return conn.execute("SELECT * FROM actors WHERE id = ?", (int(actor_id),)).fetchone()


def list_actors(conn: sqlite3.Connection, scope_id: int, *, actor_types: Iterable[str] | None = None) -> list[sqlite3.Row]:
    sql = "SELECT * FROM actors WHERE scope_id = ?"
    params: list = [int(scope_id)]
    types = list(actor_types or [])
    if types:
        sql += f" AND actor_type IN ({','.join(['?'] * len(types))})"
        params.extend(types)
    sql += " ORDER BY actor_type, name"
    return conn.execute(sql, params).fetchall()


def find_active_suggestion(conn: sqlite3.Connection, scope_id: int, source_id: int, target_id: int, rel_type: str):
    return conn.execute(
        """
        SELECT * FROM suggestions
        WHERE scope_id = ? AND source_actor_id = ? AND target_actor_id = ? AND relationship_type = ?
          AND is_dismissed = 0 AND is_approved = 0
        ORDER BY id
        LIMIT 1
        """,
        (int(scope_id), int(source_id), int(target_id), rel_type),
    ).fetchone()


def is_dismissed(conn: sqlite3.Connection, scope_id: int, source_id: int, target_id: int, rel_type: str) -> bool:
    row = conn.execute(
        """
        SELECT 1 FROM suggestions
        WHERE scope_id = ? AND source_actor_id = ? AND target_actor_id = ? AND relationship_type = ?
          AND is_dismissed = 1
        LIMIT 1
        """,
        (int(scope_id), int(source_id), int(target_id), rel_type),
    ).fetchone()
    return row is not None


def get_suggestion(conn: sqlite3.Connection, suggestion_id: int, scope_id: int):
    return conn.execute(
        "SELECT * FROM suggestions WHERE id = ? AND scope_id = ?",
        (int(suggestion_id), int(scope_id)),
    ).fetchone()


def get_relationship(conn: sqlite3.Connection, scope_id: int, source_id: int, target_id: int, rel_type: str):
    return conn.execute(
        """
        SELECT * FROM relationships
        WHERE scope_id = ? AND source_actor_id = ? AND target_actor_id = ? AND relationship_type = ?
        """,
        (int(scope_id), int(source_id), int(target_id), rel_type),
    ).fetchone()


def upsert_relationship(
    conn: sqlite3.Connection,
    *,
    scope_id: int,
    source_id: int,
    target_id: int,
    rel_type: str,
    confidence: float,
    context: str | None = None,
    strength: float = 1.0,
    source_ref: str | None = None,
) -> bool:
    """Insert a confirmed relationship; an existing one only gets its confidence refined.

    Returns True when a new row was created.
    """
    ts = now()
    existing = get_relationship(conn, scope_id, source_id, target_id, rel_type)
    if existing is not None:
        conn.execute(
            """
            UPDATE relationships
            SET confidence = MAX(confidence, ?),
                context = COALESCE(context, ?),
                updated_at = ?
            WHERE id = ?
            """,
            (float(confidence), context, ts, int(existing["id"])),
        )
        return False

    conn.execute(
        """
        INSERT INTO relationships(
          scope_id, source_actor_id, target_actor_id, relationship_type, context,
          strength, confidence, is_approved, source_ref, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
        """,
        (int(scope_id), int(source_id), int(target_id), rel_type, context, float(strength), float(confidence), source_ref, ts, ts),
    )
    return True


# --- tag store -------------------------------------------------------------

TAG_TYPES = ("person", "project", "system", "organization")


def load_blocklist(conn: sqlite3.Connection) -> dict[str, set[str]]:
    """Lower-cased tag value -> blocked tag types."""
    out: dict[str, set[str]] = {}
    for r in conn.execute("SELECT tag_value, blocked_type FROM extraction_blocklist").fetchall():
        out.setdefault(str(r["tag_value"]).lower(), set()).add(str(r["blocked_type"]))
    return out


def block_tag(
    conn: sqlite3.Connection,
    *,
    tag_value: str,
    blocked_type: str,
    correct_type: str | None = None,
    reason: str = "reclassified",
) -> None:
    conn.execute(
        """
        INSERT OR IGNORE INTO extraction_blocklist(tag_value, blocked_type, correct_type, reason, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (tag_value.strip(), blocked_type, correct_type, reason, now()),
    )


def add_document_tags(conn: sqlite3.Connection, *, document_id: int, tags: Iterable[tuple[str, str]]) -> tuple[int, int]:
    """Store (tag_type, value) pairs for a document, skipping blocklisted ones.

    Returns: (stored, blocked)
    """
    blocklist = load_blocklist(conn)
    stored = 0
    blocked = 0
    for tag_type, value in tags:
        value = value.strip()
        if not value or tag_type not in TAG_TYPES:
            continue
        if tag_type in blocklist.get(value.lower(), ()):
            blocked += 1
            continue
        cur = conn.execute(
            "INSERT OR IGNORE INTO document_tags(document_id, tag_type, tag_value) VALUES(?, ?, ?)",
            (int(document_id), tag_type, value),
        )
        stored += cur.rowcount
    return stored, blocked


def tag_cooccurrences(conn: sqlite3.Connection, scope_id: int, *, min_docs: int = 2) -> list[sqlite3.Row]:
    """Person tags that share at least ``min_docs`` documents with a project/system tag."""
    return conn.execute(
        """
        SELECT
          dt1.tag_value AS person,
          dt2.tag_type AS other_type,
          dt2.tag_value AS other,
          COUNT(DISTINCT dt1.document_id) AS doc_count
        FROM document_tags dt1
        JOIN document_tags dt2 ON dt1.document_id = dt2.document_id
        JOIN documents d ON d.id = dt1.document_id
        WHERE dt1.tag_type = 'person'
          AND dt2.tag_type IN ('project', 'system')
          AND d.scope_id = ?
        GROUP BY dt1.tag_value, dt2.tag_type, dt2.tag_value
        HAVING COUNT(DISTINCT dt1.document_id) >= ?
        ORDER BY doc_count DESC, person, other
        """,
        (int(scope_id), int(min_docs)),
    ).fetchall()
