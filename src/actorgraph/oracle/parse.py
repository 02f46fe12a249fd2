from __future__ import annotations

import json
import re
from typing import Any

from ..errors import OracleParseError
from .types import (
    ActorType,
    Entity,
    ExtractedRelationship,
    Extraction,
    clamp_confidence,
    norm_relation_type,
)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)

DEFAULT_ENTITY_CONFIDENCE = 0.8
DEFAULT_RELATIONSHIP_CONFIDENCE = 0.7


def first_json_object(text: str) -> dict[str, Any]:
    """Return the first well-formed JSON object in ``text``.

    Fenced blocks are tried before the raw text; prose around the object is
    ignored. Raises OracleParseError when no object decodes.
    """
    if not isinstance(text, str) or not text.strip():
        raise OracleParseError("empty response")

    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)]
    candidates.append(text)

    decoder = json.JSONDecoder()
    for cand in candidates:
        idx = cand.find("{")
        while idx != -1:
            try:
                obj, _ = decoder.raw_decode(cand, idx)
            except json.JSONDecodeError:
                idx = cand.find("{", idx + 1)
                continue
            if isinstance(obj, dict):
                return obj
            idx = cand.find("{", idx + 1)

    raise OracleParseError(f"no JSON object in response: {text[:200]!r}")


def _opt_str(v: Any) -> str | None:
    if isinstance(v, str) and v.strip():
        return v.strip()
    return None


def extraction_from_payload(payload: dict[str, Any]) -> Extraction:
    """Validate a decoded oracle payload. Malformed items are skipped, not fatal."""
    entities: list[Entity] = []
    for e in payload.get("entities") or []:
        if not isinstance(e, dict):
            continue
        name = _opt_str(e.get("name"))
        if name is None:
            continue
        entities.append(
            Entity(
                name=name,
                type=ActorType.from_label(e.get("type") or e.get("actor_type")),
                confidence=clamp_confidence(e.get("confidence"), DEFAULT_ENTITY_CONFIDENCE),
                role=_opt_str(e.get("role")),
                team=_opt_str(e.get("team")),
                organization=_opt_str(e.get("organization")),
                description=_opt_str(e.get("description")),
            )
        )

    relationships: list[ExtractedRelationship] = []
    for r in payload.get("relationships") or []:
        if not isinstance(r, dict):
            continue
        source = _opt_str(r.get("source"))
        target = _opt_str(r.get("target"))
        if source is None or target is None:
            continue
        relationships.append(
            ExtractedRelationship(
                source=source,
                target=target,
                type=norm_relation_type(r.get("type")),
                confidence=clamp_confidence(r.get("confidence"), DEFAULT_RELATIONSHIP_CONFIDENCE),
                context=_opt_str(r.get("context")) or _opt_str(r.get("source_text")),
            )
        )

    return Extraction(entities=entities, relationships=relationships, source="llm")


def parse_extraction(text: str) -> Extraction:
    payload = first_json_object(text)
    if not isinstance(payload.get("entities") or [], list) or not isinstance(payload.get("relationships") or [], list):
        raise OracleParseError("entities/relationships must be lists")
    return extraction_from_payload(payload)
