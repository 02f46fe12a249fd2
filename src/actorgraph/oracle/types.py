from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ActorType(str, Enum):
    PERSON = "person"
    ROLE = "role"
    TEAM = "team"
    SYSTEM = "system"
    ORGANIZATION = "organization"
    PROJECT = "project"
    LOCATION = "location"
    TECHNOLOGY = "technology"
    UNKNOWN = "unknown"

    @classmethod
    def from_label(cls, label: Any) -> "ActorType":
        """Map any extractor label onto the closed type set; unmapped labels are UNKNOWN."""
        if isinstance(label, ActorType):
            return label
        if not isinstance(label, str):
            return cls.UNKNOWN
        return _TYPE_LABELS.get(label.strip().lower(), cls.UNKNOWN)


_TYPE_LABELS: dict[str, ActorType] = {
    "person": ActorType.PERSON,
    "people": ActorType.PERSON,
    "persons": ActorType.PERSON,
    "individual": ActorType.PERSON,
    "name": ActorType.PERSON,
    "role": ActorType.ROLE,
    "title": ActorType.ROLE,
    "job_title": ActorType.ROLE,
    "position": ActorType.ROLE,
    "team": ActorType.TEAM,
    "squad": ActorType.TEAM,
    "group": ActorType.TEAM,
    "department": ActorType.TEAM,
    "system": ActorType.SYSTEM,
    "systems": ActorType.SYSTEM,
    "tool": ActorType.SYSTEM,
    "software": ActorType.SYSTEM,
    "application": ActorType.SYSTEM,
    "service": ActorType.SYSTEM,
    "api": ActorType.SYSTEM,
    "database": ActorType.SYSTEM,
    "organization": ActorType.ORGANIZATION,
    "organisation": ActorType.ORGANIZATION,
    "organizations": ActorType.ORGANIZATION,
    "org": ActorType.ORGANIZATION,
    "company": ActorType.ORGANIZATION,
    "client": ActorType.ORGANIZATION,
    "customer": ActorType.ORGANIZATION,
    "vendor": ActorType.ORGANIZATION,
    "project": ActorType.PROJECT,
    "projects": ActorType.PROJECT,
    "epic": ActorType.PROJECT,
    "product": ActorType.PROJECT,
    "initiative": ActorType.PROJECT,
    "location": ActorType.LOCATION,
    "place": ActorType.LOCATION,
    "city": ActorType.LOCATION,
    "country": ActorType.LOCATION,
    "office": ActorType.LOCATION,
    "technology": ActorType.TECHNOLOGY,
    "tech": ActorType.TECHNOLOGY,
    "framework": ActorType.TECHNOLOGY,
    "language": ActorType.TECHNOLOGY,
    "library": ActorType.TECHNOLOGY,
    "platform": ActorType.TECHNOLOGY,
}


def clamp_confidence(value: Any, default: float) -> float:
    try:
        c = float(value)
    except (TypeError, ValueError):
        return default
    if c != c:  # NaN
        return default
    return min(1.0, max(0.0, c))


def norm_relation_type(label: Any) -> str:
    if not isinstance(label, str):
        return "related_to"
    t = re.sub(r"[^a-z0-9]+", "_", label.strip().lower()).strip("_")
    return t or "related_to"


@dataclass(frozen=True)
class Entity:
    name: str
    type: ActorType
    confidence: float
    role: str | None = None
    team: str | None = None
    organization: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class ExtractedRelationship:
    source: str
    target: str
    type: str
    confidence: float
    context: str | None = None


@dataclass(frozen=True)
class Section:
    title: str
    level: int
    start_line: int


@dataclass
class Extraction:
    entities: list[Entity] = field(default_factory=list)
    relationships: list[ExtractedRelationship] = field(default_factory=list)
    sections: list[Section] = field(default_factory=list)
    # "llm" or "pattern"
    source: str = "pattern"
    backend: str | None = None

    @property
    def confidence(self) -> float:
        if not self.entities:
            return 0.0
        return sum(e.confidence for e in self.entities) / len(self.entities)

    def is_empty(self) -> bool:
        return not self.entities and not self.relationships
