from __future__ import annotations

import re
from dataclasses import dataclass

from ..ingest.markdown import split_sections
from .types import ActorType, Entity, ExtractedRelationship, Extraction, Section

# Deterministic fallback used when no extraction backend answers. Every
# confidence here stays at or below 0.7 so oracle results always rank higher.

PERSON_CONFIDENCE = 0.6
SINGLE_NAME_CONFIDENCE = 0.5
ROLE_CONFIDENCE = 0.7
TEAM_CONFIDENCE = 0.7
SYSTEM_CONFIDENCE = 0.65
RELATIONSHIP_CONFIDENCE = 0.5

_NAME_PARTICLES = r"(?:van|de|den|der|het|ter|ten)"

# "Carl Jung", "Jan van der Berg", "Pieter de Vries"
_PERSON_RE = re.compile(
    rf"\b[A-Z][a-z]+(?:\s+(?:{_NAME_PARTICLES}\s+){{0,2}}[A-Z][a-z]+){{0,2}}\b"
)

_TEAM_RES = [
    re.compile(r"\b((?:[A-Z][\w-]*\s+){1,3}[Tt]eam)\b"),
    re.compile(r"\b(Team\s+[A-Z][\w-]*)\b"),
]

_ROLE_RES = [
    re.compile(
        r"\b(Product\s*Owner|Scrum\s*Master|Tech\s*Lead|Team\s*Lead|Senior\s+Developer|Junior\s+Developer|"
        r"Developer|Solution\s+Architect|Architect|UX\s+Designer|Designer|QA\s+Engineer|Test\s+Engineer|"
        r"Tester|Business\s+Analyst|Analyst|Project\s+Manager|Program\s+Manager|Engineering\s+Manager|Manager|"
        r"Director|CEO|CTO|CFO|COO|DevOps\s+Engineer|SRE)\b",
        re.IGNORECASE,
    ),
    # Dutch
    re.compile(r"\b(Productowner|Projectleider|Teamleider|Ontwikkelaar|Ontwerper|Analist|Beheerder|Directeur)\b", re.IGNORECASE),
]

_SYSTEM_RES = [
    re.compile(r"\b((?:[A-Z][A-Za-z0-9]+\s+){1,2}(?:API|Service|System|Platform|App|Tool|Database|DB))\b"),
    re.compile(r"\b([A-Z][a-z]+(?:API|Service|System|Platform|App|Tool|Database|DB))\b"),
    re.compile(
        r"\b(Jira|Confluence|GitHub|GitLab|Jenkins|Docker|Kubernetes|AWS|Azure|GCP|Slack|"
        r"GraphQL|Redis|PostgreSQL|MySQL|MongoDB|Elasticsearch|SAP)\b"
    ),
]

# (relationship type, cue between two mentions). First match wins.
_RELATION_CUES: list[tuple[str, re.Pattern[str]]] = [
    ("works_with", re.compile(r"\b(?:works?|worked|working|collaborates?|collaborated|partners?|partnered)\s+(?:closely\s+)?with\b", re.I)),
    ("reports_to", re.compile(r"\breport(?:s|ed|ing)?\s+to\b", re.I)),
    ("member_of", re.compile(r"\b(?:member\s+of|part\s+of|joined|belongs\s+to)\b", re.I)),
    ("depends_on", re.compile(r"\b(?:depends|depended|relies|relied)\s+on\b", re.I)),
    ("blocks", re.compile(r"\b(?:blocks|blocked|is\s+blocking)\b", re.I)),
    ("owns", re.compile(r"\b(?:owns|owned|maintains|is\s+responsible\s+for|leads)\b", re.I)),
    ("works_on", re.compile(r"\bwork(?:s|ed|ing)?\s+on\b", re.I)),
]
_MAX_CUE_GAP = 48

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")

# Words that follow a name ("Jan works ...", "Clara is our ...").
_NAME_FOLLOWERS = re.compile(
    r"^\s+(?:works?|worked|met|said|says|asked|owns|leads|reports|reported|joined|is|was|will|has|had|and|from)\b"
)
# Words that precede a name ("with Jan", "Hi Clara").
_NAME_LEADERS = re.compile(r"(?:\bmet|\bwith|\bby|\bfrom|\bto|@|\bHi|\bHello|\bDear|\bThanks|\bBedankt|\bGroet|\bcc)\s+$", re.I)

# Filter out titlecase words that are rarely meaningful names alone.
_STOP = {
    "A", "An", "And", "Are", "As", "At", "Be", "But", "By", "Can", "Do", "For", "From", "He", "Her",
    "His", "I", "If", "In", "Into", "Is", "It", "Its", "Me", "My", "No", "Not", "Of", "On", "Or",
    "Our", "She", "So", "That", "The", "Their", "There", "These", "They", "This", "Those", "To", "We",
    "Were", "What", "When", "Where", "Which", "Who", "Why", "How", "With", "You", "Your",
    "Hi", "Hello", "Dear", "Thanks", "Yesterday", "Today", "Tomorrow", "Also", "Then", "After", "Before",
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
    "January", "February", "March", "April", "May", "June", "July", "August", "September",
    "October", "November", "December",
    "Sprint", "Epic", "Story", "Task", "Bug", "Feature", "Release", "Version",
    "Meeting", "Review", "Retro", "Planning", "Standup", "Demo",
    "Status", "Update", "Notes", "Summary", "Overview", "Context", "Background",
    "Issue", "Problem", "Solution", "Action", "Next", "Steps", "Follow", "Up",
    # Dutch
    "De", "Het", "Een", "Dit", "Dat", "Deze", "Die", "Wanneer", "Wat", "Waar", "Hoe", "Waarom",
    "Maandag", "Dinsdag", "Woensdag", "Donderdag", "Vrijdag", "Zaterdag", "Zondag",
    "Januari", "Februari", "Maart", "Mei", "Juni", "Juli", "Augustus", "Oktober",
}


def norm_entity(name: str) -> str:
    # Normalize for stable matching.
    return re.sub(r"\s+", " ", name.strip()).lower()


@dataclass
class _Found:
    name: str
    type: ActorType
    confidence: float


def _overlaps(spans: list[tuple[int, int]], start: int, end: int) -> bool:
    return any(start < b and a < end for a, b in spans)


def _strip_leading_stop(raw: str) -> tuple[str, int]:
    """Drop leading stop words ("The Matcher API" -> "Matcher API"). Returns (name, offset)."""
    offset = 0
    name = raw
    while True:
        head, sep, rest = name.partition(" ")
        if not sep or head not in _STOP:
            return name, offset
        offset += len(head) + 1
        name = rest.lstrip()


def _looks_like_name(word: str, text: str, start: int, end: int) -> bool:
    if len(word) < 3:
        return False
    if word.upper() == word:
        return False  # acronym
    if _NAME_FOLLOWERS.match(text[end:end + 40]):
        return True
    if _NAME_LEADERS.search(text[max(0, start - 30):start]):
        return True
    return len(word) >= 4


def _extract_entities(text: str) -> list[_Found]:
    found: dict[str, _Found] = {}
    claimed: list[tuple[int, int]] = []

    def claim(pattern: re.Pattern[str], actor_type: ActorType, confidence: float) -> None:
        for m in pattern.finditer(text):
            raw = m.group(1)
            name, offset = _strip_leading_stop(raw)
            start = m.start(1) + offset
            end = start + len(name)
            if not name or name in _STOP or _overlaps(claimed, start, end):
                continue
            claimed.append((start, end))
            found.setdefault(norm_entity(name), _Found(name, actor_type, confidence))

    for pat in _TEAM_RES:
        claim(pat, ActorType.TEAM, TEAM_CONFIDENCE)
    for pat in _ROLE_RES:
        claim(pat, ActorType.ROLE, ROLE_CONFIDENCE)
    for pat in _SYSTEM_RES:
        claim(pat, ActorType.SYSTEM, SYSTEM_CONFIDENCE)

    for m in _PERSON_RE.finditer(text):
        name, offset = _strip_leading_stop(m.group(0))
        start = m.start() + offset
        end = start + len(name)
        if not name or name in _STOP or _overlaps(claimed, start, end):
            continue
        n = norm_entity(name)
        if n in found:
            continue
        multi = " " in name
        if not multi and not _looks_like_name(name, text, start, end):
            continue
        claimed.append((start, end))
        found[n] = _Found(name, ActorType.PERSON, PERSON_CONFIDENCE if multi else SINGLE_NAME_CONFIDENCE)

    return list(found.values())


def _mentions(sentence: str, names: list[str]) -> list[tuple[int, int, str]]:
    hits: list[tuple[int, int, str]] = []
    for name in names:
        for m in re.finditer(rf"(?<!\w){re.escape(name)}(?!\w)", sentence, re.IGNORECASE):
            hits.append((m.start(), m.end(), name))
    # Prefer the longest mention where two overlap.
    hits.sort(key=lambda h: (h[0], -(h[1] - h[0])))
    out: list[tuple[int, int, str]] = []
    for h in hits:
        if out and h[0] < out[-1][1]:
            continue
        out.append(h)
    return out


def _extract_relationships(text: str, names: list[str]) -> list[ExtractedRelationship]:
    rels: list[ExtractedRelationship] = []
    seen: set[tuple[str, str, str]] = set()
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        mentions = _mentions(sentence, names)
        for (_, a_end, a), (b_start, _, b) in zip(mentions, mentions[1:]):
            if norm_entity(a) == norm_entity(b):
                continue
            gap = sentence[a_end:b_start]
            if len(gap) > _MAX_CUE_GAP:
                continue
            for rel_type, cue in _RELATION_CUES:
                if cue.search(gap):
                    key = (norm_entity(a), norm_entity(b), rel_type)
                    if key not in seen:
                        seen.add(key)
                        rels.append(
                            ExtractedRelationship(
                                source=a,
                                target=b,
                                type=rel_type,
                                confidence=RELATIONSHIP_CONFIDENCE,
                                context=sentence[:500],
                            )
                        )
                    break
    return rels


def pattern_extract(text: str) -> Extraction:
    """Heuristic extraction: names, roles, teams, systems and cue-phrase relationships.

    Runs per markdown section so relationships never span headings.
    """
    entities: dict[str, Entity] = {}
    relationships: list[ExtractedRelationship] = []
    sections: list[Section] = []

    for sec in split_sections(text or ""):
        if sec.level:
            sections.append(Section(title=sec.title, level=sec.level, start_line=sec.start_line))
        body = sec.text
        if not body:
            continue

        local = _extract_entities(body)
        for f in local:
            entities.setdefault(norm_entity(f.name), Entity(name=f.name, type=f.type, confidence=f.confidence))

        relationships.extend(_extract_relationships(body, [f.name for f in local]))

    return Extraction(
        entities=list(entities.values()),
        relationships=relationships,
        sections=sections,
        source="pattern",
    )


def markdown_sections(text: str) -> list[Section]:
    return [
        Section(title=sec.title, level=sec.level, start_line=sec.start_line)
        for sec in split_sections(text or "")
        if sec.level
    ]
