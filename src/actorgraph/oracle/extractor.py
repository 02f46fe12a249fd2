from __future__ import annotations

import logging
from typing import Protocol, Sequence

from ..errors import OracleParseError, OracleUnavailable
from .llm import ChatMessage
from .parse import parse_extraction
from .patterns import markdown_sections, pattern_extract
from .types import Extraction

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 16_000

EXTRACTION_PROMPT = """You are an entity extraction expert. Extract ALL mentioned entities from this text about product development and agile work.

TEXT:
\"\"\"
{text}
\"\"\"

EXTRACT AND CLASSIFY:
1. PERSON: Names of individuals (first name, full name, Dutch names with prefixes like "van de")
2. ROLE: Job titles (Product Owner, Scrum Master, Developer, Manager, Tech Lead, etc.)
3. TEAM: Team names (Backend team, Team Alpha, etc.)
4. SYSTEM: Software, tools, APIs, databases (Jira, API, Confluence, SAP, etc.)
5. ORGANIZATION: Companies, departments, clients
6. PROJECT: Project or epic names
7. LOCATION: Offices, cities, countries
8. TECHNOLOGY: Languages, frameworks, platforms

Also extract RELATIONSHIPS:
- works_with: People who collaborate
- member_of: Person belongs to team
- owns: Person responsible for something
- depends_on: System/project dependencies
- reports_to: Reporting relationships
- blocks: Blockers between items

Return ONLY valid JSON:
{{
  "entities": [
    {{"name": "Jan van der Berg", "type": "person", "role": "Developer", "team": "Backend team", "confidence": 0.95}},
    {{"name": "Product Owner", "type": "role", "confidence": 1.0}},
    {{"name": "Matcher API", "type": "system", "confidence": 0.9}}
  ],
  "relationships": [
    {{"source": "Jan", "target": "Backend team", "type": "member_of", "context": "mentioned in standup", "confidence": 0.85}}
  ]
}}

RULES:
- Only extract entities EXPLICITLY mentioned in the text
- Confidence: 0.0-1.0 based on how explicit the mention is
- Keep original names exactly as written (including Dutch prefixes)
- If no entities found, return empty arrays
- Return ONLY JSON, no explanations"""


class ChatBackend(Protocol):
    name: str

    def chat(self, messages: list[ChatMessage]) -> str: ...


def build_prompt(text: str) -> str:
    if len(text) > MAX_PROMPT_CHARS:
        text = text[:MAX_PROMPT_CHARS] + "\n...[truncated]"
    return EXTRACTION_PROMPT.format(text=text)


class ExtractionOracle:
    """Try each backend in priority order, then fall back to pattern extraction.

    ``extract`` never raises for backend problems: unreachable backends and
    unparseable answers both just move on to the next option.
    """

    def __init__(self, backends: Sequence[ChatBackend] = ()):
        self.backends = list(backends)

    def extract(self, text: str, *, skip_llm: bool = False) -> Extraction:
        text = text or ""
        if not text.strip():
            return Extraction(source="pattern")

        if not skip_llm:
            prompt = build_prompt(text)
            for backend in self.backends:
                name = getattr(backend, "name", type(backend).__name__)
                try:
                    result = self._ask(backend, prompt)
                except OracleUnavailable as e:
                    logger.warning("Extraction backend %s unavailable: %s", name, e)
                    continue
                except OracleParseError as e:
                    logger.warning("Extraction backend %s returned unusable output: %s", name, e)
                    continue
                except Exception:
                    logger.exception("Extraction backend %s crashed", name)
                    continue

                if result.is_empty():
                    logger.info("Extraction backend %s found nothing, trying next", name)
                    continue

                result.backend = name
                result.sections = markdown_sections(text)
                return result

            if self.backends:
                logger.info("All extraction backends failed, using pattern fallback")

        return pattern_extract(text)

    def _ask(self, backend: ChatBackend, prompt: str) -> Extraction:
        answer = backend.chat([ChatMessage(role="user", content=prompt)])
        return parse_extraction(answer)
