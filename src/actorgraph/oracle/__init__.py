"""Entity/relationship extraction.

Ollama models are asked first, in priority order; when none of them yields a
usable answer the deterministic pattern extractor in ``patterns`` takes over.
"""

from .extractor import ExtractionOracle
from .types import ActorType, Entity, ExtractedRelationship, Extraction

__all__ = ["ActorType", "Entity", "ExtractedRelationship", "Extraction", "ExtractionOracle"]
