"""Actor knowledge graph.

Actors, suggestions and confirmed relationships live in the SQLite DB.
``evidence`` turns repeated extractions into suggestions with growing
confidence, ``dedup`` merges near-duplicate actors and ``builder`` renders a
cached node/edge view per scope.
"""
