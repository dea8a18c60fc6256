"""
Invoice enrichment engine.

- enrichment: LLM-backed work description and keyword extraction
- heuristics: keyword pre-filter and rule-based work description extraction
- llm_parsing: reply parsing and token cost accounting
"""

from crmsync.engine.enrichment import EnrichmentError, EnrichmentPipeline

__all__ = ["EnrichmentPipeline", "EnrichmentError"]
