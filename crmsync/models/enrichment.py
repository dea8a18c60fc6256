"""Wire models for the enrichment pipeline."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import EnrichmentStrategy


class TokenUsage(BaseModel):
    """LLM token counts and derived USD cost. Informational only."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0

    def add(self, other: "TokenUsage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens
        self.cost = round(self.cost + other.cost, 5)


class FilterStats(BaseModel):
    """Keyword pre-filter outcome for one batch."""

    total: int = 0
    relevant: int = 0
    filtered: int = 0
    filter_percentage: int = 0


class EnrichmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cursor: int = Field(default=0, ge=0, description="Last invoice row id already visited")
    batch_size: int = Field(default=200, ge=1, alias="batchSize")
    test_batch: bool = Field(default=False, alias="testBatch")
    strategy: EnrichmentStrategy = EnrichmentStrategy.AI


class EnrichmentResult(BaseModel):
    """Outcome of one enrichment batch."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = ""
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    total_keywords: int = Field(default=0, alias="totalKeywords")
    token_usage: TokenUsage = Field(default_factory=TokenUsage, alias="tokenUsage")
    has_more: bool = Field(default=False, alias="hasMore")
    next_cursor: int = Field(default=0, alias="nextCursor")
    remaining: int = 0
    filter_stats: Optional[FilterStats] = Field(default=None, alias="filterStats")
