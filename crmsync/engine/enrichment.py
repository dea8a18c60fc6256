"""
Invoice enrichment pipeline.

Derives two columns on synced invoices:
1. ``work_description``: a narrative of the work performed, extracted from
   line item descriptions
2. ``service_keywords``: up to 8 lowercase equipment/action keywords taken
   from the work description

Both stages batch rows into small LLM requests run with bounded concurrency
and a pause between groups. A keyword pre-filter writes an empty keyword list
without any LLM call for descriptions that mention none of the trade terms.

Batches advance with a keyset cursor on the invoice row id, so rows updated
during a pass never shift the remaining pages.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import openai
import structlog
from openai import AsyncOpenAI

from crmsync.config import Settings, get_settings
from crmsync.engine.heuristics import (
    clean_keywords,
    extract_work_description_heuristic,
    has_relevant_keywords,
    line_item_descriptions,
    match_vocabulary,
)
from crmsync.engine.llm_parsing import (
    by_index,
    parse_indexed_array,
    response_text,
    usage_from_response,
)
from crmsync.models.enrichment import EnrichmentResult, FilterStats, TokenUsage
from crmsync.models.enums import EnrichmentStrategy
from crmsync.models.records import EnrichmentCandidate
from crmsync.storage.base import StorageBackend

logger = structlog.get_logger()


class EnrichmentError(Exception):
    """Raised when enrichment cannot run at all (e.g. no LLM credentials)."""

    pass


WORK_DESCRIPTION_PROMPT = """
You extract the work actually performed from electrical and HVAC invoice line items.

Keep:
- Installations, repairs, servicing, testing and commissioning
- Labour descriptions and time on site
- Dates or times the work happened
- Technical details of the job

Leave out:
- Materials and parts (cable, screws, outlets, breakers and the like)
- Site addresses
- Van, call-out and miscellaneous charges
- Thank-you notes and contact details

Write the kept items as one short, coherent narrative per invoice. When an
invoice has no work description, use an empty string.

Each invoice is introduced by its position in square brackets, e.g. [0].
Reply with a JSON array only, one object per invoice:
[{"index": 0, "work_description": "Replaced faulty heat pump fan motor, tested operation"}]
""".strip()

KEYWORD_PROMPT = """
Pull search keywords out of HVAC and electrical work descriptions (heat pumps,
air conditioning, switchboards, servicing).

Rules:
- at most 8 keywords per description
- lowercase
- equipment names and actions only

Each description is introduced by its position in square brackets, e.g. [0].
Reply with a JSON array only:
[{"index": 0, "keywords": ["heat pump", "repair"]}]
""".strip()


def _chunks(items: list, size: int) -> list[list]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _needs_description(candidate: EnrichmentCandidate) -> bool:
    return not candidate.work_description or len(candidate.work_description.strip()) < 20


class EnrichmentPipeline:
    """
    Runs enrichment batches over invoices that still need it.

    Attributes:
        storage: Storage backend holding the invoices table
        llm: Async OpenAI-compatible client (``chat.completions.create``)
    """

    def __init__(
        self,
        storage: StorageBackend,
        llm: Optional[Any] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.storage = storage
        self._llm = llm
        self._sleep = sleep

    @property
    def llm(self) -> Any:
        if self._llm is None:
            if not self.settings.openai_api_key:
                raise EnrichmentError("OpenAI API key is not configured")
            self._llm = AsyncOpenAI(api_key=self.settings.openai_api_key)
        return self._llm

    # =========================================================================
    # Batch entry point
    # =========================================================================

    async def enrich_batch(
        self,
        cursor: int = 0,
        batch_size: int = 200,
        strategy: EnrichmentStrategy = EnrichmentStrategy.AI,
        test_batch: bool = False,
    ) -> EnrichmentResult:
        """
        Enrich the next batch of invoices after ``cursor``.

        Args:
            cursor: Largest invoice row id already visited in this pass
            batch_size: Rows to select (capped by configuration; 10 in test mode)
            strategy: ``ai`` for LLM extraction, ``heuristic`` for rule-based
            test_batch: Process at most 10 rows

        Returns:
            Counts, token usage, pre-filter stats and the next cursor
        """
        limit = min(batch_size, self.settings.enrichment_max_batch_size)
        if test_batch:
            limit = min(limit, 10)
        invoice_type = self.settings.enrichment_invoice_type or None

        candidates = self.storage.select_enrichment_candidates(cursor, limit, invoice_type)
        if not candidates:
            logger.info("enrichment_nothing_to_do", cursor=cursor)
            return EnrichmentResult(
                message="No invoices need enrichment",
                has_more=False,
                next_cursor=cursor,
            )

        logger.info(
            "enrichment_batch_started",
            cursor=cursor,
            candidates=len(candidates),
            strategy=strategy.value,
        )

        usage = TokenUsage()

        # Stage 1: work descriptions
        descriptions: dict[int, str] = {}
        to_describe = [c for c in candidates if _needs_description(c)]
        if to_describe:
            if strategy == EnrichmentStrategy.AI:
                descriptions = await self._describe_with_llm(to_describe, usage)
            else:
                descriptions = self._describe_with_heuristic(to_describe)
            self.storage.update_work_descriptions(descriptions)

        # Stage 2: keywords, for rows with a usable description
        keyword_targets: list[tuple[int, str]] = []
        for candidate in candidates:
            description = descriptions.get(candidate.id) or candidate.work_description
            if not description or not description.strip():
                continue
            if candidate.id in descriptions or not candidate.service_keywords:
                keyword_targets.append((candidate.id, description))

        relevant = [(i, d) for i, d in keyword_targets if has_relevant_keywords(d)]
        filtered = [(i, d) for i, d in keyword_targets if not has_relevant_keywords(d)]

        keywords: dict[int, list[str]] = {i: [] for i, _ in filtered}
        if relevant:
            if strategy == EnrichmentStrategy.AI:
                keywords.update(await self._keywords_with_llm(relevant, usage))
            else:
                keywords.update({i: match_vocabulary(d) for i, d in relevant})
        self.storage.update_service_keywords(keywords)

        filter_stats = FilterStats(
            total=len(keyword_targets),
            relevant=len(relevant),
            filtered=len(filtered),
            filter_percentage=(
                round(len(filtered) / len(keyword_targets) * 100) if keyword_targets else 0
            ),
        )

        updated_ids = set(descriptions) | set(keywords)
        next_cursor = max(c.id for c in candidates)
        remaining = self.storage.count_enrichment_candidates(next_cursor, invoice_type)
        total_keywords = sum(len(k) for k in keywords.values())

        result = EnrichmentResult(
            message=(
                f"Processed {len(candidates)}, updated {len(updated_ids)}: "
                f"{len(descriptions)} work descriptions, {total_keywords} keywords "
                f"({len(filtered)} filtered out). Cost: ${usage.cost:.5f}"
            ),
            processed=len(candidates),
            updated=len(updated_ids),
            skipped=len(candidates) - len(updated_ids),
            total_keywords=total_keywords,
            token_usage=usage,
            has_more=remaining > 0,
            next_cursor=next_cursor,
            remaining=remaining,
            filter_stats=filter_stats,
        )

        logger.info(
            "enrichment_batch_complete",
            processed=result.processed,
            updated=result.updated,
            next_cursor=next_cursor,
            remaining=remaining,
            total_tokens=usage.total_tokens,
            cost=usage.cost,
        )
        return result

    # =========================================================================
    # Stage 1
    # =========================================================================

    def _describe_with_heuristic(self, candidates: list[EnrichmentCandidate]) -> dict[int, str]:
        descriptions = {}
        for candidate in candidates:
            text = extract_work_description_heuristic(candidate.line_items)
            if len(text) > 10:
                descriptions[candidate.id] = text
        return descriptions

    async def _describe_with_llm(
        self, candidates: list[EnrichmentCandidate], usage: TokenUsage
    ) -> dict[int, str]:
        batches = _chunks(candidates, self.settings.description_sub_batch_size)
        outputs = await self._run_groups(
            batches,
            self._describe_sub_batch,
            self.settings.description_concurrency,
            self.settings.description_group_delay_seconds,
        )

        descriptions: dict[int, str] = {}
        for results, batch_usage in outputs:
            usage.add(batch_usage)
            descriptions.update(results)
        return descriptions

    async def _describe_sub_batch(
        self, batch: list[EnrichmentCandidate]
    ) -> tuple[dict[int, str], TokenUsage]:
        blocks = []
        for i, candidate in enumerate(batch):
            lines = "\n".join(line_item_descriptions(candidate.line_items))
            blocks.append(
                f"[{i}] Invoice: {candidate.invoice_number or candidate.id}\nLine Items:\n{lines}"
            )
        user_message = (
            "Extract the work performed from these invoices. Ignore materials and addresses:\n\n"
            + "\n\n---\n\n".join(blocks)
        )

        content, usage = await self._complete(WORK_DESCRIPTION_PROMPT, user_message, 1000)
        if content is None:
            return {}, usage

        try:
            indexed = by_index(parse_indexed_array(content))
        except ValueError as e:
            logger.warning("work_description_parse_failed", error=str(e), content=content[:500])
            return {}, usage

        results = {}
        for i, candidate in enumerate(batch):
            text = indexed.get(i, {}).get("work_description")
            if isinstance(text, str) and len(text.strip()) > 10:
                results[candidate.id] = text.strip()
        return results, usage

    # =========================================================================
    # Stage 2
    # =========================================================================

    async def _keywords_with_llm(
        self, rows: list[tuple[int, str]], usage: TokenUsage
    ) -> dict[int, list[str]]:
        batches = _chunks(rows, self.settings.keyword_sub_batch_size)
        outputs = await self._run_groups(
            batches,
            self._keyword_sub_batch,
            self.settings.keyword_concurrency,
            self.settings.keyword_group_delay_seconds,
        )

        keywords: dict[int, list[str]] = {}
        for results, batch_usage in outputs:
            usage.add(batch_usage)
            keywords.update(results)
        return keywords

    async def _keyword_sub_batch(
        self, batch: list[tuple[int, str]]
    ) -> tuple[dict[int, list[str]], TokenUsage]:
        listing = "\n".join(f"[{i}] {description}" for i, (_, description) in enumerate(batch))
        user_message = f"Extract keywords from these work descriptions:\n{listing}"

        content, usage = await self._complete(KEYWORD_PROMPT, user_message, 800)
        if content is None:
            return {}, usage

        try:
            indexed = by_index(parse_indexed_array(content))
        except ValueError as e:
            logger.warning("keyword_parse_failed", error=str(e), content=content[:500])
            return {}, usage

        return {
            invoice_id: clean_keywords(indexed.get(i, {}).get("keywords"))
            for i, (invoice_id, _) in enumerate(batch)
        }, usage

    # =========================================================================
    # LLM plumbing
    # =========================================================================

    async def _run_groups(self, batches: list, worker, concurrency: int, delay: float) -> list:
        """Run ``worker`` over batches, ``concurrency`` at a time, pausing between groups."""
        outputs = []
        for start in range(0, len(batches), concurrency):
            group = batches[start : start + concurrency]
            outputs.extend(await asyncio.gather(*(worker(batch) for batch in group)))
            if start + concurrency < len(batches):
                await self._sleep(delay)
        return outputs

    async def _complete(
        self, system_prompt: str, user_message: str, max_tokens: int
    ) -> tuple[Optional[str], TokenUsage]:
        """One chat completion. Returns (None, zero usage) on an API error."""
        try:
            response = await self.llm.chat.completions.create(
                model=self.settings.openai_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                temperature=0.1,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as e:
            logger.error(
                "llm_request_failed",
                error=str(e),
                status_code=getattr(e, "status_code", None),
            )
            return None, TokenUsage()

        usage = usage_from_response(
            response,
            self.settings.openai_input_cost_per_1k,
            self.settings.openai_output_cost_per_1k,
        )
        return response_text(response), usage
