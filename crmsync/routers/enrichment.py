"""
Invoice enrichment router.
"""

from fastapi import APIRouter, Depends

from crmsync.auth.dependencies import get_current_user_id
from crmsync.engine.enrichment import EnrichmentPipeline
from crmsync.models.enrichment import EnrichmentRequest, EnrichmentResult
from crmsync.services import get_enrichment_pipeline
from crmsync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.post("/batch", response_model=EnrichmentResult, response_model_by_alias=True)
async def run_enrichment_batch(
    request: EnrichmentRequest,
    user_id: str = Depends(get_current_user_id),
    pipeline: EnrichmentPipeline = Depends(get_enrichment_pipeline),
):
    """
    Enrich the next batch of invoices after ``cursor``.

    Call again with ``nextCursor`` while ``hasMore`` is true.
    """
    logger.info(
        "enrichment_batch_requested",
        user_id=user_id,
        cursor=request.cursor,
        batch_size=request.batch_size,
        strategy=request.strategy.value,
    )
    return await pipeline.enrich_batch(
        cursor=request.cursor,
        batch_size=request.batch_size,
        strategy=request.strategy,
        test_batch=request.test_batch,
    )
