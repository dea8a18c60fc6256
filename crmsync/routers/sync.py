"""
Chunked sync router.

The browser (or ``scripts/run_sync.py``) calls ``POST /chunk`` repeatedly,
feeding back the continuation pages until ``hasMore`` is false.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from crmsync.auth.dependencies import get_current_user_id
from crmsync.connectors.sync_orchestrator import SyncOrchestrator
from crmsync.models.records import SyncCursor
from crmsync.models.sync import SyncChunkRequest, SyncChunkResponse
from crmsync.services import get_sync_orchestrator
from crmsync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class ResetResponse(BaseModel):
    success: bool
    cleared: int


@router.post("/chunk", response_model=SyncChunkResponse, response_model_by_alias=True)
async def run_sync_chunk(
    request: SyncChunkRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """
    Import up to ``max*Pages`` pages of each entity type.

    Omitted start pages resume from the stored cursors.
    """
    logger.info(
        "sync_chunk_requested",
        user_id=user_id,
        start_customer_page=request.start_customer_page,
        start_invoice_page=request.start_invoice_page,
        start_bank_transaction_page=request.start_bank_transaction_page,
    )
    return await orchestrator.run_chunk(user_id, request)


@router.get("/cursors", response_model=list[SyncCursor])
async def list_sync_cursors(
    user_id: str = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Stored resume points, one per entity type."""
    cursors = orchestrator.get_cursors(user_id)
    return [cursors[key] for key in sorted(cursors)]


@router.post("/reset", response_model=ResetResponse)
async def reset_sync_cursors(
    user_id: str = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Forget stored progress; the next chunk starts at page 1."""
    cleared = orchestrator.reset_cursors(user_id)
    return ResetResponse(success=True, cleared=cleared)
