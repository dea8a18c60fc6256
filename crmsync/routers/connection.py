"""
Xero connection management router.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from crmsync.auth.dependencies import get_current_user_id
from crmsync.connectors.token_manager import TokenManager
from crmsync.models.connection import ConnectionStatus
from crmsync.services import get_token_manager
from crmsync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class DisconnectResponse(BaseModel):
    """Disconnect response."""

    success: bool
    message: str


@router.get("/status", response_model=ConnectionStatus)
async def get_connection_status(
    user_id: str = Depends(get_current_user_id),
    token_manager: TokenManager = Depends(get_token_manager),
):
    """Report whether the user has a usable Xero connection."""
    logger.info("connection_status_check", user_id=user_id)
    return token_manager.connection_status(user_id)


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect_xero(
    user_id: str = Depends(get_current_user_id),
    token_manager: TokenManager = Depends(get_token_manager),
):
    """Forget the stored Xero tokens. Synced data is kept."""
    removed = token_manager.disconnect(user_id)
    message = "Disconnected from Xero" if removed else "No Xero connection to remove"
    return DisconnectResponse(success=True, message=message)
