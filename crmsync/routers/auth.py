"""
Authentication router - OAuth2 flow with Xero and JWT issuance.
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from jose import JWTError
from pydantic import BaseModel

from crmsync.auth.jwt import create_access_token, create_state_token, decode_state_token
from crmsync.config import get_settings
from crmsync.connectors.token_manager import TokenManager
from crmsync.connectors.xero_client import XeroClient
from crmsync.services import get_token_manager, get_xero_client
from crmsync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class OAuthInitResponse(BaseModel):
    """OAuth2 initialization response."""

    authorization_url: str
    state: str


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str
    expires_in: int
    user_id: str
    tenant_id: str
    tenant_name: Optional[str] = None


@router.get("/authorize", response_model=OAuthInitResponse)
async def initiate_oauth(
    user_id: str = Query(..., min_length=1, description="Application user to connect"),
    client: XeroClient = Depends(get_xero_client),
):
    """
    Start the Xero OAuth2 flow.
    The signed state carries the user id back to the callback.
    """
    state = create_state_token(user_id)
    auth_url = client.get_authorization_url(state)

    logger.info("oauth_initiated", user_id=user_id)
    return OAuthInitResponse(authorization_url=auth_url, state=state)


@router.get("/callback", response_model=TokenResponse)
async def oauth_callback(
    code: str = Query(..., description="Authorization code from Xero"),
    state: str = Query(..., description="State issued by /authorize"),
    token_manager: TokenManager = Depends(get_token_manager),
):
    """
    OAuth2 callback endpoint.
    Exchanges the code, stores the connection and issues a JWT for the user.
    """
    settings = get_settings()

    try:
        user_id = decode_state_token(state)
    except JWTError as e:
        logger.warning("oauth_state_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired OAuth state",
        )

    connection = await token_manager.connect(user_id, code)

    access_token = create_access_token(
        data={"sub": user_id},
        expires_delta=timedelta(minutes=settings.jwt_expiration_minutes),
    )
    logger.info("jwt_issued", user_id=user_id, tenant_id=connection.tenant_id)

    return TokenResponse(
        access_token=access_token,
        token_type="bearer",
        expires_in=settings.jwt_expiration_minutes * 60,
        user_id=user_id,
        tenant_id=connection.tenant_id,
        tenant_name=connection.tenant_name,
    )
