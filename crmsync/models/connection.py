"""Models describing a user's Xero connection as seen by callers."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class AccessGrant(BaseModel):
    """A usable access token and the tenant it reads."""

    access_token: str
    tenant_id: str


class ConnectionStatus(BaseModel):
    """Connection summary returned by the status endpoint."""

    connected: bool
    reconnect_required: bool = False
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
    expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
