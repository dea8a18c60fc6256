"""
Per-user Xero token store and refresher.

Access tokens live for about 30 minutes and refresh tokens for 60 days. The
manager hands out a usable access token, refreshing it synchronously when it
is about to expire, and reports "not connected" when the user must go through
the OAuth flow again.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from crmsync.config import Settings, get_settings
from crmsync.connectors.xero_client import XeroAuthError, XeroClient
from crmsync.models.connection import AccessGrant, ConnectionStatus
from crmsync.models.records import OAuthConnection
from crmsync.storage.base import StorageBackend

logger = structlog.get_logger()


class TokenManager:
    """
    Reads, refreshes and persists one OAuth connection per user.

    Attributes:
        storage: Storage backend holding ``xero_connections``
        client: Xero client used for token requests
    """

    def __init__(
        self,
        storage: StorageBackend,
        client: XeroClient,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = settings or get_settings()
        self.storage = storage
        self.client = client
        self.refresh_margin = timedelta(seconds=settings.token_refresh_margin_seconds)
        self.refresh_token_lifetime = timedelta(days=settings.refresh_token_lifetime_days)
        self._clock = clock or datetime.utcnow

    async def get_valid_access_token(self, user_id: str) -> Optional[AccessGrant]:
        """
        Return a usable access token for the user.

        Returns:
            AccessGrant, or None when the user is not connected or the refresh
            token has expired

        Raises:
            XeroAuthError: If a needed refresh fails; the caller should ask the
                user to reconnect
        """
        connection = self.storage.get_connection(user_id)
        if connection is None:
            logger.info("xero_not_connected", user_id=user_id)
            return None

        now = self._clock()

        if connection.refresh_expires_at <= now:
            logger.warning(
                "refresh_token_expired",
                user_id=user_id,
                refresh_expires_at=connection.refresh_expires_at.isoformat(),
            )
            return None

        if connection.expires_at <= now + self.refresh_margin:
            logger.info(
                "access_token_expiring",
                user_id=user_id,
                expires_at=connection.expires_at.isoformat(),
            )
            connection = await self._refresh(connection, now)

        return AccessGrant(access_token=connection.access_token, tenant_id=connection.tenant_id)

    async def _refresh(self, connection: OAuthConnection, now: datetime) -> OAuthConnection:
        try:
            token_data = await self.client.refresh_tokens(connection.refresh_token)
        except XeroAuthError:
            logger.error("token_refresh_rejected", user_id=connection.user_id)
            raise

        refreshed = connection.model_copy(
            update={
                "access_token": token_data["access_token"],
                "refresh_token": token_data["refresh_token"],
                "expires_at": now + timedelta(seconds=int(token_data.get("expires_in", 1800))),
                "refresh_expires_at": now + self.refresh_token_lifetime,
                "updated_at": now,
            }
        )
        self.storage.save_connection(refreshed)

        logger.info(
            "connection_tokens_refreshed",
            user_id=connection.user_id,
            expires_at=refreshed.expires_at.isoformat(),
        )
        return refreshed

    async def connect(self, user_id: str, auth_code: str) -> OAuthConnection:
        """
        Complete the OAuth flow and persist the user's connection.

        The first tenant returned by the connections endpoint is used.

        Raises:
            XeroAuthError: If the code exchange fails or no tenant is authorized
        """
        token_data = await self.client.exchange_code(auth_code)
        tenants = await self.client.get_connections(token_data["access_token"])
        if not tenants:
            logger.error("xero_no_tenants", user_id=user_id)
            raise XeroAuthError("No Xero organisation was authorized")

        tenant = tenants[0]
        now = self._clock()
        existing = self.storage.get_connection(user_id)

        connection = OAuthConnection(
            user_id=user_id,
            access_token=token_data["access_token"],
            refresh_token=token_data["refresh_token"],
            tenant_id=tenant["tenantId"],
            tenant_name=tenant.get("tenantName"),
            expires_at=now + timedelta(seconds=int(token_data.get("expires_in", 1800))),
            refresh_expires_at=now + self.refresh_token_lifetime,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self.storage.save_connection(connection)

        logger.info(
            "xero_connected",
            user_id=user_id,
            tenant_id=connection.tenant_id,
            tenant_name=connection.tenant_name,
        )
        return connection

    def disconnect(self, user_id: str) -> bool:
        """Forget the user's connection. Returns True if one existed."""
        removed = self.storage.delete_connection(user_id)
        logger.info("xero_disconnected", user_id=user_id, removed=removed)
        return removed

    def connection_status(self, user_id: str) -> ConnectionStatus:
        connection = self.storage.get_connection(user_id)
        if connection is None:
            return ConnectionStatus(connected=False)

        return ConnectionStatus(
            connected=True,
            reconnect_required=connection.refresh_expires_at <= self._clock(),
            tenant_id=connection.tenant_id,
            tenant_name=connection.tenant_name,
            expires_at=connection.expires_at,
            refresh_expires_at=connection.refresh_expires_at,
        )
