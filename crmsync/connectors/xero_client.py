"""
Xero Accounting API client with OAuth2 support.

This module provides the async HTTP client used by the sync pipeline:
- OAuth2 authorization URL, code exchange and token refresh
- Tenant discovery via the connections endpoint
- Single-page fetches of contacts, invoices and bank transactions
- Bounded exponential back-off on HTTP 429 responses
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx
import structlog

from crmsync.config import Settings, get_settings
from crmsync.models.enums import EntityType

logger = structlog.get_logger()


class XeroAuthError(Exception):
    """Raised when an OAuth2 token request fails; the user must reconnect."""

    pass


class XeroAPIError(Exception):
    """Raised when a Xero API request returns a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class XeroRateLimitError(XeroAPIError):
    """Raised when HTTP 429 persists after every back-off attempt."""

    def __init__(self, message: str, retry_after: float):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


@dataclass
class XeroPage:
    """One fetched page. ``raw_count`` is what Xero returned before client-side filtering."""

    page: int
    raw_count: int
    records: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.raw_count == 0


class XeroClient:
    """
    Xero Accounting API client.

    The client is stateless with respect to tokens: callers pass the access
    token and tenant id on every fetch, and token persistence lives in
    ``TokenManager``.

    Attributes:
        client_id: Xero OAuth2 client ID
        client_secret: Xero OAuth2 client secret
        redirect_uri: OAuth2 callback URL
        scopes: Requested OAuth2 scopes
    """

    # Endpoint path and response collection key per entity type
    ENTITY_ENDPOINTS = {
        EntityType.CUSTOMERS: "Contacts",
        EntityType.INVOICES: "Invoices",
        EntityType.BANK_TRANSACTIONS: "BankTransactions",
    }

    BANK_TRANSACTION_WHERE = '(Type=="RECEIVE" || Type=="SPEND") && Contact.ContactID!=null'
    BANK_TRANSACTION_TYPES = {"RECEIVE", "SPEND"}

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: Optional[list[str]] = None,
        api_base_url: str = "https://api.xero.com/api.xro/2.0",
        identity_url: str = "https://identity.xero.com/connect/token",
        authorize_url: str = "https://login.xero.com/identity/connect/authorize",
        connections_url: str = "https://api.xero.com/connections",
        rate_limit_initial_delay: float = 3.0,
        rate_limit_max_attempts: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the Xero client.

        Args:
            client_id: Xero OAuth2 client ID
            client_secret: Xero OAuth2 client secret
            redirect_uri: OAuth2 callback URL
            scopes: OAuth2 scopes (defaults to offline access, transactions, contacts)
            rate_limit_initial_delay: First wait after HTTP 429, in seconds
            rate_limit_max_attempts: Attempts per page before raising XeroRateLimitError
            transport: Optional httpx transport (tests inject a MockTransport)
            sleep: Awaitable sleep used for back-off
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes or ["offline_access", "accounting.transactions", "accounting.contacts"]
        self.api_base_url = api_base_url.rstrip("/")
        self.identity_url = identity_url
        self.authorize_url = authorize_url
        self.connections_url = connections_url
        self.rate_limit_initial_delay = rate_limit_initial_delay
        self.rate_limit_max_attempts = rate_limit_max_attempts

        self._transport = transport
        self._sleep = sleep
        self._http_client: Optional[httpx.AsyncClient] = None

        logger.info(
            "xero_client_initialized",
            has_credentials=bool(client_id and client_secret),
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "XeroClient":
        """Build a client from application settings."""
        settings = settings or get_settings()
        return cls(
            client_id=settings.xero_client_id,
            client_secret=settings.xero_client_secret,
            redirect_uri=settings.xero_redirect_uri,
            scopes=settings.xero_scope_list,
            api_base_url=settings.xero_api_base_url,
            identity_url=settings.xero_identity_url,
            authorize_url=settings.xero_authorize_url,
            connections_url=settings.xero_connections_url,
            rate_limit_initial_delay=settings.xero_rate_limit_initial_delay,
            rate_limit_max_attempts=settings.xero_rate_limit_max_attempts,
            **kwargs,
        )

    async def __aenter__(self):
        """Async context manager entry."""
        self._ensure_http_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.aclose()

    async def aclose(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _ensure_http_client(self) -> httpx.AsyncClient:
        if not self._http_client:
            self._http_client = httpx.AsyncClient(timeout=30.0, transport=self._transport)
        return self._http_client

    # =========================================================================
    # OAuth2
    # =========================================================================

    def get_authorization_url(self, state: str) -> str:
        """
        Generate the OAuth2 consent URL.

        Args:
            state: Opaque CSRF state echoed back on the callback

        Returns:
            Complete authorization URL for user redirection
        """
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        auth_url = f"{self.authorize_url}?{urlencode(params)}"

        logger.info(
            "authorization_url_generated",
            redirect_uri=self.redirect_uri,
            scopes=self.scopes,
        )
        return auth_url

    async def exchange_code(self, auth_code: str) -> dict[str, Any]:
        """
        Exchange an authorization code for access and refresh tokens.

        Returns:
            Token payload: access_token, refresh_token, expires_in, token_type

        Raises:
            XeroAuthError: If the exchange fails
        """
        data = {
            "grant_type": "authorization_code",
            "code": auth_code,
            "redirect_uri": self.redirect_uri,
        }
        token_data = await self._token_request(data, operation="oauth_code_exchange")
        logger.info("oauth_code_exchanged", expires_in=token_data.get("expires_in"))
        return token_data

    async def refresh_tokens(self, refresh_token: str) -> dict[str, Any]:
        """
        Trade a refresh token for a new access/refresh token pair.

        Raises:
            XeroAuthError: If the refresh fails for any reason
        """
        if not refresh_token:
            raise XeroAuthError("No refresh token available")

        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        token_data = await self._token_request(data, operation="token_refresh")
        logger.info("tokens_refreshed", expires_in=token_data.get("expires_in"))
        return token_data

    async def _token_request(self, data: dict[str, str], operation: str) -> dict[str, Any]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        try:
            response = await self._ensure_http_client().post(
                self.identity_url,
                data=data,
                headers=headers,
                auth=(self.client_id, self.client_secret),
            )
            response.raise_for_status()
            token_data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"{operation}_failed",
                status_code=e.response.status_code,
                error=e.response.text,
            )
            raise XeroAuthError(f"{operation} failed: {e.response.text}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{operation}_error", error=str(e))
            raise XeroAuthError(f"Unexpected error during {operation}: {e}") from e

        if "access_token" not in token_data or "refresh_token" not in token_data:
            logger.error(f"{operation}_incomplete", keys=sorted(token_data))
            raise XeroAuthError(f"{operation} returned no token pair")

        return token_data

    async def get_connections(self, access_token: str) -> list[dict[str, Any]]:
        """
        List the tenants (organisations) the access token may read.

        Raises:
            XeroAuthError: If the connections call fails
        """
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            response = await self._ensure_http_client().get(self.connections_url, headers=headers)
            response.raise_for_status()
            connections = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "xero_connections_failed",
                status_code=e.response.status_code,
                error=e.response.text,
            )
            raise XeroAuthError(f"Failed to list Xero connections: {e.response.text}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("xero_connections_error", error=str(e))
            raise XeroAuthError(f"Unexpected error listing Xero connections: {e}") from e

        logger.info("xero_connections_listed", count=len(connections))
        return connections

    # =========================================================================
    # Paginated fetch
    # =========================================================================

    def _page_params(self, entity_type: EntityType, page: int, page_size: int) -> dict[str, Any]:
        params: dict[str, Any] = {"page": page, "pageSize": page_size}
        if entity_type == EntityType.INVOICES:
            params["order"] = "Date ASC"
        elif entity_type == EntityType.BANK_TRANSACTIONS:
            params["order"] = "Date ASC"
            params["where"] = self.BANK_TRANSACTION_WHERE
        return params

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        value = response.headers.get("Retry-After")
        if not value:
            return 0.0
        try:
            return max(float(value), 0.0)
        except ValueError:
            return 0.0

    async def fetch_page(
        self,
        entity_type: EntityType,
        page: int,
        page_size: int,
        access_token: str,
        tenant_id: str,
    ) -> XeroPage:
        """
        Fetch one page of an entity collection.

        A page with no raw records means the collection is exhausted. HTTP 429 is retried
        with doubling delays (starting at the larger of the configured initial
        delay and ``Retry-After``) up to ``rate_limit_max_attempts`` attempts.

        Args:
            entity_type: Which collection to read
            page: 1-based page number
            page_size: Records per page (Xero maximum 1000)
            access_token: Bearer token
            tenant_id: Xero tenant (organisation) id

        Returns:
            The page, with bank transactions lacking a counterparty removed

        Raises:
            XeroRateLimitError: If rate limiting outlasts every attempt
            XeroAPIError: On any other non-success response or transport failure
        """
        entity_type = EntityType(entity_type)
        collection = self.ENTITY_ENDPOINTS[entity_type]
        url = f"{self.api_base_url}/{collection}"
        params = self._page_params(entity_type, page, page_size)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Xero-tenant-id": tenant_id,
            "Accept": "application/json",
        }

        delay = self.rate_limit_initial_delay
        for attempt in range(1, self.rate_limit_max_attempts + 1):
            try:
                response = await self._ensure_http_client().get(url, params=params, headers=headers)
            except httpx.HTTPError as e:
                logger.error(
                    "xero_page_request_error",
                    entity_type=entity_type.value,
                    page=page,
                    error=str(e),
                )
                raise XeroAPIError(f"{collection} page {page} request failed: {e}") from e

            if response.status_code == 429:
                delay = max(delay, self._retry_after(response))
                if attempt == self.rate_limit_max_attempts:
                    logger.error(
                        "xero_rate_limit_exhausted",
                        entity_type=entity_type.value,
                        page=page,
                        attempts=attempt,
                    )
                    raise XeroRateLimitError(
                        f"Xero rate limit persisted after {attempt} attempts; try again later",
                        retry_after=delay,
                    )
                logger.warning(
                    "xero_rate_limited",
                    entity_type=entity_type.value,
                    page=page,
                    attempt=attempt,
                    wait_seconds=delay,
                )
                await self._sleep(delay)
                delay *= 2
                continue

            if response.is_error:
                logger.error(
                    "xero_page_request_failed",
                    entity_type=entity_type.value,
                    page=page,
                    status_code=response.status_code,
                    error=response.text[:500],
                )
                raise XeroAPIError(
                    f"{collection} page {page} failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                )

            try:
                body = response.json()
            except ValueError as e:
                raise XeroAPIError(f"{collection} page {page} returned invalid JSON") from e

            records = body.get(collection) if isinstance(body, dict) else None
            if isinstance(body, dict) and records is None:
                records = []
            if not isinstance(records, list):
                raise XeroAPIError(f"{collection} page {page} returned a malformed body")

            raw_count = len(records)
            if entity_type == EntityType.BANK_TRANSACTIONS:
                records = [r for r in records if self._is_counterparty_transaction(r)]

            logger.debug(
                "xero_page_fetched",
                entity_type=entity_type.value,
                page=page,
                count=len(records),
                raw_count=raw_count,
                attempt=attempt,
            )
            return XeroPage(page=page, raw_count=raw_count, records=records)

        # rate_limit_max_attempts >= 1, so the loop always returns or raises
        raise XeroRateLimitError("Xero rate limit: no attempts made", retry_after=delay)

    @classmethod
    def _is_counterparty_transaction(cls, record: Any) -> bool:
        if not isinstance(record, dict):
            return False
        contact = record.get("Contact")
        if not isinstance(contact, dict):
            return False
        return record.get("Type") in cls.BANK_TRANSACTION_TYPES and bool(contact.get("ContactID"))
