"""
Xero connector for the CRM sync service.

Main Components:
    XeroClient: OAuth2 + paginated Accounting API client with 429 back-off
    TokenManager: Per-user token store and refresher
    normalizer: Raw Xero JSON -> persisted models
    SyncOrchestrator: One bounded, resumable sync chunk
    SyncDriver: Client-side loop over chunk calls

Usage:
    >>> from crmsync.connectors import SyncOrchestrator, XeroClient
    >>> from crmsync.storage import get_storage
    >>>
    >>> async with XeroClient.from_settings() as client:
    ...     orchestrator = SyncOrchestrator(client, get_storage())
    ...     response = await orchestrator.run_chunk(
    ...         "user-1",
    ...         SyncChunkRequest(accessToken="...", tenantId="..."),
    ...     )
"""

from crmsync.connectors.normalizer import normalize, parse_amount, parse_xero_date
from crmsync.connectors.sync_driver import (
    ChunkFailedError,
    HttpChunkRunner,
    OrchestratorChunkRunner,
    SyncDriver,
)
from crmsync.connectors.sync_orchestrator import SyncOrchestrator
from crmsync.connectors.token_manager import TokenManager
from crmsync.connectors.xero_client import (
    XeroAPIError,
    XeroAuthError,
    XeroClient,
    XeroPage,
    XeroRateLimitError,
)

__all__ = [
    # Core client
    "XeroClient",
    "XeroPage",
    "XeroAuthError",
    "XeroAPIError",
    "XeroRateLimitError",
    # Tokens
    "TokenManager",
    # Normalization
    "normalize",
    "parse_xero_date",
    "parse_amount",
    # Sync
    "SyncOrchestrator",
    "SyncDriver",
    "HttpChunkRunner",
    "OrchestratorChunkRunner",
    "ChunkFailedError",
]
