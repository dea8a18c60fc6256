"""
Service wiring for the HTTP layer.

Each provider is a FastAPI dependency, so tests can swap any of them through
``app.dependency_overrides``.
"""

from typing import AsyncIterator

from fastapi import Depends

from crmsync.connectors.sync_orchestrator import SyncOrchestrator
from crmsync.connectors.token_manager import TokenManager
from crmsync.connectors.xero_client import XeroClient
from crmsync.engine.enrichment import EnrichmentPipeline
from crmsync.storage import StorageBackend, get_storage


def storage_dependency() -> StorageBackend:
    return get_storage()


async def get_xero_client() -> AsyncIterator[XeroClient]:
    """One Xero client per request, closed when the response is sent."""
    client = XeroClient.from_settings()
    try:
        yield client
    finally:
        await client.aclose()


def get_token_manager(
    client: XeroClient = Depends(get_xero_client),
    storage: StorageBackend = Depends(storage_dependency),
) -> TokenManager:
    return TokenManager(storage=storage, client=client)


def get_sync_orchestrator(
    client: XeroClient = Depends(get_xero_client),
    storage: StorageBackend = Depends(storage_dependency),
    token_manager: TokenManager = Depends(get_token_manager),
) -> SyncOrchestrator:
    return SyncOrchestrator(client=client, storage=storage, token_manager=token_manager)


def get_enrichment_pipeline(
    storage: StorageBackend = Depends(storage_dependency),
) -> EnrichmentPipeline:
    return EnrichmentPipeline(storage=storage)


__all__ = [
    "storage_dependency",
    "get_xero_client",
    "get_token_manager",
    "get_sync_orchestrator",
    "get_enrichment_pipeline",
]
