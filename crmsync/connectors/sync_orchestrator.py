"""
Chunked sync orchestrator.

One invocation pulls a bounded number of pages per entity type from Xero,
normalizes them and upserts them, then reports continuation cursors. The
caller (``SyncDriver`` or the browser) repeats invocations until nothing is
left. Cursors are also persisted per (user, entity type) so a request that
omits start pages resumes where the last one stopped.

Entity phases run in a fixed order:
1. Customers (contacts)
2. Invoices
3. Bank transactions (RECEIVE/SPEND with a counterparty)
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from crmsync.config import Settings, get_settings
from crmsync.connectors.normalizer import normalize_page
from crmsync.connectors.token_manager import TokenManager
from crmsync.connectors.xero_client import (
    XeroAPIError,
    XeroAuthError,
    XeroClient,
    XeroRateLimitError,
)
from crmsync.models.connection import AccessGrant
from crmsync.models.enums import EntityType
from crmsync.models.records import SyncCursor
from crmsync.models.sync import (
    DateParsingStats,
    EntityProgress,
    SyncChunkRequest,
    SyncChunkResponse,
)
from crmsync.storage.base import StorageBackend

logger = structlog.get_logger()

ENTITY_LABELS = {
    EntityType.CUSTOMERS: "Customers",
    EntityType.INVOICES: "Invoices",
    EntityType.BANK_TRANSACTIONS: "Bank transactions",
}


class SyncOrchestrator:
    """
    Runs one bounded sync chunk for a user.

    Attributes:
        client: Xero API client
        storage: Storage backend (entity tables and sync cursors)
        token_manager: Supplies credentials when the request carries none
    """

    ENTITY_ORDER = [
        EntityType.CUSTOMERS,
        EntityType.INVOICES,
        EntityType.BANK_TRANSACTIONS,
    ]

    def __init__(
        self,
        client: XeroClient,
        storage: StorageBackend,
        token_manager: Optional[TokenManager] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = settings or get_settings()
        self.client = client
        self.storage = storage
        self.token_manager = token_manager
        self.page_size = settings.sync_page_size
        self.page_delay = settings.sync_page_delay_seconds
        self.default_max_pages = settings.sync_default_max_pages
        self._sleep = sleep

    async def _resolve_grant(self, user_id: str, request: SyncChunkRequest) -> AccessGrant:
        if request.access_token and request.tenant_id:
            return AccessGrant(access_token=request.access_token, tenant_id=request.tenant_id)

        if self.token_manager is None:
            raise XeroAuthError("Missing access token or tenant ID")

        grant = await self.token_manager.get_valid_access_token(user_id)
        if grant is None:
            raise XeroAuthError("Xero is not connected; reconnect required")
        return grant

    def _requested_pages(
        self, request: SyncChunkRequest
    ) -> dict[EntityType, tuple[Optional[int], int]]:
        default = self.default_max_pages
        return {
            EntityType.CUSTOMERS: (
                request.start_customer_page,
                request.max_customer_pages or default,
            ),
            EntityType.INVOICES: (
                request.start_invoice_page,
                request.max_invoice_pages or default,
            ),
            EntityType.BANK_TRANSACTIONS: (
                request.start_bank_transaction_page,
                request.max_bank_transaction_pages or default,
            ),
        }

    async def run_chunk(self, user_id: str, request: SyncChunkRequest) -> SyncChunkResponse:
        """
        Run one sync chunk.

        Args:
            user_id: Application user owning the Xero connection and cursors
            request: Start pages (optional) and per-entity page bounds

        Returns:
            Totals, progress messages, date parsing stats and continuation pages

        Raises:
            XeroAuthError: If no usable credentials are available
            XeroRateLimitError: If Xero keeps rate limiting a page
            StorageError: If an upsert fails
        """
        grant = await self._resolve_grant(user_id, request)
        cursors = self.storage.read_sync_cursors(user_id)
        stats = DateParsingStats()
        response = SyncChunkResponse(date_parsing_stats=stats)

        logger.info("sync_chunk_started", user_id=user_id)

        results: dict[EntityType, EntityProgress] = {}
        for entity_type, (start, max_pages) in self._requested_pages(request).items():
            cursor = cursors.get(entity_type.value)
            if start is None:
                start = cursor.next_page if cursor and cursor.has_more else 1
            prior_total = cursor.total_synced if cursor and start > 1 else 0

            response.progress.append(
                f"Starting {ENTITY_LABELS[entity_type].lower()} import from page {start}"
            )
            result = await self._sync_entity(
                user_id, entity_type, start, max_pages, grant, stats, prior_total
            )
            results[entity_type] = result

            message = f"{ENTITY_LABELS[entity_type]}: {result.records_fetched} processed"
            if result.error:
                message += f" (stopped at page {result.next_page}: {result.error})"
            response.progress.append(message)

        customers = results[EntityType.CUSTOMERS]
        invoices = results[EntityType.INVOICES]
        transactions = results[EntityType.BANK_TRANSACTIONS]

        response.total_customers = customers.records_fetched
        response.total_invoices = invoices.records_fetched
        response.total_bank_transactions = transactions.records_fetched
        response.next_start_page = customers.next_page if customers.has_more else None
        response.next_invoice_page = invoices.next_page if invoices.has_more else None
        response.next_bank_transaction_page = (
            transactions.next_page if transactions.has_more else None
        )
        response.has_more = any(r.has_more for r in results.values())
        response.entities = [results[e] for e in self.ENTITY_ORDER]
        response.date_parsing_stats = stats

        counts = (
            f"{response.total_customers} customers, {response.total_invoices} invoices "
            f"and {response.total_bank_transactions} bank transactions"
        )
        if response.has_more:
            response.progress.append(f"Chunk complete: {counts} processed")
            response.progress.append(
                "More data available. Next customer page: "
                f"{response.next_start_page or 'complete'}, next invoice page: "
                f"{response.next_invoice_page or 'complete'}, next bank transaction page: "
                f"{response.next_bank_transaction_page or 'complete'}"
            )
        else:
            response.progress.append(f"Import finished: {counts} imported")
        response.progress.append(
            f"Date parsing: {stats.successful} successful, {stats.failed} failed, "
            f"{stats.null_dates} null"
        )

        logger.info(
            "sync_chunk_complete",
            user_id=user_id,
            customers=response.total_customers,
            invoices=response.total_invoices,
            bank_transactions=response.total_bank_transactions,
            has_more=response.has_more,
        )
        return response

    async def _sync_entity(
        self,
        user_id: str,
        entity_type: EntityType,
        start_page: int,
        max_pages: int,
        grant: AccessGrant,
        stats: DateParsingStats,
        prior_total: int,
    ) -> EntityProgress:
        """Page through one entity type until empty, failed, or bounded."""
        progress = EntityProgress(
            entity_type=entity_type.value, start_page=start_page, next_page=start_page
        )
        page = start_page
        total_synced = prior_total

        while page - start_page < max_pages:
            try:
                fetched = await self.client.fetch_page(
                    entity_type, page, self.page_size, grant.access_token, grant.tenant_id
                )
            except XeroRateLimitError:
                raise
            except XeroAPIError as e:
                progress.error = str(e)
                logger.error(
                    "entity_page_fetch_failed",
                    user_id=user_id,
                    entity_type=entity_type.value,
                    page=page,
                    status_code=e.status_code,
                )
                break

            progress.pages_fetched += 1

            if fetched.is_empty:
                progress.has_more = False
                break

            records = normalize_page(fetched.records, entity_type, stats)
            written = self.storage.upsert_records(entity_type, records)

            progress.records_fetched += fetched.raw_count
            progress.records_written += written
            total_synced += fetched.raw_count
            page += 1

            self._save_cursor(user_id, entity_type, page, True, total_synced)

            logger.info(
                "entity_page_written",
                user_id=user_id,
                entity_type=entity_type.value,
                page=page - 1,
                fetched=fetched.raw_count,
                written=written,
            )

            await self._sleep(self.page_delay)

        progress.next_page = page
        self._save_cursor(user_id, entity_type, page, progress.has_more, total_synced)
        return progress

    def _save_cursor(
        self,
        user_id: str,
        entity_type: EntityType,
        next_page: int,
        has_more: bool,
        total_synced: int,
    ) -> None:
        self.storage.write_sync_cursor(
            SyncCursor(
                user_id=user_id,
                entity_type=entity_type.value,
                next_page=next_page,
                has_more=has_more,
                total_synced=total_synced,
                updated_at=datetime.utcnow(),
            )
        )

    def get_cursors(self, user_id: str) -> dict[str, SyncCursor]:
        return self.storage.read_sync_cursors(user_id)

    def reset_cursors(self, user_id: str) -> int:
        """Forget stored progress so the next chunk starts from page 1."""
        cleared = self.storage.clear_sync_cursors(user_id)
        logger.info("sync_cursors_reset", user_id=user_id, cleared=cleared)
        return cleared
