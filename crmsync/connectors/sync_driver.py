"""
Client-side sync loop.

Repeatedly invokes the chunk endpoint (or an in-process orchestrator),
feeding each response's continuation pages into the next request until no
entity type has more data, the caller cancels, or a chunk fails.
"""

from typing import Awaitable, Callable, Optional

import httpx
import structlog

from crmsync.connectors.xero_client import XeroAPIError, XeroAuthError
from crmsync.models.enums import EntityType
from crmsync.models.sync import SyncChunkRequest, SyncChunkResponse, SyncSummary
from crmsync.storage.duckdb_storage import StorageError
from crmsync.utils.logging import LogThrottle

logger = structlog.get_logger()

ChunkRunner = Callable[[SyncChunkRequest], Awaitable[SyncChunkResponse]]


class ChunkFailedError(Exception):
    """Raised by a chunk runner when the server reports a failed chunk."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class HttpChunkRunner:
    """
    Posts chunk requests to a running API.

    Args:
        base_url: API root, e.g. ``http://localhost:8000``
        token: Bearer JWT of the application user
        transport: Optional httpx transport (tests)
        timeout: Per-request timeout in seconds
    """

    CHUNK_PATH = "/api/v1/sync/chunk"

    def __init__(
        self,
        base_url: str,
        token: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 300.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._transport = transport
        self.timeout = timeout

    async def __call__(self, request: SyncChunkRequest) -> SyncChunkResponse:
        payload = request.model_dump(by_alias=True, exclude_none=True)
        headers = {"Authorization": f"Bearer {self.token}"}

        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            try:
                response = await client.post(self.CHUNK_PATH, json=payload, headers=headers)
            except httpx.HTTPError as e:
                raise ChunkFailedError(f"Chunk request failed: {e}") from e

        if response.is_error:
            try:
                detail = response.json().get("error") or response.json().get("detail")
            except ValueError:
                detail = response.text
            raise ChunkFailedError(
                f"Chunk failed with HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        return SyncChunkResponse.model_validate(response.json())


class SyncDriver:
    """
    Drives chunk calls until the whole Xero dataset has been imported.

    Progress logging goes through a per-instance ``LogThrottle`` so several
    drivers never share throttling state.

    Attributes:
        runner: Coroutine performing one chunk call
        max_customer_pages / max_invoice_pages / max_bank_transaction_pages:
            Page bounds sent with every chunk; None leaves the server default
    """

    def __init__(
        self,
        runner: ChunkRunner,
        max_customer_pages: Optional[int] = None,
        max_invoice_pages: Optional[int] = None,
        max_bank_transaction_pages: Optional[int] = None,
        max_chunks: Optional[int] = None,
        throttle: Optional[LogThrottle] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ):
        self.runner = runner
        self.max_customer_pages = max_customer_pages
        self.max_invoice_pages = max_invoice_pages
        self.max_bank_transaction_pages = max_bank_transaction_pages
        self.max_chunks = max_chunks
        self.throttle = throttle or LogThrottle(interval_seconds=5.0)
        self.on_progress = on_progress
        self._cancelled = False

    def cancel(self) -> None:
        """Stop before the next chunk call. An in-flight call is not aborted."""
        self._cancelled = True
        logger.info("sync_driver_cancel_requested")

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def run(
        self,
        start_customer_page: Optional[int] = None,
        start_invoice_page: Optional[int] = None,
        start_bank_transaction_page: Optional[int] = None,
    ) -> SyncSummary:
        """
        Loop chunk calls until done, cancelled or failed.

        Omitted start pages let the server resume from its stored cursors on
        the first call.

        Returns:
            Aggregated totals and progress; on failure ``error`` is set and the
            ``next_*`` pages hold the last good continuation point
        """
        summary = SyncSummary(
            next_start_page=start_customer_page,
            next_invoice_page=start_invoice_page,
            next_bank_transaction_page=start_bank_transaction_page,
        )
        pages = {
            EntityType.CUSTOMERS: start_customer_page,
            EntityType.INVOICES: start_invoice_page,
            EntityType.BANK_TRANSACTIONS: start_bank_transaction_page,
        }

        while True:
            if self._cancelled:
                summary.cancelled = True
                self._emit(summary, "Sync cancelled")
                break

            if self.max_chunks is not None and summary.chunks >= self.max_chunks:
                self._emit(summary, f"Stopped after {summary.chunks} chunks")
                break

            request = SyncChunkRequest(
                start_customer_page=pages[EntityType.CUSTOMERS],
                start_invoice_page=pages[EntityType.INVOICES],
                start_bank_transaction_page=pages[EntityType.BANK_TRANSACTIONS],
                max_customer_pages=self.max_customer_pages,
                max_invoice_pages=self.max_invoice_pages,
                max_bank_transaction_pages=self.max_bank_transaction_pages,
            )

            try:
                response = await self.runner(request)
            except ChunkFailedError as e:
                summary.error = str(e)
                logger.error("sync_chunk_failed", chunk=summary.chunks + 1, error=str(e))
                break

            if not response.success:
                summary.error = "Chunk reported failure"
                logger.error("sync_chunk_unsuccessful", chunk=summary.chunks + 1)
                break

            summary.chunks += 1
            summary.total_customers += response.total_customers
            summary.total_invoices += response.total_invoices
            summary.total_bank_transactions += response.total_bank_transactions
            for message in response.progress:
                self._emit(summary, message)

            pages = self._next_pages(response, pages)
            summary.next_start_page = response.next_start_page
            summary.next_invoice_page = response.next_invoice_page
            summary.next_bank_transaction_page = response.next_bank_transaction_page

            if self.throttle.should_emit():
                logger.info(
                    "sync_driver_progress",
                    chunks=summary.chunks,
                    customers=summary.total_customers,
                    invoices=summary.total_invoices,
                    bank_transactions=summary.total_bank_transactions,
                )

            stalled = self._stalled_error(response)
            if stalled:
                summary.error = stalled
                logger.error("sync_chunk_made_no_progress", chunk=summary.chunks, error=stalled)
                break

            if not response.has_more:
                summary.completed = True
                break

        logger.info(
            "sync_driver_finished",
            chunks=summary.chunks,
            completed=summary.completed,
            cancelled=summary.cancelled,
            error=summary.error,
        )
        return summary

    @staticmethod
    def _next_pages(
        response: SyncChunkResponse, previous: dict[EntityType, Optional[int]]
    ) -> dict[EntityType, Optional[int]]:
        """
        Pick the start page of each entity for the next chunk.

        A finished entity restarts at the empty page it ended on, so later
        chunks cost it a single empty fetch instead of a full re-import.
        """
        pages = {
            EntityType.CUSTOMERS: response.next_start_page,
            EntityType.INVOICES: response.next_invoice_page,
            EntityType.BANK_TRANSACTIONS: response.next_bank_transaction_page,
        }
        ended_on = {EntityType(e.entity_type): e.next_page for e in response.entities}
        for entity_type, page in pages.items():
            if page is None:
                pages[entity_type] = ended_on.get(entity_type, previous[entity_type])
        return pages

    @staticmethod
    def _stalled_error(response: SyncChunkResponse) -> Optional[str]:
        """
        Describe a chunk that hit errors without advancing any entity.

        Repeating such a chunk would request the same failing pages forever.
        """
        if not response.has_more or not response.entities:
            return None
        errors = [e for e in response.entities if e.error]
        if not errors or any(e.next_page != e.start_page for e in response.entities):
            return None
        return "; ".join(f"{e.entity_type} page {e.next_page}: {e.error}" for e in errors)

    def _emit(self, summary: SyncSummary, message: str) -> None:
        summary.progress.append(message)
        if self.on_progress:
            self.on_progress(message)


class OrchestratorChunkRunner:
    """Runs chunks in-process against a ``SyncOrchestrator`` for one user."""

    def __init__(self, orchestrator, user_id: str):
        self.orchestrator = orchestrator
        self.user_id = user_id

    async def __call__(self, request: SyncChunkRequest) -> SyncChunkResponse:
        try:
            return await self.orchestrator.run_chunk(self.user_id, request)
        except (XeroAuthError, XeroAPIError, StorageError) as e:
            raise ChunkFailedError(str(e), status_code=getattr(e, "status_code", None)) from e
