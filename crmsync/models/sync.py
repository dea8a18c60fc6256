"""
Wire models for chunked sync calls.

Field names on the wire are camelCase to match the browser client; Python
code uses the snake_case attribute names.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DateParsingStats(BaseModel):
    """Outcome counts for invoice date parsing within one invocation."""

    model_config = ConfigDict(populate_by_name=True)

    successful: int = 0
    failed: int = 0
    null_dates: int = Field(default=0, alias="nullDates")


class SyncChunkRequest(BaseModel):
    """
    One bounded sync invocation.

    ``access_token``/``tenant_id`` may be omitted when the caller is an
    authenticated user with a stored Xero connection. Omitted start pages
    resume from the server-side cursor; omitted page bounds use the
    configured ``sync_default_max_pages``.
    """

    model_config = ConfigDict(populate_by_name=True)

    access_token: Optional[str] = Field(default=None, alias="accessToken")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")
    start_customer_page: Optional[int] = Field(default=None, ge=1, alias="startCustomerPage")
    start_invoice_page: Optional[int] = Field(default=None, ge=1, alias="startInvoicePage")
    start_bank_transaction_page: Optional[int] = Field(
        default=None, ge=1, alias="startBankTransactionPage"
    )
    max_customer_pages: Optional[int] = Field(
        default=None, ge=1, le=100, alias="maxCustomerPages"
    )
    max_invoice_pages: Optional[int] = Field(default=None, ge=1, le=100, alias="maxInvoicePages")
    max_bank_transaction_pages: Optional[int] = Field(
        default=None, ge=1, le=100, alias="maxBankTransactionPages"
    )


class EntityProgress(BaseModel):
    """Result of paging one entity type inside a chunk."""

    entity_type: str
    start_page: int
    next_page: int
    pages_fetched: int = 0
    records_fetched: int = 0
    records_written: int = 0
    has_more: bool = True
    error: Optional[str] = None


class SyncChunkResponse(BaseModel):
    """Counts, progress log and continuation cursors for one chunk."""

    model_config = ConfigDict(populate_by_name=True)

    progress: list[str] = Field(default_factory=list)
    total_customers: int = Field(default=0, alias="totalCustomers")
    total_invoices: int = Field(default=0, alias="totalInvoices")
    total_bank_transactions: int = Field(default=0, alias="totalBankTransactions")
    date_parsing_stats: DateParsingStats = Field(
        default_factory=DateParsingStats, alias="dateParsingStats"
    )
    has_more: bool = Field(default=False, alias="hasMore")
    next_start_page: Optional[int] = Field(default=None, alias="nextStartPage")
    next_invoice_page: Optional[int] = Field(default=None, alias="nextInvoicePage")
    next_bank_transaction_page: Optional[int] = Field(
        default=None, alias="nextBankTransactionPage"
    )
    entities: list[EntityProgress] = Field(default_factory=list)
    success: bool = True


class SyncSummary(BaseModel):
    """Aggregate of a full client-side sync loop."""

    chunks: int = 0
    total_customers: int = 0
    total_invoices: int = 0
    total_bank_transactions: int = 0
    progress: list[str] = Field(default_factory=list)
    completed: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    next_start_page: Optional[int] = None
    next_invoice_page: Optional[int] = None
    next_bank_transaction_page: Optional[int] = None
