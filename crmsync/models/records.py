"""
Persisted record models.

These are the internal (snake_case) shapes written to the relational store.
Every synced entity is keyed by the identifier Xero assigns to it; that key is
the conflict column for upserts, so repeated syncs converge instead of
duplicating rows.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .enums import BankTransactionType, ContactStatus, InvoiceStatus, InvoiceType


class PhoneNumber(BaseModel):
    """Canonical phone entry stored in ``customers.phone_numbers``."""

    phone_type: Optional[str] = None
    number: str
    area_code: Optional[str] = None
    country_code: Optional[str] = None


class Address(BaseModel):
    """Canonical address entry stored in ``customers.addresses``."""

    address_type: Optional[str] = None
    lines: list[str] = Field(default_factory=list)
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    attention_to: Optional[str] = None


class Customer(BaseModel):
    """
    A Xero contact.

    Created or updated by sync upserts; only removed by an explicit
    administrative clear.
    """

    xero_contact_id: str
    name: str
    email_address: Optional[str] = None
    phone_numbers: list[PhoneNumber] = Field(default_factory=list)
    addresses: list[Address] = Field(default_factory=list)
    contact_status: ContactStatus = ContactStatus.ACTIVE
    is_supplier: bool = False
    is_customer: bool = True
    contact_groups: list[dict] = Field(default_factory=list)
    sales_tracking_categories: list[dict] = Field(default_factory=list)
    purchases_tracking_categories: list[dict] = Field(default_factory=list)
    contact_number: Optional[str] = None
    account_number: Optional[str] = None
    tax_number: Optional[str] = None
    website: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Invoice(BaseModel):
    """
    A Xero invoice or bill.

    ``work_description`` and ``service_keywords`` are derived later by the
    enrichment pipeline and are never written by sync.
    """

    id: Optional[int] = None
    xero_invoice_id: str
    xero_contact_id: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_type: Optional[InvoiceType] = None
    invoice_status: Optional[InvoiceStatus] = None
    line_amount_types: Optional[str] = None
    invoice_date: Optional[str] = None
    due_date: Optional[str] = None
    fully_paid_on_date: Optional[str] = None
    sub_total: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0
    total_discount: float = 0.0
    amount_due: float = 0.0
    amount_paid: float = 0.0
    amount_credited: float = 0.0
    currency_code: Optional[str] = None
    reference: Optional[str] = None
    line_items: list[dict] = Field(default_factory=list)
    work_description: Optional[str] = None
    service_keywords: Optional[list[str]] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class BankTransaction(BaseModel):
    """A RECEIVE or SPEND bank transaction with a known counterparty."""

    xero_bank_transaction_id: str
    xero_contact_id: Optional[str] = None
    xero_bank_account_id: Optional[str] = None
    bank_account_name: Optional[str] = None
    bank_account_code: Optional[str] = None
    transaction_type: BankTransactionType
    status: Optional[str] = None
    transaction_date: Optional[str] = None
    total_amount: float = 0.0
    sub_total: float = 0.0
    total_tax: float = 0.0
    is_reconciled: bool = False
    particulars: Optional[str] = None
    code: Optional[str] = None
    reference: Optional[str] = None
    currency_code: Optional[str] = None
    line_items: list[dict] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class OAuthConnection(BaseModel):
    """One Xero authorization per application user."""

    user_id: str
    access_token: str
    refresh_token: str
    tenant_id: str
    tenant_name: Optional[str] = None
    expires_at: datetime
    refresh_expires_at: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SyncCursor(BaseModel):
    """Resumable position of one entity type's paginated sync for one user."""

    user_id: str
    entity_type: str
    next_page: int = Field(default=1, ge=1)
    has_more: bool = True
    total_synced: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class EnrichmentCandidate(BaseModel):
    """Invoice columns the enrichment pipeline needs."""

    id: int
    invoice_number: Optional[str] = None
    line_items: list[dict] = Field(default_factory=list)
    work_description: Optional[str] = None
    service_keywords: Optional[list[str]] = None
