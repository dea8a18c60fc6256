"""
Enumeration types for the CRM sync service.

All enums inherit from str so they serialize to JSON and bind to DuckDB
parameters as their plain values.
"""

from enum import Enum
from typing import Optional


class EntityType(str, Enum):
    """Entity types pulled from Xero, in the order a chunk processes them."""

    CUSTOMERS = "customers"
    INVOICES = "invoices"
    BANK_TRANSACTIONS = "bank_transactions"


class ContactStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    GDPRREQUEST = "GDPRREQUEST"


class InvoiceType(str, Enum):
    """Receivable (sales) or payable (bill)."""

    ACCREC = "ACCREC"
    ACCPAY = "ACCPAY"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    AUTHORISED = "AUTHORISED"
    PAID = "PAID"
    VOIDED = "VOIDED"
    DELETED = "DELETED"


class BankTransactionType(str, Enum):
    """Only the counterparty-bearing directions are imported."""

    RECEIVE = "RECEIVE"
    SPEND = "SPEND"


class EnrichmentStrategy(str, Enum):
    """How work descriptions are derived."""

    AI = "ai"
    HEURISTIC = "heuristic"


def coerce_enum(enum_cls: type[Enum], value: object) -> Optional[Enum]:
    """
    Map a raw upstream value onto an enum member.

    Args:
        enum_cls: Target enum class
        value: Raw value (case-insensitive string, member, or None)

    Returns:
        Matching member, or None if the value is absent or unknown
    """
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        return None
