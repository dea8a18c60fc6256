"""
Normalization of raw Xero records into persisted models.

Xero returns PascalCase JSON with loosely-typed fields: dates arrive as
``/Date(ms+zzzz)/`` tokens or ISO strings, amounts as numbers or strings, and
phones/addresses in whatever shape the integration produced. Everything here
maps those payloads onto the typed models in ``crmsync.models.records``.

Normalization never raises for bad field values. Records missing their
identity fields are skipped (``None``); malformed dates become ``None`` and
are counted in ``DateParsingStats``.
"""

import math
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

import structlog

from crmsync.models.enums import (
    BankTransactionType,
    ContactStatus,
    EntityType,
    InvoiceStatus,
    InvoiceType,
    coerce_enum,
)
from crmsync.models.records import Address, BankTransaction, Customer, Invoice, PhoneNumber
from crmsync.models.sync import DateParsingStats

logger = structlog.get_logger()

_XERO_DATE_RE = re.compile(r"^/Date\((-?\d+)(?:[+-]\d{4})?\)/$")


# =============================================================================
# Scalars
# =============================================================================


def parse_xero_date(value: Any, context: str = "unknown") -> Optional[str]:
    """
    Parse any Xero date representation into ``YYYY-MM-DD``.

    Accepts ``/Date(epochMillis[+-hhmm])/`` tokens, ISO-8601 strings (falling
    back to the date part before ``T``), epoch-millisecond numbers, and
    ``date``/``datetime`` objects.

    Args:
        value: Raw date value
        context: Label used in the warning when parsing fails

    Returns:
        ISO calendar date, or None when absent or unparsable
    """
    if value is None or value == "":
        return None

    try:
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc).date().isoformat()

        if isinstance(value, str):
            text = value.strip()
            match = _XERO_DATE_RE.match(text)
            if match:
                millis = int(match.group(1))
                return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).date().isoformat()

            try:
                return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
            except ValueError:
                if "T" in text:
                    return date.fromisoformat(text.split("T", 1)[0]).isoformat()
                raise
    except (ValueError, OverflowError, OSError) as e:
        logger.warning("xero_date_parse_failed", context=context, value=str(value), error=str(e))
        return None

    logger.warning("xero_date_unsupported_type", context=context, value_type=type(value).__name__)
    return None


def parse_amount(value: Any) -> float:
    """Coerce a Xero amount to float; absent or unparsable values become 0.0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _dicts(value: Any, field: str) -> list[dict]:
    """Keep only object entries of a Xero array field."""
    entries = _list(value)
    kept = [entry for entry in entries if isinstance(entry, dict)]
    if len(kept) != len(entries):
        logger.warning("non_object_entries_dropped", field=field, dropped=len(entries) - len(kept))
    return kept


def _mapping(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


# =============================================================================
# Phones and addresses
# =============================================================================


def normalize_phones(raw: Any) -> list[PhoneNumber]:
    """
    Canonicalize phone data into a list of ``PhoneNumber``.

    ``raw`` may be None, a bare number string, one Xero phone object or a list
    of either. Entries without a number are dropped (Xero always returns one
    slot per phone type, most of them empty).
    """
    phones: list[PhoneNumber] = []
    for entry in _list(raw):
        if isinstance(entry, PhoneNumber):
            phones.append(entry)
        elif isinstance(entry, str):
            number = _text(entry)
            if number:
                phones.append(PhoneNumber(number=number))
        elif isinstance(entry, dict):
            number = _text(entry.get("PhoneNumber") or entry.get("number"))
            if not number:
                continue
            phones.append(
                PhoneNumber(
                    phone_type=_text(entry.get("PhoneType") or entry.get("phone_type")),
                    number=number,
                    area_code=_text(entry.get("PhoneAreaCode") or entry.get("area_code")),
                    country_code=_text(entry.get("PhoneCountryCode") or entry.get("country_code")),
                )
            )
        else:
            logger.warning("phone_entry_unrecognized", entry_type=type(entry).__name__)
    return phones


def normalize_addresses(raw: Any) -> list[Address]:
    """
    Canonicalize address data into a list of ``Address``.

    Accepts the same shapes as ``normalize_phones``. A bare string becomes a
    single address line. Entries with no content at all are dropped.
    """
    addresses: list[Address] = []
    for entry in _list(raw):
        if isinstance(entry, Address):
            addresses.append(entry)
        elif isinstance(entry, str):
            line = _text(entry)
            if line:
                addresses.append(Address(lines=[line]))
        elif isinstance(entry, dict):
            raw_lines = [
                entry.get(key)
                for key in ("AddressLine1", "AddressLine2", "AddressLine3", "AddressLine4")
            ]
            if not any(raw_lines) and isinstance(entry.get("lines"), list):
                raw_lines = entry["lines"]
            lines = [_text(line) for line in raw_lines if _text(line)]
            address = Address(
                address_type=_text(entry.get("AddressType") or entry.get("address_type")),
                lines=lines,
                city=_text(entry.get("City") or entry.get("city")),
                region=_text(entry.get("Region") or entry.get("region")),
                postal_code=_text(entry.get("PostalCode") or entry.get("postal_code")),
                country=_text(entry.get("Country") or entry.get("country")),
                attention_to=_text(entry.get("AttentionTo") or entry.get("attention_to")),
            )
            if address.lines or address.city or address.region or address.postal_code or address.country:
                addresses.append(address)
        else:
            logger.warning("address_entry_unrecognized", entry_type=type(entry).__name__)
    return addresses


# =============================================================================
# Entities
# =============================================================================


def _enum_or_warn(enum_cls, value: Any, field: str, record_id: str):
    member = coerce_enum(enum_cls, value)
    if member is None and value not in (None, ""):
        logger.warning("unknown_enum_value", field=field, value=str(value), record_id=record_id)
    return member


def normalize_contact(raw: dict[str, Any]) -> Optional[Customer]:
    contact_id = _text(raw.get("ContactID"))
    name = _text(raw.get("Name"))
    if not contact_id or not name:
        logger.debug("contact_skipped_missing_identity", contact_id=contact_id)
        return None

    status = _enum_or_warn(ContactStatus, raw.get("ContactStatus"), "ContactStatus", contact_id)

    return Customer(
        xero_contact_id=contact_id,
        name=name,
        email_address=_text(raw.get("EmailAddress")),
        phone_numbers=normalize_phones(raw.get("Phones")),
        addresses=normalize_addresses(raw.get("Addresses")),
        contact_status=status or ContactStatus.ACTIVE,
        is_supplier=bool(raw.get("IsSupplier", False)),
        is_customer=bool(raw.get("IsCustomer", True)),
        contact_groups=_dicts(raw.get("ContactGroups"), "ContactGroups"),
        sales_tracking_categories=_dicts(
            raw.get("SalesTrackingCategories"), "SalesTrackingCategories"
        ),
        purchases_tracking_categories=_dicts(
            raw.get("PurchasesTrackingCategories"), "PurchasesTrackingCategories"
        ),
        contact_number=_text(raw.get("ContactNumber")),
        account_number=_text(raw.get("AccountNumber")),
        tax_number=_text(raw.get("TaxNumber")),
        website=_text(raw.get("Website")),
    )


def normalize_invoice(
    raw: dict[str, Any], stats: Optional[DateParsingStats] = None
) -> Optional[Invoice]:
    invoice_id = _text(raw.get("InvoiceID"))
    if not invoice_id:
        logger.debug("invoice_skipped_missing_identity")
        return None

    context = f"Invoice {raw.get('InvoiceNumber') or invoice_id}"
    raw_date = raw.get("Date")
    invoice_date = parse_xero_date(raw_date, context)

    if stats is not None:
        if raw_date is None or raw_date == "":
            stats.null_dates += 1
        elif invoice_date:
            stats.successful += 1
        else:
            stats.failed += 1

    contact = _mapping(raw.get("Contact"))

    return Invoice(
        xero_invoice_id=invoice_id,
        xero_contact_id=_text(contact.get("ContactID")),
        invoice_number=_text(raw.get("InvoiceNumber")),
        invoice_type=_enum_or_warn(InvoiceType, raw.get("Type"), "Type", invoice_id),
        invoice_status=_enum_or_warn(InvoiceStatus, raw.get("Status"), "Status", invoice_id),
        line_amount_types=_text(raw.get("LineAmountTypes")),
        invoice_date=invoice_date,
        due_date=parse_xero_date(raw.get("DueDate"), context),
        fully_paid_on_date=parse_xero_date(raw.get("FullyPaidOnDate"), context),
        sub_total=parse_amount(raw.get("SubTotal")),
        total_tax=parse_amount(raw.get("TotalTax")),
        total=parse_amount(raw.get("Total")),
        total_discount=parse_amount(raw.get("TotalDiscount")),
        amount_due=parse_amount(raw.get("AmountDue")),
        amount_paid=parse_amount(raw.get("AmountPaid")),
        amount_credited=parse_amount(raw.get("AmountCredited")),
        currency_code=_text(raw.get("CurrencyCode")),
        reference=_text(raw.get("Reference")),
        line_items=_dicts(raw.get("LineItems"), "LineItems"),
    )


def normalize_bank_transaction(raw: dict[str, Any]) -> Optional[BankTransaction]:
    transaction_id = _text(raw.get("BankTransactionID"))
    if not transaction_id:
        logger.debug("bank_transaction_skipped_missing_identity")
        return None

    transaction_type = _enum_or_warn(BankTransactionType, raw.get("Type"), "Type", transaction_id)
    if transaction_type is None:
        return None

    contact = _mapping(raw.get("Contact"))
    account = _mapping(raw.get("BankAccount"))

    return BankTransaction(
        xero_bank_transaction_id=transaction_id,
        xero_contact_id=_text(contact.get("ContactID")),
        xero_bank_account_id=_text(account.get("AccountID") or account.get("BankAccountID")),
        bank_account_name=_text(account.get("Name")),
        bank_account_code=_text(account.get("Code")),
        transaction_type=transaction_type,
        status=_text(raw.get("Status")),
        transaction_date=parse_xero_date(raw.get("Date"), f"BankTransaction {transaction_id}"),
        total_amount=parse_amount(raw.get("Total")),
        sub_total=parse_amount(raw.get("SubTotal")),
        total_tax=parse_amount(raw.get("TotalTax")),
        is_reconciled=bool(raw.get("IsReconciled", False)),
        particulars=_text(raw.get("Particulars")),
        code=_text(raw.get("Code")),
        reference=_text(raw.get("Reference")),
        currency_code=_text(raw.get("CurrencyCode")),
        line_items=_dicts(raw.get("LineItems"), "LineItems"),
    )


def normalize(
    raw: dict[str, Any],
    entity_type: EntityType,
    stats: Optional[DateParsingStats] = None,
):
    """
    Normalize one raw Xero record.

    Args:
        raw: Record as returned by the Xero API
        entity_type: Which collection the record came from
        stats: Optional date parsing counters (updated for invoices)

    Returns:
        Customer, Invoice or BankTransaction; None if the record must be skipped
    """
    entity_type = EntityType(entity_type)
    if entity_type == EntityType.CUSTOMERS:
        return normalize_contact(raw)
    if entity_type == EntityType.INVOICES:
        return normalize_invoice(raw, stats)
    return normalize_bank_transaction(raw)


def normalize_page(
    records: list[dict[str, Any]],
    entity_type: EntityType,
    stats: Optional[DateParsingStats] = None,
) -> list:
    """Normalize a page, dropping records that cannot be identified."""
    normalized = []
    for raw in records:
        if not isinstance(raw, dict):
            logger.warning(
                "record_not_an_object",
                entity_type=str(entity_type),
                value_type=type(raw).__name__,
            )
            continue
        record = normalize(raw, entity_type, stats)
        if record is not None:
            normalized.append(record)
    return normalized
