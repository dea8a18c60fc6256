"""
Unit tests for Xero record normalization.

Covers date parsing in every representation Xero produces, phone/address
canonicalization, identity filtering and date parsing statistics.
"""

from datetime import date, datetime

import pytest

from crmsync.connectors.normalizer import (
    normalize,
    normalize_addresses,
    normalize_bank_transaction,
    normalize_contact,
    normalize_invoice,
    normalize_page,
    normalize_phones,
    parse_amount,
    parse_xero_date,
)
from crmsync.models.enums import (
    BankTransactionType,
    ContactStatus,
    EntityType,
    InvoiceStatus,
    InvoiceType,
)
from crmsync.models.records import Address, BankTransaction, Customer, Invoice, PhoneNumber
from crmsync.models.sync import DateParsingStats
from tests.conftest import make_raw_bank_transaction, make_raw_contact, make_raw_invoice


# =============================================================================
# parse_xero_date
# =============================================================================


class TestParseXeroDate:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("/Date(1700000000000+0000)/", "2023-11-14"),
            ("/Date(1700000000000)/", "2023-11-14"),
            ("/Date(1700000000000-0500)/", "2023-11-14"),
            ("/Date(0)/", "1970-01-01"),
            ("2024-03-05T00:00:00", "2024-03-05"),
            ("2024-03-05T10:15:00Z", "2024-03-05"),
            ("2024-03-05", "2024-03-05"),
            (1700000000000, "2023-11-14"),
            (date(2024, 1, 2), "2024-01-02"),
            (datetime(2024, 1, 2, 23, 59), "2024-01-02"),
        ],
    )
    def test_supported_representations(self, value, expected):
        assert parse_xero_date(value) == expected

    def test_iso_with_unparsable_time_falls_back_to_date_part(self):
        assert parse_xero_date("2024-03-05Tgarbage") == "2024-03-05"

    @pytest.mark.parametrize("value", [None, ""])
    def test_absent_values_are_none(self, value):
        assert parse_xero_date(value) is None

    @pytest.mark.parametrize(
        "value",
        ["not a date", "/Date(abc)/", "2024-13-45", "31/12/2024", True, ["2024-01-01"]],
    )
    def test_malformed_values_are_none(self, value):
        assert parse_xero_date(value, context="Invoice INV-1") is None


def test_parse_amount_coerces_and_defaults():
    assert parse_amount(12) == 12.0
    assert parse_amount("45.50") == 45.5
    assert parse_amount(None) == 0.0
    assert parse_amount("n/a") == 0.0
    assert parse_amount(True) == 0.0


@pytest.mark.parametrize("value", ["NaN", "Infinity", "-inf", float("nan"), float("inf"), "1e400"])
def test_parse_amount_rejects_non_finite(value):
    assert parse_amount(value) == 0.0


# =============================================================================
# Phones and addresses
# =============================================================================


class TestNormalizePhones:
    def test_none_is_empty(self):
        assert normalize_phones(None) == []

    def test_bare_string(self):
        assert normalize_phones("021 555 1234") == [PhoneNumber(number="021 555 1234")]

    def test_single_object(self):
        phones = normalize_phones(
            {"PhoneType": "MOBILE", "PhoneNumber": "555 1234", "PhoneAreaCode": "021"}
        )
        assert phones == [PhoneNumber(phone_type="MOBILE", number="555 1234", area_code="021")]

    def test_list_drops_empty_slots(self):
        phones = normalize_phones(
            [
                {"PhoneType": "DEFAULT", "PhoneNumber": "555 0100"},
                {"PhoneType": "FAX", "PhoneNumber": ""},
                {"PhoneType": "DDI"},
                "  ",
            ]
        )
        assert [p.number for p in phones] == ["555 0100"]

    def test_unrecognized_entries_are_ignored(self):
        assert normalize_phones([42, None]) == []


class TestNormalizeAddresses:
    def test_bare_string_becomes_line(self):
        assert normalize_addresses("1 Queen Street") == [Address(lines=["1 Queen Street"])]

    def test_xero_object(self):
        addresses = normalize_addresses(
            {
                "AddressType": "STREET",
                "AddressLine1": "1 Queen Street",
                "AddressLine2": "",
                "AddressLine3": "Level 2",
                "City": "Auckland",
                "PostalCode": "1010",
            }
        )
        assert len(addresses) == 1
        assert addresses[0].lines == ["1 Queen Street", "Level 2"]
        assert addresses[0].city == "Auckland"
        assert addresses[0].address_type == "STREET"

    def test_empty_objects_are_dropped(self):
        assert normalize_addresses([{"AddressType": "POBOX"}, {"AddressType": "STREET"}]) == []

    def test_canonical_shape_passes_through(self):
        address = Address(lines=["2 Main Road"], city="Hamilton")
        assert normalize_addresses([address]) == [address]
        assert normalize_addresses({"lines": ["2 Main Road"], "city": "Hamilton"}) == [address]


# =============================================================================
# Entities
# =============================================================================


class TestNormalizeContact:
    def test_maps_fields(self):
        customer = normalize_contact(make_raw_contact(7))
        assert isinstance(customer, Customer)
        assert customer.xero_contact_id == "contact-00007"
        assert customer.name == "Customer 7"
        assert customer.contact_status == ContactStatus.ACTIVE
        assert [p.number for p in customer.phone_numbers] == ["555 0100"]
        assert len(customer.addresses) == 1

    @pytest.mark.parametrize("missing", ["ContactID", "Name"])
    def test_requires_identity(self, missing):
        raw = make_raw_contact()
        raw[missing] = None
        assert normalize_contact(raw) is None

    def test_unknown_status_defaults_to_active(self):
        customer = normalize_contact(make_raw_contact(ContactStatus="SOMETHING_NEW"))
        assert customer.contact_status == ContactStatus.ACTIVE


class TestNormalizeInvoice:
    def test_maps_fields(self):
        invoice = normalize_invoice(make_raw_invoice(3))
        assert isinstance(invoice, Invoice)
        assert invoice.xero_invoice_id == "invoice-00003"
        assert invoice.xero_contact_id == "contact-00001"
        assert invoice.invoice_type == InvoiceType.ACCREC
        assert invoice.invoice_status == InvoiceStatus.AUTHORISED
        assert invoice.invoice_date == "2023-11-14"
        assert invoice.due_date == "2023-12-14"
        assert invoice.total == 115.0
        assert invoice.work_description is None
        assert invoice.service_keywords is None

    def test_requires_invoice_id(self):
        assert normalize_invoice(make_raw_invoice(InvoiceID="")) is None

    def test_malformed_date_is_stored_as_null(self):
        invoice = normalize_invoice(make_raw_invoice(Date="yesterday"))
        assert invoice is not None
        assert invoice.invoice_date is None

    def test_unknown_status_is_null(self):
        invoice = normalize_invoice(make_raw_invoice(Status="ARCHIVED_V2"))
        assert invoice.invoice_status is None

    def test_date_stats(self):
        stats = DateParsingStats()
        normalize_invoice(make_raw_invoice(1), stats)
        normalize_invoice(make_raw_invoice(2, Date="2024-02-30"), stats)
        normalize_invoice(make_raw_invoice(3, Date=None), stats)
        normalize_invoice(make_raw_invoice(4, Date="2024-02-01T00:00:00"), stats)
        assert (stats.successful, stats.failed, stats.null_dates) == (2, 1, 1)


class TestNormalizeBankTransaction:
    def test_maps_fields(self):
        transaction = normalize_bank_transaction(make_raw_bank_transaction(5))
        assert isinstance(transaction, BankTransaction)
        assert transaction.transaction_type == BankTransactionType.RECEIVE
        assert transaction.xero_bank_account_id == "account-1"
        assert transaction.bank_account_name == "Business Account"
        assert transaction.transaction_date == "2023-11-14"
        assert transaction.total_amount == 230.0
        assert transaction.is_reconciled is True

    def test_transfer_types_are_skipped(self):
        assert normalize_bank_transaction(make_raw_bank_transaction(Type="RECEIVE-TRANSFER")) is None

    def test_requires_id(self):
        assert normalize_bank_transaction(make_raw_bank_transaction(BankTransactionID=None)) is None


def test_normalize_dispatches_on_entity_type():
    assert isinstance(normalize(make_raw_contact(), EntityType.CUSTOMERS), Customer)
    assert isinstance(normalize(make_raw_invoice(), "invoices"), Invoice)
    assert isinstance(
        normalize(make_raw_bank_transaction(), EntityType.BANK_TRANSACTIONS), BankTransaction
    )


def test_normalize_page_drops_unidentifiable_records():
    stats = DateParsingStats()
    records = [make_raw_invoice(1), make_raw_invoice(2, InvoiceID=None), make_raw_invoice(3)]
    normalized = normalize_page(records, EntityType.INVOICES, stats)
    assert [i.xero_invoice_id for i in normalized] == ["invoice-00001", "invoice-00003"]
    assert stats.successful == 2


class TestMalformedNestedValues:
    def test_non_object_line_items_are_dropped(self):
        invoice = normalize_invoice(
            make_raw_invoice(
                1, LineItems=["Labour", {"Description": "Replaced fan motor", "LineAmount": 90}, 7]
            )
        )
        assert invoice.line_items == [{"Description": "Replaced fan motor", "LineAmount": 90}]

    def test_non_object_contact_groups_and_tracking_categories(self):
        customer = normalize_contact(
            make_raw_contact(
                1,
                ContactGroups=["VIP", {"Name": "Commercial"}],
                SalesTrackingCategories="Region",
                PurchasesTrackingCategories=[None],
            )
        )
        assert customer.contact_groups == [{"Name": "Commercial"}]
        assert customer.sales_tracking_categories == []
        assert customer.purchases_tracking_categories == []

    def test_non_object_contact_and_bank_account(self):
        invoice = normalize_invoice(make_raw_invoice(1, Contact="Customer 1"))
        transaction = normalize_bank_transaction(
            make_raw_bank_transaction(1, Contact=["contact-1"], BankAccount="090")
        )
        assert invoice.xero_contact_id is None
        assert transaction.xero_contact_id is None
        assert transaction.xero_bank_account_id is None

    def test_one_bad_record_does_not_abort_the_page(self):
        records = [
            make_raw_invoice(1),
            make_raw_invoice(2, LineItems=["Labour"], Total="NaN"),
            "not-a-record",
            make_raw_invoice(3),
        ]
        normalized = normalize_page(records, EntityType.INVOICES)

        assert [i.xero_invoice_id for i in normalized] == [
            "invoice-00001",
            "invoice-00002",
            "invoice-00003",
        ]
        assert normalized[1].line_items == []
        assert normalized[1].total == 0.0
