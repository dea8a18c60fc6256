"""
Property-based tests using Hypothesis.

These verify invariants of the sync pipeline across generated inputs:
- Date parsing never raises and always yields ISO calendar dates or None
- Chunked paging terminates and imports every record exactly once
- Upserts converge regardless of how often a record is delivered
"""

import asyncio
import math
import re
from datetime import datetime, timedelta, timezone

import hypothesis.strategies as st
from hypothesis import HealthCheck, given, settings

from crmsync.config import Settings
from crmsync.connectors.normalizer import normalize_addresses, normalize_phones, normalize_page, parse_xero_date
from crmsync.connectors.sync_orchestrator import SyncOrchestrator
from crmsync.connectors.xero_client import XeroClient
from crmsync.engine.heuristics import MAX_KEYWORDS, clean_keywords, extract_work_description_heuristic
from crmsync.models.enums import EntityType
from crmsync.models.sync import SyncChunkRequest
from crmsync.storage import get_storage
from tests.conftest import FakeXero, SleepRecorder, make_raw_contact

ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

json_scalars = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(),
    st.floats(allow_nan=True, allow_infinity=True),
    st.text(max_size=40),
)


# =============================================================================
# Normalization
# =============================================================================


@given(value=st.one_of(json_scalars, st.lists(st.text(max_size=5), max_size=3)))
@settings(max_examples=300)
def test_prop_parse_xero_date_never_raises(value):
    """Any input yields None or a YYYY-MM-DD string."""
    result = parse_xero_date(value)
    assert result is None or ISO_DATE.match(result)


@given(millis=st.integers(min_value=-2_000_000_000_000, max_value=4_000_000_000_000))
@settings(max_examples=200)
def test_prop_xero_date_token_matches_epoch(millis):
    """/Date(ms+zzzz)/ always resolves to the UTC calendar date of ``ms``."""
    expected = (datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=millis)).date()
    assert parse_xero_date(f"/Date({millis}+0000)/") == expected.isoformat()


phone_entries = st.one_of(
    st.none(),
    st.text(max_size=20),
    st.fixed_dictionaries(
        {},
        optional={
            "PhoneType": st.sampled_from(["DEFAULT", "MOBILE", "FAX", "DDI"]),
            "PhoneNumber": st.text(max_size=15),
            "PhoneAreaCode": st.text(max_size=4),
        },
    ),
)


@given(raw=st.one_of(phone_entries, st.lists(phone_entries, max_size=6)))
@settings(max_examples=200)
def test_prop_phones_are_canonical(raw):
    """Normalized phones always carry a non-empty, trimmed number."""
    for phone in normalize_phones(raw):
        assert phone.number
        assert phone.number == phone.number.strip()


@given(
    raw=st.lists(
        st.fixed_dictionaries(
            {},
            optional={
                "AddressLine1": st.text(max_size=20),
                "City": st.text(max_size=10),
                "Country": st.text(max_size=5),
            },
        ),
        max_size=5,
    )
)
@settings(max_examples=200)
def test_prop_addresses_never_empty(raw):
    for address in normalize_addresses(raw):
        assert address.lines or address.city or address.country


@given(raw=st.one_of(json_scalars, st.lists(st.one_of(st.text(max_size=15), st.integers()), max_size=20)))
@settings(max_examples=200)
def test_prop_clean_keywords_bounded(raw):
    keywords = clean_keywords(raw)
    assert len(keywords) <= MAX_KEYWORDS
    assert all(k and k == k.strip() for k in keywords)


@given(
    items=st.lists(
        st.fixed_dictionaries(
            {"Description": st.text(max_size=80)},
            optional={"LineAmount": st.floats(min_value=0, max_value=1e6)},
        ),
        max_size=6,
    )
)
@settings(max_examples=200)
def test_prop_heuristic_picks_an_existing_description(items):
    """The heuristic never invents text: it returns '' or one of the inputs."""
    result = extract_work_description_heuristic(items)
    assert result == "" or result in {item["Description"].strip() for item in items}


# =============================================================================
# Chunked sync
# =============================================================================


@given(
    record_count=st.integers(min_value=0, max_value=25),
    page_size=st.integers(min_value=1, max_value=7),
    max_pages=st.integers(min_value=1, max_value=4),
)
@settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
def test_prop_chunked_sync_terminates_with_every_record(record_count, page_size, max_pages):
    """
    Following continuation pages always terminates, and the chunk count is
    bounded by the number of pages (including the final empty one).
    """
    storage = get_storage()
    storage.clear_for_testing()

    fake = FakeXero()
    fake.collections["Contacts"] = [make_raw_contact(i) for i in range(1, record_count + 1)]
    config = Settings(sync_page_size=page_size, sync_page_delay_seconds=0.0)
    client = XeroClient.from_settings(config, transport=fake.transport(), sleep=SleepRecorder())
    orchestrator = SyncOrchestrator(client, storage, settings=config, sleep=SleepRecorder())

    pages_needed = math.ceil(record_count / page_size) + 1
    chunk_limit = math.ceil(pages_needed / max_pages)

    async def sync_all():
        total, chunks, start = 0, 0, 1
        async with client:
            while True:
                response = await orchestrator.run_chunk(
                    "prop-user",
                    SyncChunkRequest(
                        access_token="token",
                        tenant_id="tenant-1",
                        start_customer_page=start,
                        max_customer_pages=max_pages,
                    ),
                )
                chunks += 1
                total += response.total_customers
                assert chunks <= chunk_limit
                if response.next_start_page is None:
                    return total, chunks
                assert response.next_start_page > start
                start = response.next_start_page

    total, chunks = asyncio.run(sync_all())

    assert total == record_count
    assert chunks == chunk_limit
    assert storage.count_records(EntityType.CUSTOMERS) == record_count


@given(
    deliveries=st.lists(st.integers(min_value=1, max_value=15), min_size=1, max_size=40),
)
@settings(max_examples=40, deadline=None)
def test_prop_upsert_converges(deliveries):
    """Delivering records any number of times yields one row per Xero id."""
    storage = get_storage()
    storage.clear_for_testing()

    for chunk_start in range(0, len(deliveries), 7):
        raws = [make_raw_contact(n) for n in deliveries[chunk_start : chunk_start + 7]]
        storage.upsert_records(EntityType.CUSTOMERS, normalize_page(raws, EntityType.CUSTOMERS))

    assert storage.count_records(EntityType.CUSTOMERS) == len(set(deliveries))
