"""
Pytest configuration and shared fixtures for the Xero CRM sync test suite.

Provides raw Xero payload factories, a scripted fake of the Xero Accounting
API (served through ``httpx.MockTransport``), a fake chat-completions client
and a clean DuckDB storage per test.
"""

import os
import tempfile
import uuid as _uuid
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any, Optional

import httpx
import pytest

# Set testing environment BEFORE importing app
# Use temp path (must not exist - DuckDB creates the file). :memory: causes
# per-connection DB which breaks multi-threaded tests.
_test_db_path = os.path.join(tempfile.gettempdir(), f"crmsync_test_{_uuid.uuid4().hex[:8]}.duckdb")
os.environ["TESTING"] = "true"
os.environ["DB_PATH"] = _test_db_path
os.environ["OPENAI_API_KEY"] = ""

from crmsync.config import Settings
from crmsync.connectors.xero_client import XeroClient
from crmsync.models.records import OAuthConnection
from crmsync.storage import get_storage


# ---------------------------------------------------------------------------
# Raw Xero payload factories
# ---------------------------------------------------------------------------


def make_raw_contact(n: int = 1, **overrides) -> dict:
    """Factory for a Xero Contacts API record."""
    defaults = dict(
        ContactID=f"contact-{n:05d}",
        Name=f"Customer {n}",
        EmailAddress=f"customer{n}@example.com",
        ContactStatus="ACTIVE",
        IsSupplier=False,
        IsCustomer=True,
        Phones=[
            {"PhoneType": "DEFAULT", "PhoneNumber": "555 0100", "PhoneAreaCode": "09"},
            {"PhoneType": "MOBILE", "PhoneNumber": ""},
        ],
        Addresses=[
            {
                "AddressType": "STREET",
                "AddressLine1": f"{n} Queen Street",
                "City": "Auckland",
                "PostalCode": "1010",
                "Country": "NZ",
            },
            {"AddressType": "POBOX"},
        ],
    )
    defaults.update(overrides)
    return defaults


def make_raw_invoice(n: int = 1, **overrides) -> dict:
    """Factory for a Xero Invoices API record."""
    defaults = dict(
        InvoiceID=f"invoice-{n:05d}",
        InvoiceNumber=f"INV-{n:05d}",
        Type="ACCREC",
        Status="AUTHORISED",
        Contact={"ContactID": "contact-00001", "Name": "Customer 1"},
        Date="/Date(1700000000000+0000)/",
        DueDate="2023-12-14T00:00:00",
        SubTotal=100.0,
        TotalTax=15.0,
        Total=115.0,
        AmountDue=115.0,
        AmountPaid=0.0,
        CurrencyCode="NZD",
        LineItems=[
            {
                "Description": "Installed new heat pump and tested operation",
                "Quantity": 1,
                "UnitAmount": 100.0,
                "LineAmount": 100.0,
            }
        ],
    )
    defaults.update(overrides)
    return defaults


def make_raw_bank_transaction(n: int = 1, **overrides) -> dict:
    """Factory for a Xero BankTransactions API record."""
    defaults = dict(
        BankTransactionID=f"banktx-{n:05d}",
        Type="RECEIVE",
        Status="AUTHORISED",
        Contact={"ContactID": "contact-00001", "Name": "Customer 1"},
        BankAccount={"AccountID": "account-1", "Name": "Business Account", "Code": "090"},
        Date="/Date(1700000000000+0000)/",
        Total=230.0,
        SubTotal=200.0,
        TotalTax=30.0,
        IsReconciled=True,
        Reference="Payment",
        CurrencyCode="NZD",
        LineItems=[],
    )
    defaults.update(overrides)
    return defaults


def make_connection(
    user_id: str = "user-1",
    expires_in: timedelta = timedelta(minutes=30),
    refresh_expires_in: timedelta = timedelta(days=59),
    now: Optional[datetime] = None,
    **overrides,
) -> OAuthConnection:
    """Factory for a stored OAuth connection relative to ``now``."""
    now = now or datetime.utcnow()
    defaults = dict(
        user_id=user_id,
        access_token="access-token-1",
        refresh_token="refresh-token-1",
        tenant_id="tenant-1",
        tenant_name="Sparky Electrical Ltd",
        expires_at=now + expires_in,
        refresh_expires_at=now + refresh_expires_in,
        created_at=now - timedelta(days=1),
        updated_at=now - timedelta(days=1),
    )
    defaults.update(overrides)
    return OAuthConnection(**defaults)


# ---------------------------------------------------------------------------
# Fake Xero API
# ---------------------------------------------------------------------------


class FakeXero:
    """
    Scripted stand-in for the Xero Accounting and identity endpoints.

    ``collections`` maps a collection name (``Contacts``, ``Invoices``,
    ``BankTransactions``) to its full record list, which is served in pages
    according to the ``page``/``pageSize`` query parameters. ``responses``
    queues canned responses per (collection, page); queued entries are
    consumed before the real page is served.
    """

    def __init__(self):
        self.collections: dict[str, list[dict]] = {
            "Contacts": [],
            "Invoices": [],
            "BankTransactions": [],
        }
        self.responses: dict[tuple[str, int], list[httpx.Response]] = {}
        self.token_response = httpx.Response(
            200,
            json={
                "access_token": "new-access-token",
                "refresh_token": "new-refresh-token",
                "expires_in": 1800,
                "token_type": "Bearer",
            },
        )
        self.tenants = [{"tenantId": "tenant-1", "tenantName": "Sparky Electrical Ltd"}]
        self.requests: list[httpx.Request] = []

    def queue(self, collection: str, page: int, *responses: httpx.Response) -> None:
        self.responses.setdefault((collection, page), []).extend(responses)

    def page_requests(self, collection: str) -> list[int]:
        return [
            int(r.url.params["page"])
            for r in self.requests
            if r.url.path.endswith(f"/{collection}")
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/connect/token"):
            template = self.token_response
            return httpx.Response(
                template.status_code, content=template.content, headers=template.headers
            )
        if path.endswith("/connections"):
            return httpx.Response(200, json=self.tenants)

        collection = path.rsplit("/", 1)[-1]
        page = int(request.url.params.get("page", 1))
        page_size = int(request.url.params.get("pageSize", 100))

        queued = self.responses.get((collection, page))
        if queued:
            return queued.pop(0)

        records = self.collections.get(collection, [])
        start = (page - 1) * page_size
        return httpx.Response(200, json={collection: records[start : start + page_size]})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class SleepRecorder:
    """Awaitable ``asyncio.sleep`` replacement that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# Fake LLM
# ---------------------------------------------------------------------------


class FakeCompletions:
    def __init__(self, reply):
        self.reply = reply
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        user_message = kwargs["messages"][-1]["content"]
        content = self.reply(user_message) if callable(self.reply) else self.reply
        if isinstance(content, Exception):
            raise content
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
            usage=SimpleNamespace(prompt_tokens=1000, completion_tokens=200, total_tokens=1200),
        )


class FakeLLM:
    """Minimal ``AsyncOpenAI`` lookalike exposing ``chat.completions.create``."""

    def __init__(self, reply=""):
        self.completions = FakeCompletions(reply)
        self.chat = SimpleNamespace(completions=self.completions)

    @property
    def calls(self) -> list[dict[str, Any]]:
        return self.completions.calls


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings with delays removed so tests run instantly."""
    return Settings(
        db_path=_test_db_path,
        sync_page_size=1000,
        sync_page_delay_seconds=0.0,
        xero_rate_limit_initial_delay=3.0,
        xero_rate_limit_max_attempts=5,
        openai_api_key="",
        description_group_delay_seconds=0.0,
        keyword_group_delay_seconds=0.0,
    )


@pytest.fixture
def storage():
    """The process-wide DuckDB storage, emptied before each test."""
    backend = get_storage()
    backend.clear_for_testing()
    return backend


@pytest.fixture
def fake_xero():
    return FakeXero()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def xero_client(fake_xero, sleep_recorder, settings):
    return XeroClient.from_settings(
        settings, transport=fake_xero.transport(), sleep=sleep_recorder
    )


@pytest.fixture
def client(storage, fake_xero, sleep_recorder):
    """TestClient whose Xero calls are served by ``fake_xero``."""
    from fastapi.testclient import TestClient

    from crmsync.main import app
    from crmsync.services import get_xero_client

    async def fake_xero_client():
        xero = XeroClient.from_settings(transport=fake_xero.transport(), sleep=sleep_recorder)
        try:
            yield xero
        finally:
            await xero.aclose()

    app.dependency_overrides[get_xero_client] = fake_xero_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    from crmsync.auth.jwt import create_access_token

    return {"Authorization": f"Bearer {create_access_token({'sub': 'user-1'})}"}
