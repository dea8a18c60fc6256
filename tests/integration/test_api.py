"""
Integration tests for the Xero CRM sync API.

Requests go through the real FastAPI app, DuckDB storage and JWT auth; only
the Xero endpoints (``FakeXero``) and the LLM (``FakeLLM``) are faked.

Endpoints tested:
- System: health, data clear
- Auth: authorize, callback
- Connection: status, disconnect
- Sync: chunk, cursors, reset (including error mapping)
- Enrichment: batch
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from crmsync.auth.jwt import create_state_token
from crmsync.connectors.normalizer import normalize_page
from crmsync.engine.enrichment import EnrichmentPipeline
from crmsync.main import app
from crmsync.models.enums import EntityType
from crmsync.services import get_enrichment_pipeline
from crmsync.storage import StorageError
from tests.conftest import FakeLLM, make_connection, make_raw_contact, make_raw_invoice


# ============================================================================
# System Endpoints
# ============================================================================


def test_root_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Request-ID" in response.headers


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_system_health_reports_counts(client: TestClient, storage):
    storage.upsert_records(
        EntityType.CUSTOMERS, normalize_page([make_raw_contact(1)], EntityType.CUSTOMERS)
    )

    response = client.get("/api/v1/system/health")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "healthy"
    assert data["record_counts"]["customers"] == 1
    assert data["record_counts"]["invoices"] == 0


def test_clear_synced_data(client: TestClient, auth_headers: dict, storage):
    storage.upsert_records(
        EntityType.INVOICES, normalize_page([make_raw_invoice(1)], EntityType.INVOICES)
    )

    response = client.delete("/api/v1/system/data", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["deleted"]["invoices"] == 1
    assert storage.count_records(EntityType.INVOICES) == 0


# ============================================================================
# Authentication
# ============================================================================


@pytest.mark.parametrize(
    "method,endpoint",
    [
        ("POST", "/api/v1/sync/chunk"),
        ("GET", "/api/v1/sync/cursors"),
        ("POST", "/api/v1/sync/reset"),
        ("POST", "/api/v1/enrichment/batch"),
        ("GET", "/api/v1/connection/status"),
        ("DELETE", "/api/v1/system/data"),
    ],
)
def test_endpoints_require_auth(client: TestClient, method: str, endpoint: str):
    response = client.request(method, endpoint, json={})
    assert response.status_code == 401


def test_invalid_token_rejected(client: TestClient):
    response = client.get(
        "/api/v1/sync/cursors", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401


def test_authorize_returns_consent_url(client: TestClient):
    response = client.get("/api/v1/auth/authorize", params={"user_id": "user-9"})

    assert response.status_code == 200
    data = response.json()
    query = parse_qs(urlparse(data["authorization_url"]).query)
    assert query["state"] == [data["state"]]


def test_callback_connects_and_issues_jwt(client: TestClient, storage):
    state = create_state_token("user-9")

    response = client.get("/api/v1/auth/callback", params={"code": "code-1", "state": state})

    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == "user-9"
    assert data["tenant_id"] == "tenant-1"
    assert storage.get_connection("user-9").access_token == "new-access-token"

    status = client.get(
        "/api/v1/connection/status",
        headers={"Authorization": f"Bearer {data['access_token']}"},
    )
    assert status.json()["connected"] is True


def test_callback_rejects_forged_state(client: TestClient):
    response = client.get("/api/v1/auth/callback", params={"code": "code-1", "state": "forged"})
    assert response.status_code == 400


def test_callback_maps_failed_exchange_to_401(client: TestClient, fake_xero):
    fake_xero.token_response = httpx.Response(400, json={"error": "invalid_grant"})

    response = client.get(
        "/api/v1/auth/callback",
        params={"code": "code-1", "state": create_state_token("user-9")},
    )

    assert response.status_code == 401
    assert response.json()["success"] is False


# ============================================================================
# Connection
# ============================================================================


def test_connection_status_and_disconnect(client: TestClient, auth_headers: dict, storage):
    storage.save_connection(make_connection())

    status = client.get("/api/v1/connection/status", headers=auth_headers).json()
    assert status["connected"] is True
    assert status["tenant_name"] == "Sparky Electrical Ltd"

    response = client.post("/api/v1/connection/disconnect", headers=auth_headers)
    assert response.json()["success"] is True
    assert storage.get_connection("user-1") is None


# ============================================================================
# Sync
# ============================================================================


class TestSyncChunk:
    def test_chunk_with_stored_connection(self, client, auth_headers, storage, fake_xero):
        storage.save_connection(make_connection())
        fake_xero.collections["Contacts"] = [make_raw_contact(i) for i in range(1, 4)]
        fake_xero.collections["Invoices"] = [make_raw_invoice(1)]

        response = client.post("/api/v1/sync/chunk", json={}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["totalCustomers"] == 3
        assert body["totalInvoices"] == 1
        assert body["hasMore"] is False
        assert body["nextStartPage"] is None
        assert body["dateParsingStats"]["successful"] == 1
        assert fake_xero.requests[0].headers["Authorization"] == "Bearer access-token-1"
        assert storage.count_records(EntityType.CUSTOMERS) == 3

    def test_chunk_with_explicit_credentials(self, client, auth_headers, fake_xero):
        payload = {"accessToken": "browser-token", "tenantId": "tenant-7", "maxCustomerPages": 1}

        response = client.post("/api/v1/sync/chunk", json=payload, headers=auth_headers)

        assert response.status_code == 200
        request = fake_xero.requests[0]
        assert request.headers["Authorization"] == "Bearer browser-token"
        assert request.headers["Xero-tenant-id"] == "tenant-7"

    def test_partial_chunk_returns_continuation(self, client, auth_headers, storage, fake_xero):
        storage.save_connection(make_connection())
        fake_xero.queue("Invoices", 1, httpx.Response(500, text="boom"))

        body = client.post("/api/v1/sync/chunk", json={}, headers=auth_headers).json()

        assert body["hasMore"] is True
        assert body["nextInvoicePage"] == 1
        assert body["nextStartPage"] is None

    def test_invalid_page_bounds_rejected(self, client, auth_headers):
        response = client.post(
            "/api/v1/sync/chunk", json={"maxCustomerPages": 0}, headers=auth_headers
        )
        assert response.status_code == 422

    def test_not_connected_is_401(self, client, auth_headers):
        response = client.post("/api/v1/sync/chunk", json={}, headers=auth_headers)

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert "reconnect" in body["error"]

    def test_expired_refresh_token_is_401(self, client, auth_headers, storage):
        storage.save_connection(make_connection(refresh_expires_in=timedelta(days=-1)))

        response = client.post("/api/v1/sync/chunk", json={}, headers=auth_headers)

        assert response.status_code == 401

    def test_persistent_rate_limit_is_429(self, client, auth_headers, storage, fake_xero):
        storage.save_connection(make_connection())
        fake_xero.queue("Contacts", 1, *[httpx.Response(429) for _ in range(5)])

        response = client.post("/api/v1/sync/chunk", json={}, headers=auth_headers)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "48"
        assert response.json()["success"] is False

    def test_storage_failure_is_500(self, client, auth_headers, storage, fake_xero, monkeypatch):
        storage.save_connection(make_connection())
        fake_xero.collections["Contacts"] = [make_raw_contact(1)]

        def broken_upsert(entity_type, records):
            raise StorageError("disk full")

        monkeypatch.setattr(storage, "upsert_records", broken_upsert)

        response = client.post("/api/v1/sync/chunk", json={}, headers=auth_headers)

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "disk full"}


def test_cursors_and_reset(client: TestClient, auth_headers: dict, storage, fake_xero):
    storage.save_connection(make_connection())
    fake_xero.collections["Contacts"] = [make_raw_contact(1)]
    client.post("/api/v1/sync/chunk", json={}, headers=auth_headers)

    cursors = client.get("/api/v1/sync/cursors", headers=auth_headers).json()
    assert sorted(c["entity_type"] for c in cursors) == ["bank_transactions", "customers", "invoices"]
    assert all(c["has_more"] is False for c in cursors)

    reset = client.post("/api/v1/sync/reset", headers=auth_headers).json()
    assert reset == {"success": True, "cleared": 3}
    assert client.get("/api/v1/sync/cursors", headers=auth_headers).json() == []


# ============================================================================
# Enrichment
# ============================================================================


class TestEnrichmentBatch:
    def test_heuristic_batch(self, client, auth_headers, storage):
        storage.upsert_records(
            EntityType.INVOICES,
            normalize_page([make_raw_invoice(i) for i in range(1, 4)], EntityType.INVOICES),
        )

        response = client.post(
            "/api/v1/enrichment/batch",
            json={"cursor": 0, "batchSize": 2, "strategy": "heuristic"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 2
        assert body["hasMore"] is True
        assert body["remaining"] == 1
        assert body["nextCursor"] > 0
        assert body["filterStats"]["relevant"] == 2

    def test_ai_batch_with_injected_llm(self, client, auth_headers, storage):
        storage.upsert_records(
            EntityType.INVOICES, normalize_page([make_raw_invoice(1)], EntityType.INVOICES)
        )
        invoice_id = storage.read_records(EntityType.INVOICES)[0]["id"]
        storage.update_work_descriptions({invoice_id: "Replaced heat pump filter and tested"})
        llm = FakeLLM('[{"index": 0, "keywords": ["heat pump", "filter"]}]')
        app.dependency_overrides[get_enrichment_pipeline] = lambda: EnrichmentPipeline(storage, llm=llm)

        response = client.post("/api/v1/enrichment/batch", json={}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["totalKeywords"] == 2
        assert body["tokenUsage"]["total_tokens"] == 1200
        assert storage.read_records(EntityType.INVOICES)[0]["service_keywords"] == [
            "heat pump",
            "filter",
        ]

    def test_ai_batch_without_api_key_is_503(self, client, auth_headers, storage):
        storage.upsert_records(
            EntityType.INVOICES, normalize_page([make_raw_invoice(1)], EntityType.INVOICES)
        )

        response = client.post("/api/v1/enrichment/batch", json={}, headers=auth_headers)

        assert response.status_code == 503
        assert response.json()["success"] is False

    def test_nothing_to_enrich(self, client, auth_headers):
        body = client.post("/api/v1/enrichment/batch", json={}, headers=auth_headers).json()
        assert body["processed"] == 0
        assert body["hasMore"] is False
