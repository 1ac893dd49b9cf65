"""
Tests for the REST endpoints.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from ap_recon.api import app, get_store
from ap_recon.exceptions import (
    RecordNotFoundError,
    RecordStoreError,
    ExtractionRefusalError,
    MaterializationError,
)
from ap_recon.schemas.records import Table
from ap_recon.schemas.output import PoMatchingResult, IdList


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def matched_result():
    return PoMatchingResult(
        invoice_id="recInv1",
        success=True,
        headers=IdList(ids=["recH1"], count=1),
        details=IdList(ids=["recD1", "recD2"], count=2),
        balance=0.0,
    )


class TestMatchInvoiceEndpoint:

    def test_success(self, client, store, matched_result):
        with patch("ap_recon.api.match_invoice", new=AsyncMock(return_value=matched_result)) as mock_match:
            response = client.post("/match-invoice", json={"invoiceId": "recInv1"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["headers"] == {"ids": ["recH1"], "count": 1}
        assert body["details"] == {"ids": ["recD1", "recD2"], "count": 2}
        assert "error" not in body
        mock_match.assert_awaited_once_with("recInv1", store, force=False)

    def test_force_flag(self, client, store, matched_result):
        with patch("ap_recon.api.match_invoice", new=AsyncMock(return_value=matched_result)) as mock_match:
            client.post("/match-invoice", json={"invoiceId": "recInv1", "force": True})

        mock_match.assert_awaited_once_with("recInv1", store, force=True)

    def test_llm_note_is_returned(self, client, matched_result):
        matched_result.error = "Line 3 has no receipt"
        with patch("ap_recon.api.match_invoice", new=AsyncMock(return_value=matched_result)):
            response = client.post("/match-invoice", json={"invoiceId": "recInv1"})

        assert response.json()["error"] == "Line 3 has no receipt"

    def test_missing_invoice_id(self, client):
        response = client.post("/match-invoice", json={})
        assert response.status_code == 422

    @pytest.mark.parametrize("error,status,code", [
        (RecordNotFoundError(Table.INVOICES, "recInv1"), 404, "INVOICE_NOT_FOUND"),
        (ExtractionRefusalError("Model refused to generate response: no"), 502, "MATCH_REFUSED"),
        (MaterializationError("Failed to create details", header_ids=["recH1"]), 502, "MATCH_STORE_ERROR"),
        (RecordStoreError("timeout", table=Table.INVOICES), 502, "MATCH_STORE_ERROR"),
    ])
    def test_errors(self, client, error, status, code):
        with patch("ap_recon.api.match_invoice", new=AsyncMock(side_effect=error)):
            response = client.post("/match-invoice", json={"invoiceId": "recInv1"})

        assert response.status_code == status
        body = response.json()
        assert body["success"] is False
        assert body["errorCode"] == code
        assert body["headers"] == {"ids": [], "count": 0}
        assert body["error"]


class TestStatusEndpoints:

    def test_file_status(self, client, store):
        store.add(Table.FILES, "recFile1", {
            "FileName": "invoice.pdf",
            "Status": "Processing",
            "Processing-Status": "MATCHING",
            "Invoices": ["recInv1"],
        })
        store.add(Table.INVOICES, "recInv1", {"Status": "Pending", "Invoice-Number": "INV-1"})

        response = client.get("/files/recFile1/status")

        assert response.status_code == 200
        body = response.json()
        assert body["ui_status"] == "connecting"
        assert body["progress"] == 90
        assert body["is_terminal"] is False
        assert body["invoices"][0]["invoice_number"] == "INV-1"

    def test_file_status_not_found(self, client):
        assert client.get("/files/recGone/status").status_code == 404

    def test_file_status_store_failure(self, client, store):
        store.failures[("get", Table.FILES)] = RecordStoreError("timeout", table=Table.FILES)

        response = client.get("/files/recFile1/status")

        assert response.status_code == 502
        assert response.json()["errorCode"] == "POLLING_ERROR"

    def test_invoice_status(self, client, store):
        store.add(Table.INVOICES, "recInv1", {
            "Status": "Matched",
            "Balance": 12.5,
            "Warnings": "[]",
        })

        response = client.get("/invoices/recInv1/status")

        assert response.status_code == 200
        body = response.json()
        assert body["ui_status"] == "success-with-caveats"
        assert body["variance"] == {"amount": "$12.50", "direction": "over"}
        assert body["issues"][0]["line_reference"] == "Invoice total"


class TestDuplicateEndpoint:

    def test_duplicate_found(self, client, store):
        file_hash = "ab" * 32
        store.add(Table.FILES, "recFile1", {"FileName": "invoice.pdf", "FileHash": file_hash})

        response = client.post("/files/check-duplicate", json={"fileHash": file_hash.upper()})

        assert response.status_code == 200
        body = response.json()
        assert body["is_duplicate"] is True
        assert body["record_id"] == "recFile1"

    def test_excluding_itself(self, client, store):
        file_hash = "ab" * 32
        store.add(Table.FILES, "recFile1", {"FileName": "invoice.pdf", "FileHash": file_hash})

        response = client.post("/files/check-duplicate", json={"fileHash": file_hash, "excludeRecordId": "recFile1"})

        assert response.json()["is_duplicate"] is False

    def test_malformed_hash(self, client):
        response = client.post("/files/check-duplicate", json={"fileHash": "not-a-hash"})
        assert response.status_code == 400


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_config_is_sanitized(client):
    body = client.get("/config").json()
    assert "llm_provider" in body
    assert not any("key" in name.lower() for name in body)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
