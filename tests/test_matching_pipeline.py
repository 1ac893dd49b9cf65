"""
End-to-end tests for the PO matching run: graph, store writes and errors.
"""

import json
from unittest.mock import AsyncMock

import pytest

from ap_recon.main import match_invoice, match_invoices_batch, format_output_json
from ap_recon.exceptions import (
    RecordNotFoundError,
    RecordStoreError,
    ExtractionRefusalError,
    ExtractionTransportError,
    MaterializationError,
)
from ap_recon.schemas.records import Table
from ap_recon.schemas.matching import PO_MATCHING_JSON_SCHEMA, POMatchingResponse, MATCHING_SCHEMA_NAME


INVOICE_ID = "recInv1"


@pytest.fixture
def seeded_store(store, invoice_fields):
    store.add(Table.INVOICES, INVOICE_ID, invoice_fields)
    return store


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_match_invoice(self, seeded_store, mock_extractor):
        result = await match_invoice(INVOICE_ID, seeded_store, extractor=mock_extractor)

        assert result.success is True
        assert result.skipped is False
        assert result.headers.count == 1
        assert result.details.count == 2
        assert result.balance == 0.0
        assert result.warnings == []
        assert result.error is None

        invoice = seeded_store.fields(Table.INVOICES, INVOICE_ID)
        assert invoice["Status"] == "Matched"
        assert invoice["POInvoiceHeader"] == result.headers.ids
        assert invoice["Balance"] == 0.0
        assert json.loads(invoice["Warnings"]) == []
        assert "ErrorCode" not in invoice
        assert "Error-Description" not in invoice

        for detail_id in result.details.ids:
            assert seeded_store.fields(Table.DETAILS, detail_id)["POInvoiceHeaders"] == result.headers.ids

    @pytest.mark.asyncio
    async def test_extractor_receives_prompt_and_schema(self, seeded_store, mock_extractor):
        await match_invoice(INVOICE_ID, seeded_store, extractor=mock_extractor)

        args, kwargs = mock_extractor.extract.call_args
        prompt, schema, response_model, schema_name = args
        assert "INV-2025-001" in prompt
        assert "WIDGET-100" in prompt
        assert "MatchPayloadJSON" not in prompt
        assert schema == PO_MATCHING_JSON_SCHEMA
        assert response_model is POMatchingResponse
        assert schema_name == MATCHING_SCHEMA_NAME
        assert kwargs["strict"] is True

    @pytest.mark.asyncio
    async def test_operator_id_is_stamped(self, seeded_store, mock_extractor):
        result = await match_invoice(INVOICE_ID, seeded_store, extractor=mock_extractor, operator_id="ap-clerk-7")

        header = seeded_store.fields(Table.HEADERS, result.headers.ids[0])
        assert header["User-Id"] == "ap-clerk-7"

    @pytest.mark.asyncio
    async def test_llm_note_and_unmatched_line(self, seeded_store, llm_response_data):
        llm_response_data["headers"][0]["details"].append(
            [{"match_object": 7, "invoice_price": 10.0, "invoice_quantity": 2, "invoice_amount": 20.0}]
        )
        llm_response_data["error"] = "Line 3 (SERVICE-FEE) has no matching receipt."
        extractor = AsyncMock()
        extractor.extract = AsyncMock(return_value=POMatchingResponse.model_validate(llm_response_data))

        result = await match_invoice(INVOICE_ID, seeded_store, extractor=extractor)

        assert result.details.count == 3
        assert result.error == "Line 3 (SERVICE-FEE) has no matching receipt."
        assert [w["Type"] for w in result.warnings] == ["missing_receipts", "ai_matching"]
        assert result.warnings[0]["ItemDetails"][0]["item_name"] == "Receipt #7 (unresolved)"
        # The unmatched line nets out against its own line amount
        assert result.balance == -20.0

        invoice = seeded_store.fields(Table.INVOICES, INVOICE_ID)
        assert invoice["Status"] == "Matched"
        assert invoice["Error-Description"] == "Line 3 (SERVICE-FEE) has no matching receipt."

    @pytest.mark.asyncio
    async def test_invalid_payload_still_matches(self, store, invoice_fields, mock_extractor):
        store.add(Table.INVOICES, INVOICE_ID, dict(invoice_fields, MatchPayloadJSON="{not json"))

        result = await match_invoice(INVOICE_ID, store, extractor=mock_extractor)

        prompt = mock_extractor.extract.call_args.args[0]
        assert "## PO MATCH CANDIDATES\n{}" in prompt
        assert result.success is True
        assert result.details.count == 2
        for detail_id in result.details.ids:
            assert "Item-No" not in store.fields(Table.DETAILS, detail_id)
        assert result.warnings[0]["Type"] == "missing_receipts"

    @pytest.mark.asyncio
    async def test_no_headers(self, seeded_store):
        extractor = AsyncMock()
        extractor.extract = AsyncMock(return_value=POMatchingResponse(headers=[], error="No invoice line matched"))

        result = await match_invoice(INVOICE_ID, seeded_store, extractor=extractor)

        assert result.headers.count == 0
        invoice = seeded_store.fields(Table.INVOICES, INVOICE_ID)
        assert invoice["Status"] == "Matched"
        assert "POInvoiceHeader" not in invoice or invoice["POInvoiceHeader"] == []
        assert invoice["Balance"] == 2250.0

    @pytest.mark.asyncio
    async def test_format_output_json(self, seeded_store, mock_extractor):
        result = await match_invoice(INVOICE_ID, seeded_store, extractor=mock_extractor)
        parsed = json.loads(format_output_json(result))
        assert parsed["invoice_id"] == INVOICE_ID
        assert parsed["headers"]["count"] == 1


class TestIdempotence:

    @pytest.mark.asyncio
    async def test_already_matched_is_skipped(self, store, invoice_fields, mock_extractor):
        store.add(Table.INVOICES, INVOICE_ID, dict(invoice_fields, POInvoiceHeader=["recOldHeader"]))

        result = await match_invoice(INVOICE_ID, store, extractor=mock_extractor)

        assert result.success is True
        assert result.skipped is True
        assert result.headers.ids == ["recOldHeader"]
        mock_extractor.extract.assert_not_called()
        assert store.created(Table.HEADERS) == []

    @pytest.mark.asyncio
    async def test_force_rematches(self, store, invoice_fields, mock_extractor):
        store.add(Table.INVOICES, INVOICE_ID, dict(invoice_fields, POInvoiceHeader=["recOldHeader"]))

        result = await match_invoice(INVOICE_ID, store, extractor=mock_extractor, force=True)

        assert result.skipped is False
        assert result.headers.count == 1
        assert store.fields(Table.INVOICES, INVOICE_ID)["POInvoiceHeader"] == result.headers.ids

    @pytest.mark.asyncio
    async def test_second_run_is_skipped(self, seeded_store, mock_extractor):
        first = await match_invoice(INVOICE_ID, seeded_store, extractor=mock_extractor)
        second = await match_invoice(INVOICE_ID, seeded_store, extractor=mock_extractor)

        assert second.skipped is True
        assert second.headers.ids == first.headers.ids
        assert mock_extractor.extract.call_count == 1


class TestErrors:

    @pytest.mark.asyncio
    async def test_missing_invoice(self, store, mock_extractor):
        with pytest.raises(RecordNotFoundError) as exc_info:
            await match_invoice("recMissing", store, extractor=mock_extractor)

        assert exc_info.value.code == "INVOICE_NOT_FOUND"
        mock_extractor.extract.assert_not_called()

    @pytest.mark.asyncio
    async def test_refusal_marks_invoice(self, seeded_store):
        extractor = AsyncMock()
        extractor.extract = AsyncMock(side_effect=ExtractionRefusalError("Model refused to generate response: no"))

        with pytest.raises(ExtractionRefusalError):
            await match_invoice(INVOICE_ID, seeded_store, extractor=extractor)

        invoice = seeded_store.fields(Table.INVOICES, INVOICE_ID)
        assert invoice["Status"] == "Error"
        assert invoice["ErrorCode"] == "MATCH_REFUSED"
        assert invoice["Error-Description"] == "Model refused to generate response: no"
        assert seeded_store.created(Table.HEADERS) == []

    @pytest.mark.asyncio
    async def test_transport_error_marks_invoice(self, seeded_store):
        extractor = AsyncMock()
        extractor.extract = AsyncMock(side_effect=ExtractionTransportError("LLM request failed: timeout"))

        with pytest.raises(ExtractionTransportError):
            await match_invoice(INVOICE_ID, seeded_store, extractor=extractor)

        assert seeded_store.fields(Table.INVOICES, INVOICE_ID)["ErrorCode"] == "MATCH_TRANSPORT_ERROR"

    @pytest.mark.asyncio
    async def test_detail_write_failure(self, seeded_store, mock_extractor, store_error):
        seeded_store.failures[("create", Table.DETAILS)] = store_error

        with pytest.raises(MaterializationError) as exc_info:
            await match_invoice(INVOICE_ID, seeded_store, extractor=mock_extractor)

        assert len(exc_info.value.header_ids) == 1
        invoice = seeded_store.fields(Table.INVOICES, INVOICE_ID)
        assert invoice["Status"] == "Error"
        assert invoice["ErrorCode"] == "MATCH_STORE_ERROR"

    @pytest.mark.asyncio
    async def test_finalize_failure(self, seeded_store, mock_extractor, store_error):
        seeded_store.failures[("update", Table.INVOICES)] = store_error

        with pytest.raises(MaterializationError) as exc_info:
            await match_invoice(INVOICE_ID, seeded_store, extractor=mock_extractor)

        assert len(exc_info.value.detail_ids) == 2
        assert seeded_store.fields(Table.INVOICES, INVOICE_ID)["Status"] == "Pending"

    @pytest.mark.asyncio
    async def test_store_read_failure(self, store, mock_extractor):
        store.failures[("get", Table.INVOICES)] = RecordStoreError("timeout", table=Table.INVOICES)

        with pytest.raises(RecordStoreError):
            await match_invoice(INVOICE_ID, store, extractor=mock_extractor)


class TestBatch:

    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self, seeded_store, mock_extractor):
        results = await match_invoices_batch(
            [INVOICE_ID, "recMissing"],
            seeded_store,
            extractor=mock_extractor,
            concurrency=2,
        )

        assert [r.invoice_id for r in results] == [INVOICE_ID, "recMissing"]
        assert results[0].success is True
        assert results[1].success is False
        assert results[1].error_code == "INVOICE_NOT_FOUND"
        assert "recMissing" in results[1].error

    @pytest.mark.asyncio
    async def test_batch_reports_extraction_errors(self, seeded_store):
        extractor = AsyncMock()
        extractor.extract = AsyncMock(side_effect=ExtractionRefusalError("Model refused to generate response: no"))

        results = await match_invoices_batch([INVOICE_ID], seeded_store, extractor=extractor)

        assert results[0].success is False
        assert results[0].error_code == "MATCH_REFUSED"
        assert results[0].error == "Model refused to generate response: no"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
