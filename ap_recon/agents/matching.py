"""
Matching Agent
Graph nodes for one invoice's PO matching run: load the invoice, ask the LLM
for header/detail matches, materialize them, then write Status, Balance and
Warnings back onto the invoice.
"""

import json
from typing import Optional, Dict, Any

from langchain_core.runnables import RunnableConfig

from ap_recon.state import MatchingState
from ap_recon.exceptions import (
    RecordStoreError,
    RecordNotFoundError,
    ExtractionError,
    MaterializationError,
)
from ap_recon.schemas.records import Table, InvoiceField, InvoiceRecord, InvoiceStatus
from ap_recon.schemas.matching import MatchPayload, POMatchingResponse
from ap_recon.agents.extraction import StructuredExtractor
from ap_recon.agents.prompt_builder import split_invoice_fields, build_matching_request
from ap_recon.agents.materializer import materialize_matches
from ap_recon.agents.variance import (
    compute_balance,
    generate_match_warnings,
    derive_issues,
    log_derived_issues,
)
from ap_recon.utils.logging import setup_logging, log_pipeline_action
from ap_recon.config import get_config


logger = setup_logging(__name__)
# LangGraph passes the run config as `config`, so settings live under another name
settings = get_config()


def _configurable(config: Optional[RunnableConfig]) -> Dict[str, Any]:
    return (config or {}).get("configurable", {})


def _store(config: Optional[RunnableConfig]):
    store = _configurable(config).get("store")
    if store is None:
        raise ValueError("Matching run needs a record store in config['configurable']['store']")
    return store


def _extractor(config: Optional[RunnableConfig]) -> StructuredExtractor:
    return _configurable(config).get("extractor") or StructuredExtractor()


async def mark_invoice_error(store, invoice_id: str, code: str, description: str) -> None:
    """Patch the invoice to Error. A failing patch is logged; the caller re-raises its own error."""
    try:
        await store.update_one(Table.INVOICES, invoice_id, {
            InvoiceField.STATUS: InvoiceStatus.ERROR.value,
            InvoiceField.ERROR_CODE: code,
            InvoiceField.ERROR_DESCRIPTION: description,
        })
    except RecordStoreError as e:
        logger.error(f"[MatchingAgent] Could not mark invoice {invoice_id} as {code}: {e}")


async def load_invoice(state: MatchingState, config: RunnableConfig) -> MatchingState:
    """Fetch the invoice, split out the match payload, skip if already matched."""
    store = _store(config)
    logger.info(f"[MatchingAgent] Loading invoice {state.invoice_id}")

    record = await store.get(Table.INVOICES, state.invoice_id)
    if record is None:
        raise RecordNotFoundError(Table.INVOICES, state.invoice_id)

    state.invoice = InvoiceRecord.from_store(record)

    if state.invoice.header_ids and not state.force:
        state.skipped = True
        state.add_reasoning(
            "MatchingAgent",
            f"Invoice already links {len(state.invoice.header_ids)} header(s); skipping",
            action="skip",
        )
        logger.info(f"[MatchingAgent] Invoice {state.invoice_id} already matched; skipping")
        return state

    state.invoice_data, state.match_payload = split_invoice_fields(record)
    receipts = state.match_payload.get("matchingReceipts")
    state.add_reasoning(
        "MatchingAgent",
        f"Loaded {len(state.invoice_data)} invoice field(s) and "
        f"{len(receipts) if isinstance(receipts, list) else 0} receipt candidate(s)",
        action="load",
    )
    return state


async def generate_matches(state: MatchingState, config: RunnableConfig) -> MatchingState:
    """Build the prompt and call the structured extractor."""
    store = _store(config)
    extractor = _extractor(config)
    request = build_matching_request(state.invoice_data, state.match_payload)

    log_pipeline_action(logger, "MatchingAgent", "Generating PO matches", {
        "invoice_id": state.invoice_id,
        "prompt_chars": len(request.prompt),
        "schema_version": request.schema_version,
    })

    try:
        response = await extractor.extract(
            request.prompt,
            request.json_schema,
            POMatchingResponse,
            request.schema_name,
            strict=True,
        )
    except ExtractionError as e:
        logger.error(f"[MatchingAgent] Extraction failed for {state.invoice_id}: [{e.code}] {e.description}")
        await mark_invoice_error(store, state.invoice_id, e.code, e.description)
        raise

    state.matching_response = response
    state.add_reasoning(
        "MatchingAgent",
        f"LLM returned {len(response.headers)} header(s) with {response.match_count()} match object(s)",
        action="generate",
    )
    return state


async def materialize_records(state: MatchingState, config: RunnableConfig) -> MatchingState:
    """Create PO-Invoice-Header/Detail records."""
    store = _store(config)
    payload = MatchPayload.from_raw(state.match_payload)
    operator_id = _configurable(config).get("operator_id")

    try:
        state.materialized = await materialize_matches(
            store,
            state.matching_response,
            state.invoice_id,
            payload,
            operator_id=operator_id,
        )
    except MaterializationError as e:
        await mark_invoice_error(store, state.invoice_id, e.code, e.description)
        raise

    state.add_reasoning(
        "MatchingAgent",
        f"Created {len(state.materialized.header_ids)} header(s) and "
        f"{len(state.materialized.detail_ids)} detail(s)",
        action="materialize",
    )
    return state


async def finalize_invoice(state: MatchingState, config: RunnableConfig) -> MatchingState:
    """Write Status=Matched, header links, Balance and Warnings onto the invoice."""
    store = _store(config)
    materialized = state.materialized
    llm_error = state.matching_response.error if state.matching_response else ""

    state.balance = compute_balance(state.invoice, materialized)
    state.warnings = generate_match_warnings(materialized, llm_error)

    fields = {
        InvoiceField.STATUS: InvoiceStatus.MATCHED.value,
        InvoiceField.HEADERS: materialized.header_ids,
        InvoiceField.BALANCE: state.balance,
        InvoiceField.WARNINGS: json.dumps(state.warnings),
        InvoiceField.ERROR_CODE: None,
        InvoiceField.ERROR_DESCRIPTION: llm_error.strip() or None,
    }

    try:
        await store.update_one(Table.INVOICES, state.invoice_id, fields)
    except RecordStoreError as e:
        await mark_invoice_error(store, state.invoice_id, MaterializationError.code, str(e))
        raise MaterializationError(
            f"Failed to finalize invoice {state.invoice_id}: {e}",
            header_ids=materialized.header_ids,
            detail_ids=materialized.detail_ids,
        ) from e

    log_derived_issues(state.invoice_id, derive_issues(state.balance, state.warnings))
    log_pipeline_action(logger, "MatchingAgent", "Invoice matched", {
        "invoice_id": state.invoice_id,
        "balance": state.balance,
        "warnings": len(state.warnings),
    })
    state.add_reasoning(
        "MatchingAgent",
        f"Invoice marked Matched with balance {state.balance:.2f} and {len(state.warnings)} warning(s)",
        action="finalize",
    )
    return state
