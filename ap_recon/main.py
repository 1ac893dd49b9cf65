"""
Main entry point for the PO matching engine.
"""

import asyncio
from typing import Optional, List

from ap_recon.state import MatchingState
from ap_recon.graph import get_matching_graph
from ap_recon.exceptions import ApReconError
from ap_recon.schemas.output import PoMatchingResult, IdList
from ap_recon.agents.extraction import StructuredExtractor
from ap_recon.store.airtable import AirtableStore
from ap_recon.utils.logging import setup_logging, log_pipeline_action
from ap_recon.utils import dict_to_json_string
from ap_recon.config import get_config


logger = setup_logging(__name__)
config = get_config()


def build_result(state: MatchingState) -> PoMatchingResult:
    """Build the run result from final state."""
    header_ids = state.materialized.header_ids if state.materialized else []
    detail_ids = state.materialized.detail_ids if state.materialized else []
    if state.skipped and state.invoice:
        header_ids = state.invoice.header_ids

    return PoMatchingResult(
        invoice_id=state.invoice_id,
        success=True,
        skipped=state.skipped,
        headers=IdList(ids=header_ids, count=len(header_ids)),
        details=IdList(ids=detail_ids, count=len(detail_ids)),
        balance=state.balance,
        warnings=state.warnings,
        error=(state.matching_response.error or None) if state.matching_response else None,
    )


async def match_invoice(
    invoice_id: str,
    store,
    extractor: Optional[StructuredExtractor] = None,
    force: bool = False,
    operator_id: Optional[str] = None,
) -> PoMatchingResult:
    """
    Run PO matching for a single invoice.

    Args:
        invoice_id: Invoices record id
        store: record store client (AirtableStore or compatible)
        extractor: structured extraction client; built from config when omitted
        force: re-run even if the invoice already links headers
        operator_id: User-Id stamped on created headers

    Returns:
        PoMatchingResult with created header/detail ids

    Raises:
        RecordNotFoundError, ExtractionError, MaterializationError, RecordStoreError
    """
    state = MatchingState(invoice_id=invoice_id, force=force)
    logger.info(f"Starting PO matching for invoice {invoice_id}")

    graph = get_matching_graph()
    result = await graph.ainvoke(
        state,
        config={
            "configurable": {
                "store": store,
                "extractor": extractor,
                "operator_id": operator_id,
            }
        },
    )
    # LangGraph returns channel values as a dict
    final_state = MatchingState(**result) if isinstance(result, dict) else result

    logger.debug(f"Run log for {invoice_id}:\n{final_state.get_agent_reasoning()}")
    log_pipeline_action(logger, "Main", "Run summary", final_state.get_summary())

    output = build_result(final_state)
    logger.info(
        f"PO matching complete for {invoice_id}: "
        f"{output.headers.count} header(s), {output.details.count} detail(s)"
        f"{' (skipped)' if output.skipped else ''}"
    )
    return output


async def match_invoices_batch(
    invoice_ids: List[str],
    store,
    extractor: Optional[StructuredExtractor] = None,
    force: bool = False,
    concurrency: Optional[int] = None,
) -> List[PoMatchingResult]:
    """
    Match several invoices concurrently.

    One failing invoice does not abort the others; its result carries the
    error code and description instead. Results keep input order.
    """
    semaphore = asyncio.Semaphore(concurrency or config.MATCH_BATCH_CONCURRENCY)

    async def run_one(idx: int, invoice_id: str) -> PoMatchingResult:
        async with semaphore:
            logger.info(f"Processing invoice {idx}/{len(invoice_ids)}")
            try:
                return await match_invoice(invoice_id, store, extractor=extractor, force=force)
            except ApReconError as e:
                logger.error(f"Error matching {invoice_id}: {e}")
                return PoMatchingResult(
                    invoice_id=invoice_id,
                    success=False,
                    error=getattr(e, "description", None) or str(e),
                    error_code=getattr(e, "code", None),
                )

    results = await asyncio.gather(
        *(run_one(idx, invoice_id) for idx, invoice_id in enumerate(invoice_ids, 1))
    )

    succeeded = sum(1 for r in results if r.success)
    logger.info(f"Batch matching complete. Matched {succeeded}/{len(invoice_ids)} invoices.")
    return list(results)


def format_output_json(output: PoMatchingResult) -> str:
    """Format output as JSON string."""
    return dict_to_json_string(output.model_dump())


async def _run_cli(invoice_ids: List[str], force: bool) -> List[PoMatchingResult]:
    async with AirtableStore() as store:
        return await match_invoices_batch(invoice_ids, store, force=force)


if __name__ == "__main__":
    # Example usage
    import sys

    args = [a for a in sys.argv[1:] if a != "--force"]
    if args:
        outputs = asyncio.run(_run_cli(args, force="--force" in sys.argv))
        for output in outputs:
            print(format_output_json(output))
    else:
        print("Usage: python -m ap_recon.main <invoice_record_id> [...] [--force]")
