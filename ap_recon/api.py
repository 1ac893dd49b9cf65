"""
Optional FastAPI REST endpoint for PO matching and status snapshots.
Can be run with: uvicorn ap_recon.api:app --reload
"""

from typing import Optional

from fastapi import FastAPI, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ap_recon.main import match_invoice
from ap_recon.exceptions import (
    RecordNotFoundError,
    RecordStoreError,
    ExtractionError,
    MaterializationError,
)
from ap_recon.store.airtable import AirtableStore
from ap_recon.agents.polling import PollingCoordinator
from ap_recon.agents.duplicates import find_duplicate_file
from ap_recon.utils.logging import setup_logging
from ap_recon.config import get_config

app = FastAPI(
    title="AP Reconciliation API",
    description="Invoice to PO receipt matching and status tracking",
    version="1.0.0",
)

logger = setup_logging(__name__)
config = get_config()


class MatchInvoiceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    invoice_id: str = Field(alias="invoiceId")
    force: bool = False


class DuplicateCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_hash: str = Field(alias="fileHash")
    exclude_record_id: Optional[str] = Field(default=None, alias="excludeRecordId")


def _error(message: str, status_code: int, code: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        content={
            "success": False,
            "headers": {"ids": [], "count": 0},
            "details": {"ids": [], "count": 0},
            "error": message,
            "errorCode": code,
        },
        status_code=status_code,
    )


async def get_store():
    """One store client per request."""
    async with AirtableStore() as store:
        yield store


@app.post("/match-invoice")
async def match_invoice_endpoint(request: MatchInvoiceRequest, store=Depends(get_store)):
    """
    Run PO matching for one invoice.

    Returns:
        {success, headers: {ids, count}, details: {ids, count}, error?}
    """
    try:
        result = await match_invoice(request.invoice_id, store, force=request.force)
    except RecordNotFoundError as e:
        return _error(str(e), 404, e.code)
    except ExtractionError as e:
        return _error(e.description, 502, e.code)
    except MaterializationError as e:
        return _error(e.description, 502, e.code)
    except RecordStoreError as e:
        return _error(str(e), 502, e.code)

    content = {
        "success": result.success,
        "skipped": result.skipped,
        "headers": result.headers.model_dump(),
        "details": result.details.model_dump(),
    }
    if result.error:
        content["error"] = result.error
    return JSONResponse(content=content, status_code=200)


@app.get("/files/{record_id}/status")
async def file_status_endpoint(record_id: str, store=Depends(get_store)):
    """Current FileView snapshot."""
    coordinator = PollingCoordinator(store)
    try:
        view = await coordinator.refresh_file(record_id)
    except RecordNotFoundError as e:
        return JSONResponse(content={"error": str(e)}, status_code=404)
    except RecordStoreError as e:
        return JSONResponse(content={"error": str(e), "errorCode": "POLLING_ERROR"}, status_code=502)
    return JSONResponse(content=view.model_dump(mode="json"), status_code=200)


@app.get("/invoices/{record_id}/status")
async def invoice_status_endpoint(record_id: str, store=Depends(get_store)):
    """Current InvoiceView snapshot."""
    coordinator = PollingCoordinator(store)
    try:
        view = await coordinator.refresh_invoice(record_id)
    except RecordNotFoundError as e:
        return JSONResponse(content={"error": str(e)}, status_code=404)
    except RecordStoreError as e:
        return JSONResponse(content={"error": str(e), "errorCode": "POLLING_ERROR"}, status_code=502)
    return JSONResponse(content=view.model_dump(mode="json"), status_code=200)


@app.post("/files/check-duplicate")
async def check_duplicate_endpoint(request: DuplicateCheckRequest, store=Depends(get_store)):
    """Look for a non-cleared file with the same content hash."""
    try:
        result = await find_duplicate_file(store, request.file_hash, request.exclude_record_id)
    except ValueError as e:
        return JSONResponse(content={"error": str(e)}, status_code=400)
    except RecordStoreError as e:
        return JSONResponse(content={"error": str(e)}, status_code=502)
    return JSONResponse(content=result.model_dump(), status_code=200)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


@app.get("/config")
async def get_config_endpoint():
    """Get current configuration (sanitized)."""
    return {
        "llm_provider": config.LLM_PROVIDER,
        "llm_model": config.LLM_MODEL,
        "llm_timeout": config.LLM_TIMEOUT,
        "airtable_base_configured": bool(config.AIRTABLE_BASE_ID),
        "poll_interval_seconds": config.POLL_INTERVAL_SECONDS,
        "match_operator_id": config.MATCH_OPERATOR_ID,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=config.API_HOST,
        port=config.API_PORT,
        log_level=config.LOG_LEVEL.lower(),
    )
