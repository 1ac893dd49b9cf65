"""
Status/Progress Mapper
Pure functions from stored File/Invoice status to UI status, progress and
status text, plus the reducer that folds linked invoices into a File status.
"""

import re
from typing import Optional, List, Sequence

from ap_recon.schemas.records import (
    FileRecord,
    InvoiceRecord,
    FileStatus,
    ProcessingStatus,
    InvoiceStatus,
)
from ap_recon.schemas.output import UIStatus, InvoiceView, FileView
from ap_recon.agents.variance import analyze_invoice, parse_error_code, parse_error_description
from ap_recon.utils.logging import setup_logging
from ap_recon.config import get_config


logger = setup_logging(__name__)
config = get_config()


PROGRESS = {
    ProcessingStatus.UPL.value: 10,
    ProcessingStatus.DETINV.value: 30,
    ProcessingStatus.PARSE.value: 50,
    ProcessingStatus.RELINV.value: 70,
    ProcessingStatus.MATCHING.value: 90,
    ProcessingStatus.MATCHED.value: 100,
}
DEFAULT_PROGRESS = 50

STATUS_TEXT = {
    ProcessingStatus.UPL.value: "Uploaded, waiting to start...",
    ProcessingStatus.DETINV.value: "Detecting invoices (OCR)...",
    ProcessingStatus.PARSE.value: "Parsing invoice data...",
    ProcessingStatus.RELINV.value: "Finding related invoices...",
    ProcessingStatus.MATCHING.value: "Matching with PO headers...",
    ProcessingStatus.MATCHED.value: "Matching complete",
    ProcessingStatus.ERROR.value: "Error occurred",
}
DEFAULT_STATUS_TEXT = "Processing..."

DUPLICATE_FILE = "DUPLICATE_FILE"
POLLING_ERROR = "POLLING_ERROR"
MANUAL_INTERVENTION_CODES = frozenset({
    DUPLICATE_FILE,
    "MISSING_PO",
    "MATCH_REFUSED",
    "MATCH_PARSE_ERROR",
})

# Invoice statuses that count as finished from the matching pipeline's view
SETTLED_INVOICE_STATUSES = frozenset({
    InvoiceStatus.MATCHED.value,
    InvoiceStatus.REVIEWED.value,
    InvoiceStatus.APPROVED.value,
    InvoiceStatus.EXPORTED.value,
})
TERMINAL_INVOICE_STATUSES = SETTLED_INVOICE_STATUSES | {InvoiceStatus.ERROR.value}

TERMINAL_FILE_UI_STATUSES = frozenset({UIStatus.EXPORTED, UIStatus.ERROR, UIStatus.DUPLICATE})


def _value(status) -> Optional[str]:
    return status.value if hasattr(status, "value") else status


def get_processing_progress(processing_status: Optional[str]) -> int:
    return PROGRESS.get(_value(processing_status), DEFAULT_PROGRESS)


def get_processing_status_text(processing_status: Optional[str]) -> str:
    return STATUS_TEXT.get(_value(processing_status), DEFAULT_STATUS_TEXT)


def error_code_token(code: Optional[str]) -> Optional[str]:
    """'[DUPLICATE_FILE] Same file' -> 'DUPLICATE_FILE'; bare codes pass through."""
    if not code:
        return None
    match = re.match(r"^\[(.*?)\]", code.strip())
    return match.group(1).strip() if match else code.strip()


def requires_manual_intervention(code: Optional[str]) -> bool:
    return error_code_token(code) in MANUAL_INTERVENTION_CODES


def map_file_status(
    status: Optional[str],
    processing_status: Optional[str] = None,
    error_code: Optional[str] = None,
) -> UIStatus:
    """
    Map a File's coarse Status and Processing-Status to a UI status.

    Duplicates are recognised by error code. Attention needs a person, so it
    shows as an error.
    """
    status = _value(status)
    processing_status = _value(processing_status)

    if error_code_token(error_code) == DUPLICATE_FILE:
        return UIStatus.DUPLICATE

    if status in (FileStatus.ERROR.value, FileStatus.ATTENTION.value) or processing_status == ProcessingStatus.ERROR.value:
        return UIStatus.ERROR

    if status is None:
        return UIStatus.UPLOADING

    if status == FileStatus.QUEUED.value:
        return UIStatus.QUEUED

    if status == FileStatus.PROCESSING.value:
        if processing_status == ProcessingStatus.MATCHING.value:
            return UIStatus.CONNECTING
        if processing_status == ProcessingStatus.MATCHED.value:
            return UIStatus.SUCCESS
        return UIStatus.PROCESSING

    if status == FileStatus.PROCESSED.value:
        return UIStatus.SUCCESS

    logger.warning(f"[StatusMapper] Unknown status combination: {status} / {processing_status}")
    return UIStatus.PROCESSING


def has_caveats(invoice: InvoiceRecord) -> bool:
    """Matched, but with warnings or a non-zero balance."""
    if invoice.status != InvoiceStatus.MATCHED.value:
        return False
    if invoice.warnings:
        return True
    return invoice.balance is not None and abs(invoice.balance) > config.BALANCE_TOLERANCE


def map_invoice_status(invoice: InvoiceRecord) -> UIStatus:
    status = invoice.status
    if status == InvoiceStatus.ERROR.value:
        return UIStatus.ERROR
    if status == InvoiceStatus.EXPORTED.value:
        return UIStatus.EXPORTED
    if status == InvoiceStatus.MATCHED.value:
        return UIStatus.SUCCESS_WITH_CAVEATS if has_caveats(invoice) else UIStatus.SUCCESS
    if status in (InvoiceStatus.REVIEWED.value, InvoiceStatus.APPROVED.value):
        return UIStatus.SUCCESS
    if status == InvoiceStatus.QUEUED.value:
        return UIStatus.PROCESSING
    if status in (InvoiceStatus.PENDING.value, "Matching"):
        return UIStatus.CONNECTING
    return UIStatus.PROCESSING


def reduce_file_status(raw: UIStatus, invoices: Sequence[InvoiceRecord]) -> UIStatus:
    """
    Fold linked invoices into the File's UI status.

    Precedence: any invoice in Error -> error; every invoice Exported ->
    exported; any Matched invoice with caveats -> success-with-caveats;
    otherwise the File's own status.
    """
    if not invoices:
        return raw

    if any(inv.status == InvoiceStatus.ERROR.value for inv in invoices):
        return UIStatus.ERROR

    if all(inv.status == InvoiceStatus.EXPORTED.value for inv in invoices):
        return UIStatus.EXPORTED

    if any(has_caveats(inv) for inv in invoices):
        return UIStatus.SUCCESS_WITH_CAVEATS

    return raw


def is_invoice_terminal(status: Optional[str]) -> bool:
    return _value(status) in TERMINAL_INVOICE_STATUSES


def is_file_terminal(
    ui_status: UIStatus,
    progress: int,
    status: Optional[str],
    invoices: Sequence[InvoiceRecord] = (),
) -> bool:
    """
    Polling stops once this is True.

    With linked invoices the file is done when every invoice is settled;
    without any, when processing reached 100% or the file is Processed.
    """
    if ui_status in TERMINAL_FILE_UI_STATUSES:
        return True
    if invoices:
        return all(inv.status in SETTLED_INVOICE_STATUSES for inv in invoices)
    return progress >= 100 or _value(status) == FileStatus.PROCESSED.value


def _error_text(code: Optional[str], description: Optional[str]) -> Optional[str]:
    """First sentence of the description, else the message carried by a bracketed code."""
    text = parse_error_description(description)
    if not text and code and code.strip().startswith("["):
        text = parse_error_description(parse_error_code(code))
    return text or None


def build_invoice_view(invoice: InvoiceRecord) -> InvoiceView:
    """Observer snapshot of one invoice; regenerated from stored fields only."""
    issues, summary, variance = analyze_invoice(invoice)
    return InvoiceView(
        record_id=invoice.id,
        invoice_number=invoice.invoice_number,
        vendor=invoice.vendor_name or "Unknown Vendor",
        amount=invoice.amount,
        status=invoice.status,
        ui_status=map_invoice_status(invoice),
        error_code=error_code_token(invoice.error_code),
        error_description=_error_text(invoice.error_code, invoice.error_description),
        balance=invoice.balance,
        issues=issues,
        analysis_summary=summary,
        variance=variance,
        is_terminal=is_invoice_terminal(invoice.status),
        requires_manual_intervention=requires_manual_intervention(invoice.error_code),
    )


def build_file_view(file: FileRecord, invoices: Optional[List[InvoiceRecord]] = None) -> FileView:
    """Observer snapshot of one file with its linked invoices folded in."""
    invoices = invoices or []
    raw = map_file_status(file.status, file.processing_status, file.error_code)
    ui_status = reduce_file_status(raw, invoices)
    progress = get_processing_progress(file.processing_status)

    # An errored invoice lends its code when the File carries none of its own
    error_code, error_description = file.error_code, file.error_description
    if ui_status == UIStatus.ERROR and not error_code:
        errored = next((inv for inv in invoices if inv.status == InvoiceStatus.ERROR.value), None)
        if errored is not None:
            error_code, error_description = errored.error_code, errored.error_description

    return FileView(
        record_id=file.id,
        file_name=file.name,
        status=file.status,
        processing_status=file.processing_status,
        ui_status=ui_status,
        progress=progress,
        status_text=get_processing_status_text(file.processing_status),
        error_code=error_code_token(error_code),
        error_description=_error_text(error_code, error_description),
        invoices=[build_invoice_view(inv) for inv in invoices],
        is_terminal=is_file_terminal(ui_status, progress, file.status, invoices),
        requires_manual_intervention=(
            ui_status == UIStatus.DUPLICATE or requires_manual_intervention(error_code)
        ),
    )


def polling_error_view(view, description: str):
    """Force a FileView or InvoiceView to error after a failed fetch."""
    return view.model_copy(update={
        "ui_status": UIStatus.ERROR,
        "error_code": POLLING_ERROR,
        "error_description": description,
        "is_terminal": True,
    })
