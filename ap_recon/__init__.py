"""
AP Reconciliation Engine
"""

__version__ = "1.0.0"
__description__ = "Invoice to PO receipt matching, variance warnings and status tracking"

from ap_recon.main import match_invoice, match_invoices_batch
from ap_recon.state import MatchingState
from ap_recon.schemas.output import PoMatchingResult, FileView, InvoiceView, UIStatus
from ap_recon.agents.polling import PollingCoordinator
from ap_recon.store.airtable import AirtableStore

__all__ = [
    "match_invoice",
    "match_invoices_batch",
    "MatchingState",
    "PoMatchingResult",
    "FileView",
    "InvoiceView",
    "UIStatus",
    "PollingCoordinator",
    "AirtableStore",
]
