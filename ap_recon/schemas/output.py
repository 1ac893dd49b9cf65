"""
Output schemas.
What observers receive: UI status, derived issues, per-invoice and per-file
views, and the result of a matching run.
"""

from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class UIStatus(str, Enum):
    """Display-facing status."""
    UPLOADING = "uploading"
    QUEUED = "queued"
    PROCESSING = "processing"
    CONNECTING = "connecting"
    SUCCESS = "success"
    SUCCESS_WITH_CAVEATS = "success-with-caveats"
    EXPORTED = "exported"
    ERROR = "error"
    DUPLICATE = "duplicate"


class IssueType(str, Enum):
    PRICE_VARIANCE = "price-variance"
    UNMATCHED_ITEM = "unmatched-item"
    QUANTITY_MISMATCH = "quantity-mismatch"
    MISSING_PO = "missing-po"


class IssueDetails(BaseModel):
    """Before/after values behind an issue."""
    invoice_value: Optional[str] = None
    po_value: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[str] = None
    item_description: Optional[str] = None


class DetailedIssue(BaseModel):
    """A single derived invoice issue. Regenerated from stored state on every read."""
    type: IssueType
    severity: str  # warning, error
    line_number: Optional[int] = None
    line_reference: Optional[str] = None
    item_reference: Optional[str] = None
    description: str
    impact: Optional[str] = None
    dollar_impact: Optional[str] = None
    details: IssueDetails = Field(default_factory=IssueDetails)


class VarianceInfo(BaseModel):
    """Balance formatted for display."""
    amount: str  # "$12.34"
    direction: str  # over, under


class InvoiceView(BaseModel):
    """Observer-facing snapshot of one invoice."""
    record_id: str
    invoice_number: Optional[str] = None
    vendor: str = "Unknown Vendor"
    amount: Optional[float] = None
    status: Optional[str] = None
    ui_status: UIStatus
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    balance: Optional[float] = None
    issues: List[DetailedIssue] = Field(default_factory=list)
    analysis_summary: str = ""
    variance: Optional[VarianceInfo] = None
    is_terminal: bool = False
    requires_manual_intervention: bool = False


class FileView(BaseModel):
    """Observer-facing snapshot of one uploaded file and its invoices."""
    record_id: str
    file_name: str = ""
    status: Optional[str] = None
    processing_status: Optional[str] = None
    ui_status: UIStatus
    progress: int = Field(ge=0, le=100)
    status_text: str = ""
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    invoices: List[InvoiceView] = Field(default_factory=list)
    is_terminal: bool = False
    requires_manual_intervention: bool = False


class IdList(BaseModel):
    ids: List[str] = Field(default_factory=list)
    count: int = 0


class PoMatchingResult(BaseModel):
    """Result of a matching run for one invoice."""
    invoice_id: str
    success: bool
    skipped: bool = False
    headers: IdList = Field(default_factory=IdList)
    details: IdList = Field(default_factory=IdList)
    balance: Optional[float] = None
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "invoice_id": "recInvoice123",
                "success": True,
                "skipped": False,
                "headers": {"ids": ["recHeader1"], "count": 1},
                "details": {"ids": ["recDetail1", "recDetail2"], "count": 2},
                "balance": 0.0,
                "warnings": [],
                "error": None,
                "error_code": None,
            }
        }
