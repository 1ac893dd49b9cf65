"""
Record store schemas.
Table names, field names, status values and the typed views of File and
Invoice records. Header and Detail writes go through closed allow-list models.
"""

import json
from enum import Enum
from typing import Optional, List, Dict, Any, Union
from pydantic import BaseModel, ConfigDict, Field

from ap_recon.utils import to_float


class Table:
    """Store table names."""
    FILES = "Files"
    INVOICES = "Invoices"
    HEADERS = "POInvoiceHeaders"
    DETAILS = "POInvoiceDetails"


class FileStatus(str, Enum):
    """Coarse File status."""
    QUEUED = "Queued"
    PROCESSING = "Processing"
    PROCESSED = "Processed"
    ERROR = "Error"
    ATTENTION = "Attention"


class ProcessingStatus(str, Enum):
    """Fine-grained File sub-stage, in pipeline order."""
    UPL = "UPL"
    DETINV = "DETINV"
    PARSE = "PARSE"
    RELINV = "RELINV"
    MATCHING = "MATCHING"
    MATCHED = "MATCHED"
    ERROR = "ERROR"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""
    PENDING = "Pending"
    MATCHED = "Matched"
    REVIEWED = "Reviewed"
    QUEUED = "Queued"
    APPROVED = "Approved"
    EXPORTED = "Exported"
    ERROR = "Error"


class FileField:
    """Files table field names."""
    NAME = "FileName"
    HASH = "FileHash"
    RAW_TEXT = "Raw-Text"
    STATUS = "Status"
    PROCESSING_STATUS = "Processing-Status"
    INVOICES = "Invoices"
    ERROR_CODE = "Error-Code"
    ERROR_DESCRIPTION = "Error-Description"
    CLEARED = "Cleared"
    PAGES = "Pages"
    CREATED_AT = "Created-At"
    STATUS_MODIFIED_TIME = "Status-Modified-Time"


class InvoiceField:
    """Invoices table field names."""
    NUMBER = "Invoice-Number"
    VENDOR_ID = "VendId"
    VENDOR_NAME = "Vendor-Name"
    AMOUNT = "Amount"
    DATE = "Date"
    FREIGHT_CHARGE = "Freight-Charge"
    MISC_CHARGE = "Misc-Charge"
    SURCHARGE = "Surcharge"
    STATUS = "Status"
    MATCH_PAYLOAD = "MatchPayloadJSON"
    BALANCE = "Balance"
    WARNINGS = "Warnings"
    ERROR_CODE = "ErrorCode"
    ERROR_DESCRIPTION = "Error-Description"
    HEADERS = "POInvoiceHeader"
    FILES = "Files"


# Values the store may hand back for link, number or text fields
Scalar = Union[int, float, str]


class StoreRecord(BaseModel):
    """A raw record as returned by the store."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    created_time: Optional[str] = Field(default=None, alias="createdTime")


def _links(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v]
    if isinstance(value, str) and value:
        return [value]
    return []


def parse_warnings(raw: Any) -> List[Dict[str, Any]]:
    """
    Parse the stored Warnings field.

    Accepts a JSON string, a list, or a single object. Anything unreadable
    yields an empty list; callers log the problem.
    """
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError):
            return []
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [w for w in raw if isinstance(w, dict)]


class FileRecord(BaseModel):
    """Typed view of a Files record."""
    id: str
    name: str = ""
    file_hash: Optional[str] = None
    status: Optional[str] = None
    processing_status: Optional[str] = None
    invoice_ids: List[str] = Field(default_factory=list)
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    cleared: bool = False
    created_at: Optional[str] = None

    @classmethod
    def from_store(cls, record: StoreRecord) -> "FileRecord":
        f = record.fields
        return cls(
            id=record.id,
            name=f.get(FileField.NAME) or "",
            file_hash=f.get(FileField.HASH),
            status=f.get(FileField.STATUS),
            processing_status=f.get(FileField.PROCESSING_STATUS),
            invoice_ids=_links(f.get(FileField.INVOICES)),
            error_code=f.get(FileField.ERROR_CODE),
            error_description=f.get(FileField.ERROR_DESCRIPTION),
            cleared=bool(f.get(FileField.CLEARED)),
            created_at=f.get(FileField.CREATED_AT) or record.created_time,
        )


class InvoiceRecord(BaseModel):
    """Typed view of an Invoices record."""
    id: str
    invoice_number: Optional[str] = None
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    amount: Optional[float] = None
    date: Optional[str] = None
    freight_charge: Optional[float] = None
    misc_charge: Optional[float] = None
    surcharge: Optional[float] = None
    status: Optional[str] = None
    match_payload_json: Optional[str] = None
    balance: Optional[float] = None
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    warnings_unreadable: bool = False
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    header_ids: List[str] = Field(default_factory=list)
    file_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_store(cls, record: StoreRecord) -> "InvoiceRecord":
        f = record.fields
        raw_warnings = f.get(InvoiceField.WARNINGS)
        warnings = parse_warnings(raw_warnings)
        payload = f.get(InvoiceField.MATCH_PAYLOAD)
        if payload is not None and not isinstance(payload, str):
            payload = json.dumps(payload)
        return cls(
            id=record.id,
            invoice_number=f.get(InvoiceField.NUMBER),
            vendor_id=f.get(InvoiceField.VENDOR_ID),
            vendor_name=f.get(InvoiceField.VENDOR_NAME),
            amount=to_float(f.get(InvoiceField.AMOUNT)),
            date=f.get(InvoiceField.DATE),
            freight_charge=to_float(f.get(InvoiceField.FREIGHT_CHARGE)),
            misc_charge=to_float(f.get(InvoiceField.MISC_CHARGE)),
            surcharge=to_float(f.get(InvoiceField.SURCHARGE)),
            status=f.get(InvoiceField.STATUS),
            match_payload_json=payload,
            balance=to_float(f.get(InvoiceField.BALANCE)),
            warnings=warnings,
            warnings_unreadable=bool(raw_warnings) and not warnings,
            error_code=f.get(InvoiceField.ERROR_CODE),
            error_description=f.get(InvoiceField.ERROR_DESCRIPTION),
            header_ids=_links(f.get(InvoiceField.HEADERS)),
            file_ids=_links(f.get(InvoiceField.FILES)),
        )

    def subtotal(self) -> float:
        """Invoice amount net of freight, misc charge and surcharge."""
        return (
            (self.amount or 0.0)
            - (self.freight_charge or 0.0)
            - (self.misc_charge or 0.0)
            - (self.surcharge or 0.0)
        )


class _WritableFields(BaseModel):
    """Closed set of writable fields; unknown input keys are dropped."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_store_fields(self) -> Dict[str, Any]:
        """Store-ready field map: hyphenated names, no null or empty values."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        return {k: v for k, v in data.items() if v != "" and v != []}


class HeaderFields(_WritableFields):
    """Writable PO-Invoice-Header fields. CuryMultDiv is never written."""
    invoice: List[str] = Field(default_factory=list, alias="Invoice")
    company_code: Optional[str] = Field(default=None, alias="Company-Code")
    vendor_id: Optional[str] = Field(default=None, alias="VendId")
    terms_id: Optional[str] = Field(default=None, alias="TermsId")
    terms_days: Optional[int] = Field(default=None, alias="TermsDaysInt")
    ap_account: Optional[str] = Field(default=None, alias="APAcct")
    ap_subaccount: Optional[str] = Field(default=None, alias="APSub")
    freight_account: Optional[str] = Field(default=None, alias="Freight-Account")
    freight_subaccount: Optional[str] = Field(default=None, alias="Freight-Subaccount")
    misc_charge_account: Optional[str] = Field(default=None, alias="Misc-Charge-Account")
    misc_charge_subaccount: Optional[str] = Field(default=None, alias="Misc-Charge-Subaccount")
    po_number_seq_type: Optional[str] = Field(default=None, alias="PO-Number-Seq-Type")
    po_number: Optional[str] = Field(default=None, alias="PO-Number")
    po_vendor: Optional[str] = Field(default=None, alias="PO-Vendor")
    currency_id: Optional[str] = Field(default=None, alias="CuryId")
    currency_rate: Optional[float] = Field(default=None, alias="CuryRate")
    currency_rate_type: Optional[str] = Field(default=None, alias="CuryRateType")
    user_id: Optional[str] = Field(default=None, alias="User-Id")
    job_project_number: Optional[str] = Field(default=None, alias="Job-Project-Number")


class DetailFields(_WritableFields):
    """Writable PO-Invoice-Detail fields."""
    header: List[str] = Field(default_factory=list, alias="POInvoiceHeaders")

    # Invoice side, from the match object
    invoice_price: Optional[float] = Field(default=None, alias="Invoice-Price")
    quantity_invoiced: Optional[float] = Field(default=None, alias="Quantity-Invoiced")
    line_amount: Optional[float] = Field(default=None, alias="Line-Amount")

    # Receipt side, from the resolved candidate
    item_no: Optional[Scalar] = Field(default=None, alias="Item-No")
    item_description: Optional[str] = Field(default=None, alias="Item-Description")
    step: Optional[Scalar] = Field(default=None, alias="Step")
    po_release_number: Optional[Scalar] = Field(default=None, alias="PO-Release-Number")
    po_line_number: Optional[Scalar] = Field(default=None, alias="PO-Line-Number")
    vendor_ship_number: Optional[Scalar] = Field(default=None, alias="Vendor-Ship-Number")
    date_received: Optional[str] = Field(default=None, alias="Date-Received")
    quantity_received: Optional[float] = Field(default=None, alias="Quantity-Received")
    quantity_accepted: Optional[float] = Field(default=None, alias="Quantity-Accepted")
    purchase_price: Optional[float] = Field(default=None, alias="Purchase-Price")
    pricing_quantity: Optional[float] = Field(default=None, alias="Pricing-Quantity")
    expense_account: Optional[Scalar] = Field(default=None, alias="ExpAcct")
    expense_subaccount: Optional[Scalar] = Field(default=None, alias="ExpSub")
    standard_cost: Optional[float] = Field(default=None, alias="Standard-Cost")
    surcharge: Optional[float] = Field(default=None, alias="Surcharge")
    unit_of_measure: Optional[str] = Field(default=None, alias="PO-UOM")
    job_project_number: Optional[Scalar] = Field(default=None, alias="Job-Project-Number")

    # Vendor level purchase price variance accounts
    ppv_account: Optional[Scalar] = Field(default=None, alias="PPV-Vouchered-Acct")
    ppv_subaccount: Optional[Scalar] = Field(default=None, alias="PPV-Vouchered-SubAcct")


def _aliases(model) -> frozenset:
    return frozenset(f.alias or name for name, f in model.model_fields.items())


HEADER_WRITABLE_FIELDS = _aliases(HeaderFields)
DETAIL_WRITABLE_FIELDS = _aliases(DetailFields)

WRITABLE_FIELDS = {
    Table.HEADERS: HEADER_WRITABLE_FIELDS,
    Table.DETAILS: DETAIL_WRITABLE_FIELDS,
}
