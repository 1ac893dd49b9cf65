"""
Matching schemas.
The match payload supplied alongside an invoice (vendor metadata plus the
ordered receipt candidates), the structured LLM response, and the JSON Schema
the response must follow.
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field

from ap_recon.schemas.records import Scalar


MATCHING_SCHEMA_NAME = "POMatchingResponse"
MATCHING_SCHEMA_VERSION = "2024-08-06.1"


class ReceiptCandidate(BaseModel):
    """One PO receipt line offered to the matcher, addressed by position."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    item_no: Optional[Scalar] = Field(default=None, alias="itemNo")
    item_description: Optional[str] = Field(default=None, alias="itemDescription")
    step: Optional[Scalar] = Field(default=None, alias="step")
    po_release_number: Optional[Scalar] = Field(default=None, alias="poReleaseNumber")
    po_line_number: Optional[Scalar] = Field(default=None, alias="poLineNumber")
    vendor_ship_number: Optional[Scalar] = Field(default=None, alias="vendorShipNumber")
    date_received: Optional[str] = Field(default=None, alias="dateReceived")
    quantity_received: Optional[float] = Field(default=None, alias="quantityReceived")
    quantity_accepted: Optional[float] = Field(default=None, alias="quantityAccepted")
    purchase_price: Optional[float] = Field(default=None, alias="purchasePrice")
    pricing_quantity: Optional[float] = Field(default=None, alias="pricingQuantity")
    expense_account: Optional[Scalar] = Field(default=None, alias="expAcct")
    expense_subaccount: Optional[Scalar] = Field(default=None, alias="expSub")
    standard_cost: Optional[float] = Field(default=None, alias="standardCost")
    surcharge: Optional[float] = Field(default=None, alias="surcharge")
    unit_of_measure: Optional[str] = Field(default=None, alias="uom")
    job_project_number: Optional[Scalar] = Field(default=None, alias="jobProjectNumber")

    def received_quantity(self) -> Optional[float]:
        """Accepted quantity when known, else received quantity."""
        if self.quantity_accepted is not None:
            return self.quantity_accepted
        return self.quantity_received


class VendorInfo(BaseModel):
    """Vendor block of the match payload."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    ap_account: Optional[Scalar] = Field(default=None, alias="apAcct")
    ap_subaccount: Optional[Scalar] = Field(default=None, alias="apSub")
    freight_account: Optional[Scalar] = Field(default=None, alias="freightAccount")
    freight_subaccount: Optional[Scalar] = Field(default=None, alias="freightSubAccount")
    misc_charge_account: Optional[Scalar] = Field(default=None, alias="miscChargeAccount")
    misc_charge_subaccount: Optional[Scalar] = Field(default=None, alias="miscChargeSubAccount")
    ppv_account: Optional[Scalar] = Field(default=None, alias="ppvVoucheredAcct")
    ppv_subaccount: Optional[Scalar] = Field(default=None, alias="ppvVoucheredSubAcct")


class MatchPayload(BaseModel):
    """
    Parsed MatchPayloadJSON.

    `matching_receipts` keeps the raw entries so that positional indices from
    the LLM line up with what the prompt showed; entries are validated lazily
    by `receipt_at`.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    vendor: Optional[VendorInfo] = None
    matching_receipts: List[Any] = Field(default_factory=list, alias="matchingReceipts")

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "MatchPayload":
        """Build from a decoded payload, tolerating wrong shapes."""
        receipts = raw.get("matchingReceipts")
        if not isinstance(receipts, list):
            receipts = []
        vendor = raw.get("vendor")
        return cls(
            vendor=VendorInfo.model_validate(vendor) if isinstance(vendor, dict) else None,
            matching_receipts=receipts,
        )

    def receipt_at(self, index: Any) -> Optional[ReceiptCandidate]:
        """Resolve a match_object index, or None when it does not point at a usable receipt."""
        if isinstance(index, bool) or not isinstance(index, int):
            return None
        if index < 0 or index >= len(self.matching_receipts):
            return None
        entry = self.matching_receipts[index]
        if not isinstance(entry, dict):
            return None
        try:
            return ReceiptCandidate.model_validate(entry)
        except ValueError:
            return None


class MatchObject(BaseModel):
    """Links one invoice line to one receipt candidate."""
    model_config = ConfigDict(extra="ignore")

    match_object: int
    invoice_price: Optional[float] = None
    invoice_quantity: Optional[float] = None
    invoice_amount: Optional[float] = None


class MatchedHeader(BaseModel):
    """One PO header proposed by the LLM, with nested per-line matches."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

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
    details: List[List[MatchObject]] = Field(default_factory=list)

    def flatten_details(self) -> List[MatchObject]:
        """Invoice lines in order, then matches within each line in order."""
        flat = []
        for line_index in range(len(self.details)):
            line = self.details[line_index]
            for match_index in range(len(line)):
                flat.append(line[match_index])
        return flat


class POMatchingResponse(BaseModel):
    """Structured LLM response."""
    model_config = ConfigDict(extra="ignore")

    headers: List[MatchedHeader]
    error: str

    def match_count(self) -> int:
        return sum(len(h.flatten_details()) for h in self.headers)


_HEADER_STRING_FIELDS = [
    "Company-Code", "VendId", "TermsId", "APAcct", "APSub",
    "Freight-Account", "Freight-Subaccount", "Misc-Charge-Account", "Misc-Charge-Subaccount",
    "PO-Number-Seq-Type", "PO-Number", "PO-Vendor", "CuryId", "CuryRateType",
    "User-Id", "Job-Project-Number",
]

_HEADER_FIELD_DESCRIPTIONS = {
    "Company-Code": "Company identifier",
    "VendId": "Vendor ID",
    "TermsId": "Payment terms ID (e.g., 'NET30', '30')",
    "APAcct": "Accounts Payable account",
    "APSub": "Accounts Payable subaccount",
}


def _header_properties() -> Dict[str, Any]:
    props: Dict[str, Any] = {}
    for name in _HEADER_STRING_FIELDS:
        prop: Dict[str, Any] = {"type": "string"}
        if name in _HEADER_FIELD_DESCRIPTIONS:
            prop["description"] = _HEADER_FIELD_DESCRIPTIONS[name]
        props[name] = prop
    props["TermsDaysInt"] = {
        "type": "integer",
        "description": "Payment terms in days as integer (parse from TermsId)",
    }
    props["CuryRate"] = {"type": "number"}
    props["details"] = {
        "type": "array",
        "description": (
            "Array of arrays. Each inner array represents one invoice line and "
            "contains match objects linking to PO receipts."
        ),
        "items": {
            "type": "array",
            "description": "One invoice line's match(es). Typically contains one match object per invoice line.",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["match_object", "invoice_price", "invoice_quantity", "invoice_amount"],
                "properties": {
                    "match_object": {
                        "type": "integer",
                        "description": "Index into the matchingReceipts array from MatchPayloadJSON",
                    },
                    "invoice_price": {"type": "number", "description": "Unit price from invoice line item"},
                    "invoice_quantity": {"type": "number", "description": "Quantity from invoice line item"},
                    "invoice_amount": {"type": "number", "description": "Extended line total from invoice line item"},
                },
            },
        },
    }
    return props


def build_matching_json_schema() -> Dict[str, Any]:
    """The fixed response schema; every header property is required (strict mode)."""
    header_props = _header_properties()
    return {
        "type": "object",
        "properties": {
            "headers": {
                "type": "array",
                "description": (
                    "Purchase order invoice headers, each containing match objects "
                    "linking invoice lines to PO receipts."
                ),
                "items": {
                    "type": "object",
                    "required": ["details"] + [k for k in header_props if k != "details"],
                    "additionalProperties": False,
                    "properties": header_props,
                },
            },
            "error": {
                "type": "string",
                "description": (
                    "Empty string if all invoice lines matched successfully. Otherwise, "
                    "concisely explain each unmatched invoice line."
                ),
            },
        },
        "required": ["headers", "error"],
        "additionalProperties": False,
    }


PO_MATCHING_JSON_SCHEMA = build_matching_json_schema()
