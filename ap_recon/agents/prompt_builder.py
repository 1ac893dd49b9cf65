"""
Matching Prompt & Schema Builder
Turns an invoice record and its match payload into the prompt and JSON Schema
for the PO matching call. Pure and deterministic for fixed inputs.
"""

import json
from typing import Dict, Any, Tuple
from pydantic import BaseModel

from ap_recon.schemas.records import StoreRecord, InvoiceField
from ap_recon.schemas.matching import (
    PO_MATCHING_JSON_SCHEMA,
    MATCHING_SCHEMA_NAME,
    MATCHING_SCHEMA_VERSION,
)
from ap_recon.utils.logging import setup_logging


logger = setup_logging(__name__)


class MatchingRequest(BaseModel):
    """Everything the extraction call needs."""
    prompt: str
    json_schema: Dict[str, Any]
    schema_name: str = MATCHING_SCHEMA_NAME
    schema_version: str = MATCHING_SCHEMA_VERSION


MATCHING_RULES = """# RULES
- Match each invoice line to exactly one `matchingReceipts` entry.
- Primary key: exact item number equality (`invoice.itemNo == receipt.itemNo`). Some variations in format (i.e. hyphens and spaces are fine, but the item number should be the same)
- Item description can also be used for matching if item number matching is vague.
- Quantities, unit pricing, and total pricings should be close
- Matches should ensure that date invoiced (on invoice) should be prior to date received (on PO receipt)
- Never split one invoice line across multiple receipts.
- If any invoice line fails item match, add a concise message to `error`. Still return matches for other lines if any. If no matches, return an empty header."""

VENDOR_FIELD_MAPPING = """# VENDOR FIELD MAPPING
Populate header fields from the vendor object in matchPayload as follows:
- APAcct: use vendor.apAcct (NOT apapAcct)
- APSub: use vendor.apSub (NOT apapSub)
- Freight-Account: use vendor.freightAccount
- Freight-Subaccount: use vendor.freightSubAccount
- Misc-Charge-Account: use vendor.miscChargeAccount
- Misc-Charge-Subaccount: use vendor.miscChargeSubAccount"""

OUTPUT_TEMPLATE = """{
  "headers": [
    {
      "Company-Code": "<string>",
      "VendId": "<string>",
      "TermsId": "<string>",
      "TermsDaysInt": <integer>, // convert termsID to an integer in days
      "APAcct": "<string>",
      "APSub": "<string>",
      "Freight-Account": "<string>",
      "Freight-Subaccount": "<string>",
      "Misc-Charge-Account": "<string>",
      "Misc-Charge-Subaccount": "<string>",
      "PO-Number-Seq-Type": "<string>",
      "PO-Number": "<string>",
      "PO-Vendor": "<string>",
      "CuryId": "<string>",
      "CuryRate": <number>,
      "CuryRateType": "<string>",
      "User-Id": "<string>",
      "Job-Project-Number": "<string>",
      "details": [
        [
          {
            "match_object": <index into matchingReceipts>,
            "invoice_price": <unit price from invoice>,
            "invoice_quantity": <quantity from invoice>,
            "invoice_amount": <line total from invoice>
          }
        ]
      ]
    }
  ],
  "error": "<empty if all lines matched; otherwise explain each unmatched invoice line succinctly>"
}"""


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def parse_match_payload(raw: Any, invoice_id: str = "") -> Dict[str, Any]:
    """
    Decode MatchPayloadJSON.

    Missing or malformed payloads fall back to an empty object so that
    matching can still run.
    """
    if _is_empty(raw):
        logger.warning(f"[PromptBuilder] Invoice {invoice_id} has no MatchPayloadJSON, using empty object")
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"[PromptBuilder] Failed to parse MatchPayloadJSON for {invoice_id}, using empty object")
        return {}
    if not isinstance(payload, dict):
        logger.warning(f"[PromptBuilder] MatchPayloadJSON for {invoice_id} is not an object, using empty object")
        return {}
    return payload


def split_invoice_fields(record: StoreRecord) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Split an invoice record into its non-null field map and parsed match payload.

    The raw payload blob is removed from the field map; it reaches the prompt
    only in parsed form.
    """
    invoice_data = {k: v for k, v in record.fields.items() if not _is_empty(v)}
    raw_payload = invoice_data.pop(InvoiceField.MATCH_PAYLOAD, None)
    return invoice_data, parse_match_payload(raw_payload, record.id)


def _dump(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def create_po_matching_prompt(invoice_data: Dict[str, Any], match_payload: Dict[str, Any]) -> str:
    """Build the matching prompt."""
    return (
        "You match supplier invoices to PO receipt lines. Use only the provided JSON. "
        "Do not invent data. Output valid JSON matching the exact schema below. No extra text.\n"
        "\n"
        "## INVOICE DATA\n"
        f"{_dump(invoice_data)}\n"
        "\n"
        "## PO MATCH CANDIDATES\n"
        f"{_dump(match_payload)}\n"
        "\n"
        f"{MATCHING_RULES}\n"
        "\n"
        f"{VENDOR_FIELD_MAPPING}\n"
        "\n"
        "# Output formatting\n"
        "- JSON only. No comments. No trailing commas. Keep numbers as numbers, not strings.\n"
        "\n"
        "Using the provided invoice and PO data, identify which PO(s) the invoice relates to "
        "and produce a JSON structure in this format:\n"
        "\n"
        f"{OUTPUT_TEMPLATE}\n"
    )


def build_matching_request(invoice_data: Dict[str, Any], match_payload: Dict[str, Any]) -> MatchingRequest:
    """Prompt plus the versioned response schema."""
    prompt = create_po_matching_prompt(invoice_data, match_payload)
    return MatchingRequest(prompt=prompt, json_schema=PO_MATCHING_JSON_SCHEMA)
