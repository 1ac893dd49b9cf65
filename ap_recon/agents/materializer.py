"""
Match Result Materializer
Turns the LLM's headers/details plus the ordered receipt candidates into
PO-Invoice-Header and PO-Invoice-Detail records.
"""

from typing import Optional, List, Dict, Any, Tuple
from pydantic import BaseModel, Field

from ap_recon.exceptions import RecordStoreError, MaterializationError
from ap_recon.schemas.records import Table, HeaderFields, DetailFields
from ap_recon.schemas.matching import (
    MatchPayload,
    MatchedHeader,
    MatchObject,
    ReceiptCandidate,
    POMatchingResponse,
)
from ap_recon.utils.logging import setup_logging, log_pipeline_action
from ap_recon.config import get_config


logger = setup_logging(__name__)
config = get_config()


# Receipt attributes copied onto a detail; names are shared by both models
RECEIPT_DETAIL_FIELDS = [
    "item_no",
    "item_description",
    "step",
    "po_release_number",
    "po_line_number",
    "vendor_ship_number",
    "date_received",
    "quantity_received",
    "quantity_accepted",
    "purchase_price",
    "pricing_quantity",
    "expense_account",
    "expense_subaccount",
    "standard_cost",
    "surcharge",
    "unit_of_measure",
    "job_project_number",
]


class MaterializedDetail(BaseModel):
    """One detail as planned and written."""
    header_index: int
    line_number: int  # 1-based invoice line, counted across headers
    match: MatchObject
    receipt: Optional[ReceiptCandidate] = None
    fields: Dict[str, Any] = Field(default_factory=dict)
    detail_id: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.receipt is not None


class MaterializedRecords(BaseModel):
    """Ids created by a materializer run plus what was written."""
    header_ids: List[str] = Field(default_factory=list)
    detail_ids: List[str] = Field(default_factory=list)
    details: List[MaterializedDetail] = Field(default_factory=list)
    empty_lines: List[int] = Field(default_factory=list)  # invoice lines with no match object


def build_header_fields(header: MatchedHeader, invoice_id: str, operator_id: Optional[str] = None) -> HeaderFields:
    """Whitelisted header fields, linked to the invoice and stamped with the operator."""
    data = header.model_dump(exclude={"details"})
    data["user_id"] = operator_id or config.MATCH_OPERATOR_ID
    return HeaderFields(invoice=[invoice_id], **data)


def build_detail_fields(
    match: MatchObject,
    receipt: Optional[ReceiptCandidate],
    header_id: str,
    vendor_ppv: Optional[Dict[str, Any]] = None,
) -> DetailFields:
    """
    Detail fields for one match object.

    Invoice-side pricing always comes from the match object. Receipt-side
    fields and the vendor PPV accounts are added only when the receipt
    resolved.
    """
    data: Dict[str, Any] = {
        "header": [header_id],
        "invoice_price": match.invoice_price,
        "quantity_invoiced": match.invoice_quantity,
        "line_amount": match.invoice_amount,
    }
    if receipt is not None:
        for name in RECEIPT_DETAIL_FIELDS:
            value = getattr(receipt, name)
            if value is not None and value != "":
                data[name] = value
        for name, value in (vendor_ppv or {}).items():
            if value is not None and value != "":
                data[name] = value
    return DetailFields(**data)


def _vendor_ppv(payload: MatchPayload) -> Dict[str, Any]:
    if payload.vendor is None:
        return {}
    return {
        "ppv_account": payload.vendor.ppv_account,
        "ppv_subaccount": payload.vendor.ppv_subaccount,
    }


def plan_details(
    header: MatchedHeader,
    header_index: int,
    header_id: str,
    payload: MatchPayload,
    first_line_number: int,
) -> Tuple[List[MaterializedDetail], List[int]]:
    """
    Flatten one header's details into planned records.

    Lines are walked in order and matches within a line in order. A match
    whose index does not resolve becomes an invoice-side-only detail.
    """
    planned: List[MaterializedDetail] = []
    empty_lines: List[int] = []
    ppv = _vendor_ppv(payload)

    for offset in range(len(header.details)):
        line_number = first_line_number + offset
        line = header.details[offset]
        if not line:
            empty_lines.append(line_number)
            continue
        for position in range(len(line)):
            match = line[position]
            receipt = payload.receipt_at(match.match_object)
            if receipt is None:
                logger.warning(
                    f"[Materializer] No receipt found at index {match.match_object} "
                    f"({len(payload.matching_receipts)} candidates); writing invoice fields only"
                )
            fields = build_detail_fields(match, receipt, header_id, ppv)
            planned.append(
                MaterializedDetail(
                    header_index=header_index,
                    line_number=line_number,
                    match=match,
                    receipt=receipt,
                    fields=fields.to_store_fields(),
                )
            )
    return planned, empty_lines


async def materialize_matches(
    store,
    response: POMatchingResponse,
    invoice_id: str,
    payload: MatchPayload,
    operator_id: Optional[str] = None,
) -> MaterializedRecords:
    """
    Create headers and their details, header by header in array order.

    A store failure stops the run and raises MaterializationError carrying
    the ids already created; nothing is rolled back.
    """
    result = MaterializedRecords()
    if not response.headers:
        logger.info(f"[Materializer] No headers to create for {invoice_id}")
        return result

    log_pipeline_action(logger, "Materializer", "Creating headers", {
        "invoice_id": invoice_id,
        "header_count": len(response.headers),
    })

    next_line_number = 1
    for index, header in enumerate(response.headers):
        header_fields = build_header_fields(header, invoice_id, operator_id).to_store_fields()
        try:
            created = await store.create(Table.HEADERS, [header_fields])
        except RecordStoreError as e:
            logger.error(f"[Materializer] Failed creating header {index + 1}/{len(response.headers)}: {e}")
            raise MaterializationError(
                f"Failed to create header {index + 1}: {e}",
                header_ids=result.header_ids,
                detail_ids=result.detail_ids,
            ) from e

        header_id = created[0].id
        result.header_ids.append(header_id)
        logger.info(f"[Materializer] Created header {header_id}")

        planned, empty_lines = plan_details(header, index, header_id, payload, next_line_number)
        next_line_number += len(header.details)
        result.empty_lines.extend(empty_lines)

        if not planned:
            continue

        try:
            created_details = await store.create(Table.DETAILS, [d.fields for d in planned])
        except RecordStoreError as e:
            logger.error(f"[Materializer] Failed creating details for header {header_id}: {e}")
            raise MaterializationError(
                f"Failed to create details for header {header_id}: {e}",
                header_ids=result.header_ids,
                detail_ids=result.detail_ids,
            ) from e

        for detail, record in zip(planned, created_details):
            detail.detail_id = record.id
        result.details.extend(planned)
        result.detail_ids.extend(record.id for record in created_details)
        logger.info(f"[Materializer] Created {len(created_details)} detail(s) for header {header_id}")

    log_pipeline_action(logger, "Materializer", "Records created", {
        "invoice_id": invoice_id,
        "header_count": len(result.header_ids),
        "detail_count": len(result.detail_ids),
    })
    return result
