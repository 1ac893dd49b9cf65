"""
Variance & Warning Deriver
Write side: computes Balance and the stored Warnings for a freshly matched
invoice. Read side: regenerates DetailedIssues, the analysis summary and the
variance info from stored Balance + Warnings alone.
"""

import re
from typing import Optional, List, Dict, Any, Tuple

from ap_recon.schemas.records import InvoiceRecord
from ap_recon.schemas.output import DetailedIssue, IssueDetails, IssueType, VarianceInfo
from ap_recon.agents.materializer import MaterializedRecords
from ap_recon.utils import (
    to_float,
    calculate_percentage_variance,
    format_money,
    format_signed_money,
    format_number,
)
from ap_recon.utils.logging import setup_logging, log_issue
from ap_recon.config import get_config


logger = setup_logging(__name__)
config = get_config()


WARNING_LINE_AMOUNT = "line_amount"
WARNING_MISSING_RECEIPTS = "missing_receipts"
WARNING_AI_MATCHING = "ai_matching"
WARNING_MISSING_PO = "missing_po"

_EPSILON = 1e-6


def _differs(a: Optional[float], b: Optional[float]) -> bool:
    return a is not None and b is not None and abs(a - b) > _EPSILON


# ---------------------------------------------------------------------------
# Write side
# ---------------------------------------------------------------------------

def compute_balance(invoice: InvoiceRecord, records: MaterializedRecords) -> float:
    """
    Invoice subtotal minus matched PO total, summed across every header.

    A resolved detail contributes Quantity-Invoiced x Purchase-Price. A detail
    without a usable PO price contributes its Line-Amount, so it nets out.
    """
    po_total = 0.0
    for detail in records.details:
        qty = detail.match.invoice_quantity
        price = detail.receipt.purchase_price if detail.resolved else None
        if qty is not None and price is not None:
            po_total += qty * price
        else:
            po_total += detail.match.invoice_amount or 0.0
    return round(invoice.subtotal() - po_total, 2)


def _line_amount_items(records: MaterializedRecords) -> List[Dict[str, Any]]:
    items = []
    for detail in records.details:
        if not detail.resolved:
            continue
        doc_qty = detail.match.invoice_quantity
        rec_qty = detail.receipt.received_quantity()
        doc_price = detail.match.invoice_price
        rec_price = detail.receipt.purchase_price
        if _differs(doc_qty, rec_qty) or _differs(doc_price, rec_price):
            items.append({
                "LineNo": detail.line_number,
                "ItemNo": detail.receipt.item_no,
                "DocQty": doc_qty,
                "RecQty": rec_qty,
                "DocPrice": doc_price,
                "RecPrice": rec_price,
            })
    return items


def _missing_receipt_details(records: MaterializedRecords) -> List[Dict[str, Any]]:
    missing = [
        {
            "line_number": line_number,
            "item_name": None,
            "invoice_quantity": None,
            "invoice_price": None,
            "invoice_amount": None,
        }
        for line_number in records.empty_lines
    ]
    for detail in records.details:
        if detail.resolved:
            continue
        # No usable candidate at the index the model chose
        missing.append({
            "line_number": detail.line_number,
            "item_name": f"Receipt #{detail.match.match_object} (unresolved)",
            "invoice_quantity": detail.match.invoice_quantity,
            "invoice_price": detail.match.invoice_price,
            "invoice_amount": detail.match.invoice_amount,
        })
    missing.sort(key=lambda d: d["line_number"])
    return missing


def generate_match_warnings(records: MaterializedRecords, llm_error: str = "") -> List[Dict[str, Any]]:
    """Stored Warnings for a matching run, in a fixed order."""
    warnings: List[Dict[str, Any]] = []

    items = _line_amount_items(records)
    if items:
        warnings.append({"Type": WARNING_LINE_AMOUNT, "Items": items})

    missing = _missing_receipt_details(records)
    if missing:
        line_numbers = sorted({d["line_number"] for d in missing})
        warnings.append({
            "Type": WARNING_MISSING_RECEIPTS,
            "ItemDetails": missing,
            "ItemLineNumbers": ", ".join(str(n) for n in line_numbers),
        })

    if llm_error and llm_error.strip():
        warnings.append({"Type": WARNING_AI_MATCHING, "Message": llm_error.strip()})

    return warnings


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

def parse_error_code(code: Optional[str]) -> str:
    """'[MATCH_REFUSED] Model refused' -> 'Model refused'."""
    if not code:
        return ""
    match = re.match(r"^\[.*?\]\s*(.*)$", code)
    return match.group(1) if match else code


def parse_error_description(description: Optional[str]) -> str:
    """First sentence of a stored description."""
    if not description:
        return ""
    dot = description.find(".")
    return description[:dot + 1] if dot != -1 else description


def _line_number(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _line_reference(value: Any) -> str:
    return f"Line {value}" if value not in (None, "") else "Unknown Line"


def _pct_impact(actual: float, expected: float) -> str:
    pct = calculate_percentage_variance(actual, expected)
    return f"+{pct:.1f}%" if pct > 0 else f"{pct:.1f}%"


def _dollar_impact(value: float) -> str:
    return f"+${value:.2f}" if value > 0 else f"-${abs(value):.2f}"


def _line_amount_issues(warning: Dict[str, Any]) -> List[DetailedIssue]:
    issues = []
    items = warning.get("Items")
    if not isinstance(items, list):
        return issues

    for item in items:
        if not isinstance(item, dict):
            continue
        doc_qty = to_float(item.get("DocQty"))
        rec_qty = to_float(item.get("RecQty"))
        doc_price = to_float(item.get("DocPrice"))
        rec_price = to_float(item.get("RecPrice"))
        line_no = item.get("LineNo")
        item_no = item.get("ItemNo")
        item_ref = str(item_no) if item_no not in (None, "") else None

        if _differs(doc_qty, rec_qty):
            issues.append(DetailedIssue(
                type=IssueType.QUANTITY_MISMATCH,
                severity="warning",
                line_number=_line_number(line_no),
                line_reference=_line_reference(line_no),
                item_reference=item_ref,
                description="Quantity mismatch vs PO",
                impact=_pct_impact(doc_qty, rec_qty),
                dollar_impact=_dollar_impact((doc_qty - rec_qty) * (doc_price or 0.0)),
                details=IssueDetails(
                    invoice_value=format_number(doc_qty),
                    po_value=format_number(rec_qty),
                    quantity=doc_qty,
                    unit_price=f"${format_number(doc_price)}" if doc_price else None,
                ),
            ))

        if _differs(doc_price, rec_price):
            issues.append(DetailedIssue(
                type=IssueType.PRICE_VARIANCE,
                severity="warning",
                line_number=_line_number(line_no),
                line_reference=_line_reference(line_no),
                item_reference=item_ref,
                description="Unit price mismatch vs PO",
                impact=_pct_impact(doc_price, rec_price),
                dollar_impact=_dollar_impact((doc_price - rec_price) * (doc_qty or 0.0)),
                details=IssueDetails(
                    invoice_value=f"${format_number(doc_price)}",
                    po_value=f"${format_number(rec_price)}",
                    quantity=doc_qty,
                ),
            ))
    return issues


def _missing_receipt_issues(warning: Dict[str, Any]) -> List[DetailedIssue]:
    details = warning.get("ItemDetails")
    if isinstance(details, list):
        issues = []
        for detail in details:
            if not isinstance(detail, dict):
                continue
            amount = to_float(detail.get("invoice_amount"), 0.0)
            line_no = detail.get("line_number")
            issues.append(DetailedIssue(
                type=IssueType.UNMATCHED_ITEM,
                severity="error",
                line_number=_line_number(line_no),
                line_reference=_line_reference(line_no),
                item_reference=detail.get("item_name"),
                description="Item not found on original PO",
                impact="Full value",
                dollar_impact=f"+${amount:.2f}" if amount > 0 else f"${amount:.2f}",
                details=IssueDetails(
                    item_description=detail.get("item_name") or "Unmatched item",
                    quantity=to_float(detail.get("invoice_quantity")),
                    unit_price=format_number(detail["invoice_price"]) if detail.get("invoice_price") is not None else None,
                ),
            ))
        return issues

    # Older records carry only the joined line numbers
    if warning.get("ItemLineNumbers"):
        return [DetailedIssue(
            type=IssueType.UNMATCHED_ITEM,
            severity="error",
            line_reference=f"Line {warning['ItemLineNumbers']}",
            description="Item not found on original PO",
            impact="Full value",
            details=IssueDetails(item_description="Unmatched item"),
        )]
    return []


def transform_warning_to_issues(warning: Dict[str, Any]) -> List[DetailedIssue]:
    """Convert one stored warning into DetailedIssues."""
    warning_type = str(warning.get("Type", "")).strip()

    if warning_type == WARNING_LINE_AMOUNT:
        return _line_amount_issues(warning)

    if warning_type == WARNING_MISSING_RECEIPTS:
        return _missing_receipt_issues(warning)

    if warning_type == WARNING_AI_MATCHING and warning.get("Message"):
        return [DetailedIssue(
            type=IssueType.UNMATCHED_ITEM,
            severity="error",
            line_reference="General",
            description=str(warning["Message"]),
            impact="Review needed",
        )]

    if warning_type == WARNING_MISSING_PO:
        return [DetailedIssue(
            type=IssueType.MISSING_PO,
            severity="error",
            line_reference="General",
            description=str(warning.get("Message") or "No matching purchase order found"),
            impact="Full value",
        )]

    if warning_type:
        logger.debug(f"[Variance] Ignoring unknown warning type {warning_type!r}")
    return []


def describe_balance(balance: float) -> str:
    """Human-readable sign mapping of a non-zero balance."""
    relation = "more than" if balance > 0 else "less than"
    return f"Invoice subtotal is {abs(balance):.2f} {relation} PO total"


def _balance_issue(balance: Optional[float], issues: List[DetailedIssue]) -> Optional[DetailedIssue]:
    """A price-variance issue for any balance the line-level issues do not explain."""
    if balance is None or abs(balance) <= config.BALANCE_TOLERANCE:
        return None

    explained = 0.0
    for issue in issues:
        if issue.type == IssueType.PRICE_VARIANCE and issue.dollar_impact and issue.line_reference != "Invoice total":
            explained += to_float(issue.dollar_impact.replace("$", "").replace(",", ""), 0.0)
    if abs(balance - explained) <= config.BALANCE_TOLERANCE:
        return None

    return DetailedIssue(
        type=IssueType.PRICE_VARIANCE,
        severity="warning",
        line_reference="Invoice total",
        description=describe_balance(balance),
        impact="over" if balance > 0 else "under",
        dollar_impact=format_signed_money(balance),
        details=IssueDetails(),
    )


def derive_issues(balance: Optional[float], warnings: List[Dict[str, Any]]) -> List[DetailedIssue]:
    """All issues for an invoice, from its stored Balance and Warnings."""
    issues: List[DetailedIssue] = []
    for warning in warnings:
        issues.extend(transform_warning_to_issues(warning))

    balance_issue = _balance_issue(balance, issues)
    if balance_issue:
        issues.append(balance_issue)
    return issues


def generate_analysis_summary(issues: List[DetailedIssue]) -> str:
    """One sentence per issue, joined; empty when there are no issues."""
    if not issues:
        return ""

    parts = []
    for issue in issues:
        part = f"Invoice {issue.line_reference or 'item'}"
        if issue.line_reference == "Invoice total":
            part = issue.description
        elif issue.type == IssueType.PRICE_VARIANCE:
            part += f" has price discrepancy: invoice {issue.details.invoice_value} vs PO {issue.details.po_value}"
        elif issue.type == IssueType.QUANTITY_MISMATCH:
            part += f" shows quantity of {issue.details.invoice_value} vs PO {issue.details.po_value}"
        elif issue.type == IssueType.UNMATCHED_ITEM:
            if issue.line_reference == "General":
                part = issue.description
            else:
                part += " has no matching PO receipt"
        elif issue.type == IssueType.MISSING_PO:
            part = issue.description

        if issue.dollar_impact:
            part += f" ({issue.dollar_impact})"
        parts.append(part.rstrip("."))

    return ". ".join(parts) + "."


def derive_variance_info(balance: Optional[float]) -> Optional[VarianceInfo]:
    if balance is None or balance == 0:
        return None
    return VarianceInfo(
        amount=format_money(balance),
        direction="over" if balance > 0 else "under",
    )


def analyze_invoice(invoice: InvoiceRecord) -> Tuple[List[DetailedIssue], str, Optional[VarianceInfo]]:
    """Issues, summary and variance info for one invoice record."""
    if invoice.warnings_unreadable:
        logger.warning(f"[Variance] Unreadable Warnings on invoice {invoice.id}; ignoring")
    issues = derive_issues(invoice.balance, invoice.warnings)
    return issues, generate_analysis_summary(issues), derive_variance_info(invoice.balance)


def log_derived_issues(invoice_id: str, issues: List[DetailedIssue]) -> None:
    for issue in issues:
        log_issue(
            logger,
            invoice_id,
            issue_type=issue.type.value,
            severity=issue.severity,
            description=issue.description,
            dollar_impact=issue.dollar_impact,
        )
