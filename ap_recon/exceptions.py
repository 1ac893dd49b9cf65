"""
Error taxonomy for the reconciliation engine.

Validation problems (missing invoice fields, malformed match payload JSON) are
not exceptions: they are logged and replaced with safe defaults. Everything
below propagates to the caller.
"""

from typing import List, Optional


class ApReconError(Exception):
    """Base class for engine errors."""


class RecordStoreError(ApReconError):
    """Raised when the record store rejects a call or cannot be reached."""

    code = "MATCH_STORE_ERROR"

    def __init__(self, message: str, table: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.table = table
        self.status_code = status_code

    def __str__(self) -> str:
        prefix = f"[{self.table}] " if self.table else ""
        status = f" (HTTP {self.status_code})" if self.status_code else ""
        return f"{prefix}{self.message}{status}"


class RecordNotFoundError(RecordStoreError):
    """Raised when a record the pipeline depends on does not exist."""

    code = "INVOICE_NOT_FOUND"

    def __init__(self, table: str, record_id: str) -> None:
        super().__init__(f"{table} record {record_id} not found")
        self.table = table
        self.record_id = record_id


class WritableFieldError(ValueError):
    """Raised when a write targets a field outside the table's allow-list."""

    def __init__(self, table: str, fields: List[str]) -> None:
        super().__init__(f"Fields not writable on {table}: {', '.join(sorted(fields))}")
        self.table = table
        self.fields = fields


class ExtractionError(ApReconError):
    """Structured extraction failed; carries a short code and a description."""

    code = "MATCH_ERROR"

    def __init__(self, description: str) -> None:
        super().__init__(description)
        self.description = description


class ExtractionRefusalError(ExtractionError):
    """The model explicitly refused to answer."""

    code = "MATCH_REFUSED"


class ExtractionParseError(ExtractionError):
    """The model answered, but not with JSON matching the schema."""

    code = "MATCH_PARSE_ERROR"


class ExtractionTransportError(ExtractionError):
    """Network, timeout or provider API failure."""

    code = "MATCH_TRANSPORT_ERROR"


class MaterializationError(ApReconError):
    """Writing headers/details failed part way; ids created so far are kept."""

    code = "MATCH_STORE_ERROR"

    def __init__(
        self,
        description: str,
        header_ids: Optional[List[str]] = None,
        detail_ids: Optional[List[str]] = None,
    ) -> None:
        super().__init__(description)
        self.description = description
        self.header_ids = list(header_ids or [])
        self.detail_ids = list(detail_ids or [])
