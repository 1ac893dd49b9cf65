"""
Shared state object for the matching run.
Every graph node reads/writes this state to coordinate its work.
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
from datetime import datetime

from ap_recon.schemas.records import InvoiceRecord
from ap_recon.schemas.matching import POMatchingResponse
from ap_recon.agents.materializer import MaterializedRecords


class ReasoningLogEntry(BaseModel):
    """A single entry in the run log."""
    timestamp: datetime
    agent_name: str
    message: str
    action: Optional[str] = None


class MatchingState(BaseModel):
    """
    State for one invoice's matching run.

    Each node:
    1. Reads relevant state
    2. Performs its step against the store / LLM
    3. Updates state with results
    4. Adds a log entry
    """

    # Run identification
    invoice_id: str
    force: bool = False
    started_at: datetime = Field(default_factory=datetime.utcnow)

    # Load phase
    invoice: Optional[InvoiceRecord] = None
    invoice_data: Dict[str, Any] = Field(default_factory=dict)
    match_payload: Dict[str, Any] = Field(default_factory=dict)
    skipped: bool = False

    # Generate phase
    matching_response: Optional[POMatchingResponse] = None

    # Materialize phase
    materialized: Optional[MaterializedRecords] = None

    # Finalize phase
    balance: Optional[float] = None
    warnings: List[Dict[str, Any]] = Field(default_factory=list)

    # Run log
    reasoning_log: List[ReasoningLogEntry] = Field(default_factory=list)

    def add_reasoning(
        self,
        agent_name: str,
        message: str,
        action: Optional[str] = None
    ) -> None:
        """Add an entry to the run log."""
        self.reasoning_log.append(
            ReasoningLogEntry(
                timestamp=datetime.utcnow(),
                agent_name=agent_name,
                message=message,
                action=action,
            )
        )

    def get_agent_reasoning(self) -> str:
        """Human-readable run log."""
        if not self.reasoning_log:
            return "No reasoning available."
        return "\n".join(f"[{entry.agent_name}] {entry.message}" for entry in self.reasoning_log)

    def get_summary(self) -> Dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "skipped": self.skipped,
            "headers_created": len(self.materialized.header_ids) if self.materialized else 0,
            "details_created": len(self.materialized.detail_ids) if self.materialized else 0,
            "balance": self.balance,
            "warnings": len(self.warnings),
        }
