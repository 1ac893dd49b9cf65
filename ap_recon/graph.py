"""
LangGraph orchestration for the PO matching run.
Defines the graph structure and node routing logic.
"""

from typing import Literal
from langgraph.graph import StateGraph, END

from ap_recon.state import MatchingState
from ap_recon.agents.matching import (
    load_invoice,
    generate_matches,
    materialize_records,
    finalize_invoice,
)


def route_after_load(state: MatchingState) -> Literal["generate_matches", "end"]:
    """Stop early when the invoice already links headers."""
    if state.skipped:
        return "end"
    return "generate_matches"


def build_matching_graph() -> StateGraph:
    """
    Build the LangGraph workflow for one invoice.

    Flow:
    1. load_invoice - fetch invoice, split fields and match payload
    2. generate_matches - prompt + structured LLM call
    3. materialize_records - create headers and details
    4. finalize_invoice - Status, links, Balance, Warnings

    Errors raised by a node abort the run and propagate to the caller.
    """

    graph = StateGraph(MatchingState)

    graph.add_node("load_invoice", load_invoice)
    graph.add_node("generate_matches", generate_matches)
    graph.add_node("materialize_records", materialize_records)
    graph.add_node("finalize_invoice", finalize_invoice)

    graph.set_entry_point("load_invoice")

    graph.add_conditional_edges(
        "load_invoice",
        route_after_load,
        {
            "generate_matches": "generate_matches",
            "end": END,
        }
    )
    graph.add_edge("generate_matches", "materialize_records")
    graph.add_edge("materialize_records", "finalize_invoice")
    graph.add_edge("finalize_invoice", END)

    return graph.compile()


# Global compiled graph (singleton)
_matching_graph = None


def get_matching_graph():
    """Get or create the compiled matching graph."""
    global _matching_graph
    if _matching_graph is None:
        _matching_graph = build_matching_graph()
    return _matching_graph
