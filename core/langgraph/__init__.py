# core/langgraph/__init__.py
"""
Integrate the chapter continuity gate with LangGraph.

This package re-exports the gate's state schema and graph builders for use by
the orchestrators and tests.
"""

from core.langgraph.state import ContinuityGateState, create_gate_state
from core.langgraph.workflow import (
    create_continuity_gate_graph,
    recursion_limit_for,
    run_continuity_gate,
)

__all__ = [
    # State
    "ContinuityGateState",
    "create_gate_state",
    # Workflow
    "create_continuity_gate_graph",
    "recursion_limit_for",
    "run_continuity_gate",
]
