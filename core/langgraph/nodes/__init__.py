# core/langgraph/nodes/__init__.py
"""
Provide LangGraph node factories for the continuity gate.

Node Return Convention:
Nodes return only the fields they modify. LangGraph merges partial updates
into the existing state.

Example:
    return {
        "draft_text": text,
        "repair_attempts": attempt,
    }
"""

from core.langgraph.nodes.continuity_gate_nodes import (
    build_repair_prompt,
    create_assess_node,
    create_draft_node,
    create_repair_node,
    should_repair,
)

__all__ = [
    "build_repair_prompt",
    "create_assess_node",
    "create_draft_node",
    "create_repair_node",
    "should_repair",
]
