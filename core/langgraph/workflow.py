# core/langgraph/workflow.py
"""
Build the LangGraph continuity gate.

The graph is strictly sequential:

    draft -> assess -> (repair -> assess)* -> END

`should_repair` bounds the loop by `max_repair_attempts`, so a gate with N
attempts makes at most N + 1 model calls.
"""

from __future__ import annotations

from typing import Any

import structlog
from langgraph.graph import END, StateGraph  # type: ignore[import-not-found, attr-defined]

from core.langgraph.nodes.continuity_gate_nodes import (
    DraftAssessor,
    DraftGenerator,
    create_assess_node,
    create_draft_node,
    create_repair_node,
    should_repair,
)
from core.langgraph.state import ContinuityGateState

logger = structlog.get_logger(__name__)


def create_continuity_gate_graph(generate: DraftGenerator, assess: DraftAssessor) -> Any:
    """Compile the draft/assess/repair graph.

    Args:
        generate: Async callable `(prompt, temperature, label) -> text`.
        assess: Callable scoring a draft text.

    Returns:
        A compiled graph; run it with `run_continuity_gate`.
    """
    workflow = StateGraph(ContinuityGateState)

    workflow.add_node("draft", create_draft_node(generate))
    workflow.add_node("assess", create_assess_node(assess))
    workflow.add_node("repair", create_repair_node(generate))

    workflow.set_entry_point("draft")
    workflow.add_edge("draft", "assess")
    workflow.add_conditional_edges(
        "assess",
        should_repair,
        {
            "repair": "repair",
            "done": END,
        },
    )
    workflow.add_edge("repair", "assess")

    return workflow.compile()


def recursion_limit_for(max_repair_attempts: int) -> int:
    # draft + assess, then repair + assess per attempt, plus headroom
    return 2 * (max_repair_attempts + 1) + 4


async def run_continuity_gate(graph: Any, state: ContinuityGateState) -> ContinuityGateState:
    result = await graph.ainvoke(
        state,
        config={"recursion_limit": recursion_limit_for(state.get("max_repair_attempts", 0))},
    )
    logger.debug(
        "run_continuity_gate: finished",
        chapter=state.get("chapter_number"),
        repair_attempts=result.get("repair_attempts", 0),
        scores=result.get("score_history", []),
    )
    return result
