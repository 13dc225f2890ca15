# core/langgraph/state.py
"""
LangGraph state schema for the continuity gate.

State Field Organization:
- Request: immutable inputs for the chapter being drafted
- Draft: the current candidate text
- Gate: the latest assessment and repair bookkeeping
"""

from __future__ import annotations

from typing import TypedDict

from models.narrative_models import ContinuityAssessment


class ContinuityGateState(TypedDict, total=False):
    # Request
    chapter_number: int
    base_prompt: str
    gate_enabled: bool
    max_repair_attempts: int

    # Draft
    draft_text: str

    # Gate
    assessment: ContinuityAssessment
    repair_attempts: int
    score_history: list[float]


def create_gate_state(
    *,
    chapter_number: int,
    base_prompt: str,
    max_repair_attempts: int,
    gate_enabled: bool = True,
) -> ContinuityGateState:
    return ContinuityGateState(
        chapter_number=chapter_number,
        base_prompt=base_prompt,
        gate_enabled=gate_enabled,
        max_repair_attempts=max(0, max_repair_attempts),
        draft_text="",
        repair_attempts=0,
        score_history=[],
    )
