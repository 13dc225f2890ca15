# core/langgraph/nodes/continuity_gate_nodes.py
"""
Node factories for the continuity gate graph.

Each factory closes over its collaborators and returns an async LangGraph node:

- draft: generate the initial chapter text at the drafting temperature
- assess: score the current draft
- repair: regenerate from a repair prompt at the revision temperature

Nodes return partial state updates; LangGraph merges them into the state.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Literal

import structlog

import config
from core.langgraph.state import ContinuityGateState
from models.narrative_models import ContinuityAssessment
from prompts.prompt_renderer import render_prompt

logger = structlog.get_logger(__name__)

DraftGenerator = Callable[[str, float, str], Awaitable[str]]
DraftAssessor = Callable[[str], ContinuityAssessment]

REPAIR_ISSUE_LIMIT = 5
REPAIR_INSTRUCTIONS: tuple[str, ...] = (
    "Open by explicitly continuing from the previous chapter's final state: time, place, conflict, or character condition.",
    "Carry forward or respond to at least one of the recent key events; the chapter must not read like a fresh start.",
    "Advance at least one unresolved hook, or make clear why it is deferred.",
    "Output the complete chapter text only, with no explanations or outlines.",
)


def build_repair_prompt(state: ContinuityGateState) -> str:
    assessment = state["assessment"]
    return render_prompt(
        "chapter_writer/repair_continuity.j2",
        {
            "base_prompt": state["base_prompt"],
            "draft": state["draft_text"],
            "chapter_number": state["chapter_number"],
            "score": assessment.score,
            "verdict": assessment.verdict,
            "issues": assessment.issues[:REPAIR_ISSUE_LIMIT],
            "repair_instructions": REPAIR_INSTRUCTIONS,
        },
    )


def create_draft_node(generate: DraftGenerator) -> Callable[[ContinuityGateState], Awaitable[dict[str, Any]]]:
    async def draft(state: ContinuityGateState) -> dict[str, Any]:
        logger.info("draft: generating initial chapter text", chapter=state["chapter_number"])
        text = await generate(state["base_prompt"], config.TEMPERATURE_DRAFTING, "chapter_draft")
        return {"draft_text": text}

    return draft


def create_assess_node(assess: DraftAssessor) -> Callable[[ContinuityGateState], Awaitable[dict[str, Any]]]:
    async def assess_draft(state: ContinuityGateState) -> dict[str, Any]:
        assessment = assess(state["draft_text"])
        logger.info(
            "assess: draft assessed",
            chapter=state["chapter_number"],
            score=assessment.score,
            verdict=assessment.verdict,
            repair_attempts=state.get("repair_attempts", 0),
        )
        return {
            "assessment": assessment,
            "score_history": [*state.get("score_history", []), assessment.score],
        }

    return assess_draft


def create_repair_node(generate: DraftGenerator) -> Callable[[ContinuityGateState], Awaitable[dict[str, Any]]]:
    async def repair(state: ContinuityGateState) -> dict[str, Any]:
        attempt = state.get("repair_attempts", 0) + 1
        logger.info(
            "repair: regenerating draft for continuity",
            chapter=state["chapter_number"],
            attempt=attempt,
            previous_score=state["assessment"].score,
        )
        text = await generate(build_repair_prompt(state), config.TEMPERATURE_REVISION, "chapter_repair")
        return {"draft_text": text, "repair_attempts": attempt}

    return repair


def should_repair(state: ContinuityGateState) -> Literal["repair", "done"]:
    """Route to another repair while the draft has not passed and attempts remain."""
    if not state.get("gate_enabled", True):
        return "done"
    if state["assessment"].verdict == "pass":
        return "done"
    if state.get("repair_attempts", 0) >= state.get("max_repair_attempts", 0):
        logger.info(
            "should_repair: repair attempts exhausted",
            chapter=state["chapter_number"],
            verdict=state["assessment"].verdict,
        )
        return "done"
    return "repair"
