# tests/fakes/story.py
"""A small seeded novel shared by the generation tests."""

from __future__ import annotations

from models.narrative_models import (
    Chapter,
    ChapterSummary,
    ContinuityAssessment,
    ContinuityIssue,
    ContinuityMetrics,
    GenerationStage,
    Novel,
)
from processing.continuity_assessor import verdict_for_score
from tests.fakes.in_memory_store import InMemoryNarrativeStore

NOVEL_ID = "n1"
FIRST_CHAPTER_TEXT = "The bell tower fell. Mara fled north."
CONTINUING_DRAFT = (
    "Shortly after the bell tower fell, Mara fled north. "
    "Mara stole the ledger back from the guard and hid the sealed letter in her boot."
)
UNRELATED_DRAFT = "Zzz qqq xxx."


async def seed_story(
    store: InMemoryNarrativeStore,
    *,
    novel_stage: GenerationStage = GenerationStage.DRAFTING,
    second_stage: GenerationStage = GenerationStage.CHAPTERS,
) -> Novel:
    """Seed a completed chapter 1 (with summary) and an undrafted chapter 2."""
    novel = Novel(id=NOVEL_ID, title="The Salt Road", workflow_stage=novel_stage)
    await store.save_novel(novel)
    await store.save_chapter(
        Chapter(
            id="c1",
            novel_id=NOVEL_ID,
            order=1,
            title="The Fall",
            content=FIRST_CHAPTER_TEXT,
            generation_stage=GenerationStage.COMPLETED,
        )
    )
    await store.save_chapter(
        Chapter(
            id="c2",
            novel_id=NOVEL_ID,
            order=2,
            title="The Harbour",
            outline="Mara reaches the harbour.\nShe meets Captain Reth.",
            generation_stage=second_stage,
        )
    )
    await store.save_summary(
        ChapterSummary(
            novel_id=NOVEL_ID,
            chapter_number=1,
            key_events=["Mara stole the ledger"],
            hooks_planted=["the sealed letter"],
        )
    )
    return novel


def scripted_assessment(score: float, pass_score: float = 6.8, reject_score: float = 4.9) -> ContinuityAssessment:
    """Assessment with a fixed score, for tests that script the gate outcome."""
    verdict = verdict_for_score(score, pass_score, reject_score)
    issues = (
        []
        if verdict == "pass"
        else [ContinuityIssue(severity="major", category="event_chain", message=f"weak continuation ({score})")]
    )
    return ContinuityAssessment(
        score=score,
        verdict=verdict,
        issues=issues,
        metrics=ContinuityMetrics(opening_coverage=0.5, event_coverage=0.5, hook_coverage=0.5),
    )


def assessor_by_content(scores: dict[str, float]):
    """Build a drop-in for `assess_continuity` that scores drafts by their exact text."""

    def assess(draft_text, previous_chapters, summaries, gate=None, *, unresolved_hooks=None):
        if gate is None:
            return scripted_assessment(scores[draft_text])
        return scripted_assessment(scores[draft_text], gate.pass_score, gate.reject_score)

    return assess
