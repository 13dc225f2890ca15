# orchestration/chapter_preparation.py
"""Shared precondition checks and prompt preparation for chapter generation.

Both the single-chapter orchestrator and the branch generator draft from the
same base prompt. `ChapterPreparer` owns the steps they share:

1. `check_preconditions` fails fast with `PreconditionError` before anything is
   mutated.
2. `prepare` loads prior narrative state, assembles the context (falling back
   to chapter endings when the store read fails), resolves the model and
   system prompt, and renders the draft prompt.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

import config
from core.exceptions import ContextAssemblyError, DatabaseError, PreconditionError
from core.llm_interface import GenerationRuntime, resolve_model
from data_access.narrative_store import NarrativeStore
from models.narrative_models import (
    AgentProfile,
    Chapter,
    ChapterCard,
    ChapterSummary,
    ContinuityAssessment,
    GenerationStage,
    Novel,
)
from orchestration.chapter_card import format_chapter_card_for_prompt, resolve_chapter_card
from processing.context_assembler import ContextAssembler, build_fallback_context
from processing.continuity_assessor import ContinuityGateConfig, assess_continuity
from processing.continuity_signals import build_continuity_context
from processing.hook_tracker import HookTracker
from processing.pending_entity_gate import PendingEntityGate
from prompts.prompt_renderer import get_system_prompt, render_prompt

logger = structlog.get_logger(__name__)

WRITER_AGENT = "chapter_writer"
DEFAULT_WORD_COUNT_TARGET = 3000


class ChapterTarget(BaseModel):
    novel: Novel
    chapter: Chapter
    previous_chapters: list[Chapter] = Field(default_factory=list)


class PreparedChapter(BaseModel):
    """Everything a drafting call needs, resolved once per request."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    novel: Novel
    chapter: Chapter
    previous_chapters: list[Chapter]
    summaries: list[ChapterSummary]
    unresolved_hooks: list[str] | None = None
    outline: str = ""
    chapter_card: ChapterCard | None = None
    model: str
    system_prompt: str | None = None
    base_prompt: str
    context_warnings: list[str] = Field(default_factory=list)

    def assess(self, draft_text: str, gate: ContinuityGateConfig) -> ContinuityAssessment:
        return assess_continuity(
            draft_text,
            self.previous_chapters,
            self.summaries,
            gate,
            unresolved_hooks=self.unresolved_hooks,
        )


class ChapterPreparer:
    def __init__(
        self,
        store: NarrativeStore,
        runtime: GenerationRuntime,
        hook_tracker: HookTracker | None = None,
        pending_gate: PendingEntityGate | None = None,
        assembler: ContextAssembler | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.hook_tracker = hook_tracker or HookTracker(store)
        self.pending_gate = pending_gate or PendingEntityGate(store)
        self.assembler = assembler or ContextAssembler(store, self.hook_tracker)

    async def check_preconditions(self, chapter_id: str) -> ChapterTarget:
        """Load the chapter and verify it may be drafted now.

        Raises:
            PreconditionError: If the chapter or novel is missing, the novel is
                not in a drafting stage, the chapter is already past `generated`,
                an earlier chapter is not completed, or pending entities from
                earlier chapters are unconfirmed.
        """
        chapter = await self.store.get_chapter(chapter_id)
        if chapter is None:
            raise PreconditionError("Chapter not found", details={"chapter_id": chapter_id})

        novel = await self.store.get_novel(chapter.novel_id)
        if novel is None:
            raise PreconditionError(
                "Novel not found for chapter",
                details={"chapter_id": chapter_id, "novel_id": chapter.novel_id},
            )
        if not novel.permits_drafting:
            raise PreconditionError(
                "Complete the chapter outline before drafting chapters",
                details={"novel_id": novel.id, "workflow_stage": novel.workflow_stage.value},
            )
        if chapter.generation_stage.rank > GenerationStage.GENERATED.rank:
            raise PreconditionError(
                "Chapter has already been reviewed and cannot be regenerated",
                details={"chapter_id": chapter_id, "generation_stage": chapter.generation_stage.value},
            )

        previous = await self.store.list_chapters(novel.id, before_order=chapter.order)
        incomplete = [c for c in previous if not c.is_completed]
        if incomplete:
            blocker = incomplete[-1]
            raise PreconditionError(
                f"Complete chapter {blocker.order} before generating chapter {chapter.order}",
                details={
                    "chapter_id": chapter_id,
                    "incomplete_chapters": [c.order for c in incomplete],
                },
            )

        report = await self.pending_gate.check_blocking(novel.id, chapter.order)
        if report.blocked:
            names = ", ".join(report.pending_names)
            raise PreconditionError(
                f"Confirm pending entities before generating this chapter: {names}",
                details={"chapter_id": chapter_id, "pending_entities": report.pending_names},
            )

        return ChapterTarget(novel=novel, chapter=chapter, previous_chapters=previous)

    async def _resolve_agent(self, agent_id: str | None) -> AgentProfile | None:
        if not agent_id:
            return None
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise PreconditionError("Agent not found", details={"agent_id": agent_id})
        return agent

    async def _assemble_context(self, chapter: Chapter, previous: Sequence[Chapter]) -> tuple[str, list[str]]:
        try:
            assembled = await self.assembler.assemble_truncated(chapter.novel_id, chapter.order)
        except ContextAssemblyError as e:
            logger.warning(
                "prepare: context assembly failed, using chapter endings",
                chapter_id=chapter.id,
                error=str(e),
            )
            return build_fallback_context(previous), ["Context assembly failed; using recent chapter endings"]
        return assembled.context, assembled.warnings

    async def _load_narrative_state(self, chapter: Chapter) -> tuple[list[ChapterSummary], list[str], list[str]]:
        """Summaries and unresolved hooks for the gate; empty with a warning when the store fails."""
        try:
            summaries = await self.store.list_summaries(
                chapter.novel_id,
                before_order=chapter.order,
                limit=config.CONTEXT_SUMMARY_CHAPTERS,
            )
            hooks = await self.hook_tracker.unresolved_descriptions(chapter.novel_id)
        except DatabaseError as e:
            logger.warning(
                "prepare: summaries and hooks unavailable, checking continuity against chapter text only",
                chapter_id=chapter.id,
                error=str(e),
            )
            return [], [], ["Summaries and hooks unavailable; continuity uses recent chapters only"]
        return summaries, hooks, []

    async def prepare(
        self,
        target: ChapterTarget,
        *,
        agent_id: str | None = None,
        outline: str | None = None,
        chapter_card: ChapterCard | dict[str, Any] | None = None,
        word_count_target: int = DEFAULT_WORD_COUNT_TARGET,
    ) -> PreparedChapter:
        novel, chapter, previous = target.novel, target.chapter, target.previous_chapters
        agent = await self._resolve_agent(agent_id)
        model = resolve_model(
            agent.model if agent else None,
            novel.default_model,
            fallback=config.NARRATIVE_MODEL,
        )
        system_prompt = (agent.system_prompt if agent else None) or get_system_prompt(WRITER_AGENT) or None

        outline_text = (outline if outline is not None else chapter.outline).strip()
        card = resolve_chapter_card(chapter_card if chapter_card is not None else chapter.chapter_card, outline_text)

        summaries, hooks, state_warnings = await self._load_narrative_state(chapter)
        context, context_warnings = await self._assemble_context(chapter, previous)
        warnings = state_warnings + context_warnings
        continuity_previous = previous[-config.CONTEXT_RECENT_CHAPTERS :] if config.CONTEXT_RECENT_CHAPTERS else []

        base_prompt = render_prompt(
            f"{WRITER_AGENT}/draft_chapter.j2",
            {
                "chapter_number": chapter.order,
                "chapter_title": chapter.title,
                "novel_title": novel.title,
                "context": context,
                "outline": outline_text,
                "chapter_card": format_chapter_card_for_prompt(card),
                "continuity_context": build_continuity_context(continuity_previous, summaries),
                "pending_entities": await self.pending_gate.format_for_context(novel.id),
                "word_count_target": word_count_target,
            },
        )

        logger.info(
            "prepare: draft prompt ready",
            chapter_id=chapter.id,
            chapter=chapter.order,
            model=model,
            prompt_tokens=self.runtime.count_tokens(base_prompt, model),
            context_warnings=len(warnings),
        )
        return PreparedChapter(
            novel=novel,
            chapter=chapter,
            previous_chapters=continuity_previous,
            summaries=summaries,
            unresolved_hooks=hooks or None,
            outline=outline_text,
            chapter_card=card,
            model=model,
            system_prompt=system_prompt,
            base_prompt=base_prompt,
            context_warnings=warnings,
        )

    async def draft(
        self,
        prepared: PreparedChapter,
        prompt: str,
        temperature: float,
        label: str,
        *,
        web_search: bool = False,
    ) -> str:
        response = await self.runtime.generate(
            prompt,
            model=prepared.model,
            temperature=temperature,
            max_tokens=self.runtime.generation_budget(prompt, prepared.model),
            system_prompt=prepared.system_prompt,
            web_search=web_search,
            label=label,
        )
        return response.content
