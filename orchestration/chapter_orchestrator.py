# orchestration/chapter_orchestrator.py
"""Generate one chapter through the continuity gate.

Flow for `generate_chapter`:

1. Hold the per-chapter advisory lock.
2. Check preconditions (no state is touched when they fail).
3. Prepare the draft prompt from assembled context, chapter card and
   continuity rules.
4. Run the LangGraph draft/assess/repair loop.
5. Reject, or commit content + stage + version in one store call.
6. Enqueue post-processing jobs; failures there are reported, not raised.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, Field

from core.concurrency import ChapterLockRegistry
from core.exceptions import ContinuityGateRejected
from core.langgraph.state import create_gate_state
from core.langgraph.workflow import create_continuity_gate_graph, run_continuity_gate
from core.llm_interface import GenerationRuntime
from core.text_processing_service import count_words
from data_access.narrative_store import NarrativeStore
from models.narrative_models import (
    ChapterCard,
    ChapterVersion,
    ContinuityAssessment,
    ContinuityIssue,
    ContinuityMetrics,
    GenerationStage,
)
from orchestration.chapter_preparation import (
    DEFAULT_WORD_COUNT_TARGET,
    ChapterPreparer,
    PreparedChapter,
)
from processing.context_assembler import ContextAssembler
from processing.continuity_assessor import ContinuityGateConfig, resolve_gate_config
from processing.hook_tracker import HookTracker
from processing.pending_entity_gate import PendingEntityGate
from processing.post_generation import JobQueue, PostProcessSummary, enqueue_post_generation_jobs

logger = structlog.get_logger(__name__)

REJECTION_ISSUE_LIMIT = 3


class ChapterGenerationOptions(BaseModel):
    agent_id: str | None = None
    outline: str | None = None
    chapter_card: ChapterCard | dict[str, Any] | None = None
    enable_web_search: bool = False
    word_count_target: int = Field(default=DEFAULT_WORD_COUNT_TARGET, ge=1)


class ContinuityGateReport(BaseModel):
    score: float
    verdict: str
    issues: list[ContinuityIssue] = Field(default_factory=list)
    metrics: ContinuityMetrics
    repair_attempts: int = 0
    pass_score: float
    reject_score: float
    score_history: list[float] = Field(default_factory=list)


class ChapterGenerationResult(BaseModel):
    chapter_id: str
    content: str
    word_count: int
    continuity_gate: ContinuityGateReport
    post_process: PostProcessSummary
    version_id: str
    pending_review: bool
    context_warnings: list[str] = Field(default_factory=list)


def build_rejection_message(assessment: ContinuityAssessment) -> str:
    issues = assessment.top_issue_messages(REJECTION_ISSUE_LIMIT)
    reason = "; ".join(issues) if issues else "the draft does not follow on from earlier chapters"
    return f"Continuity gate rejected the draft (score {assessment.score:.2f}): {reason}."


class ChapterGenerationOrchestrator:
    def __init__(
        self,
        store: NarrativeStore,
        runtime: GenerationRuntime,
        job_queue: JobQueue,
        lock_registry: ChapterLockRegistry | None = None,
        hook_tracker: HookTracker | None = None,
        pending_gate: PendingEntityGate | None = None,
        assembler: ContextAssembler | None = None,
        gate_config: ContinuityGateConfig | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.job_queue = job_queue
        self.lock_registry = lock_registry or ChapterLockRegistry()
        self.preparer = ChapterPreparer(
            store,
            runtime,
            hook_tracker=hook_tracker,
            pending_gate=pending_gate,
            assembler=assembler,
        )
        self.gate_config = gate_config

    async def generate_chapter(
        self, chapter_id: str, options: ChapterGenerationOptions | None = None
    ) -> ChapterGenerationResult:
        """Draft, gate and commit the chapter.

        Raises:
            PreconditionError: Before any work, when the chapter may not be drafted.
            ContinuityGateRejected: When the final draft scores below the reject
                threshold. Nothing is persisted.
            ExternalCallTimeout: When a model call times out.
        """
        options = options or ChapterGenerationOptions()
        gate = self.gate_config or resolve_gate_config()

        async with self.lock_registry.hold(chapter_id):
            target = await self.preparer.check_preconditions(chapter_id)
            prepared = await self.preparer.prepare(
                target,
                agent_id=options.agent_id,
                outline=options.outline,
                chapter_card=options.chapter_card,
                word_count_target=options.word_count_target,
            )
            state = await self._run_gate(prepared, gate, options.enable_web_search)

            assessment: ContinuityAssessment = state["assessment"]
            content = state["draft_text"]
            repair_attempts = state.get("repair_attempts", 0)

            if gate.enabled and assessment.verdict == "reject":
                logger.warning(
                    "generate_chapter: continuity gate rejected draft",
                    chapter_id=chapter_id,
                    score=assessment.score,
                    repair_attempts=repair_attempts,
                )
                raise ContinuityGateRejected(
                    build_rejection_message(assessment),
                    assessment=assessment,
                    repair_attempts=repair_attempts,
                    details={"chapter_id": chapter_id, "reject_score": gate.reject_score},
                )

            pending_review = assessment.verdict != "pass"
            version = await self._commit(prepared, content, assessment, pending_review)

        post_process = await enqueue_post_generation_jobs(self.job_queue, chapter_id)
        logger.info(
            "generate_chapter: chapter generated",
            chapter_id=chapter_id,
            chapter=prepared.chapter.order,
            score=assessment.score,
            verdict=assessment.verdict,
            repair_attempts=repair_attempts,
            post_process_ok=post_process.all_queued,
        )
        return ChapterGenerationResult(
            chapter_id=chapter_id,
            content=content,
            word_count=count_words(content),
            continuity_gate=ContinuityGateReport(
                score=assessment.score,
                verdict=assessment.verdict,
                issues=assessment.issues,
                metrics=assessment.metrics,
                repair_attempts=repair_attempts,
                pass_score=gate.pass_score,
                reject_score=gate.reject_score,
                score_history=state.get("score_history", []),
            ),
            post_process=post_process,
            version_id=version.id,
            pending_review=pending_review,
            context_warnings=prepared.context_warnings,
        )

    async def _run_gate(self, prepared: PreparedChapter, gate: ContinuityGateConfig, web_search: bool) -> Any:
        async def generate(prompt: str, temperature: float, label: str) -> str:
            return await self.preparer.draft(prepared, prompt, temperature, label, web_search=web_search)

        def assess(draft_text: str) -> ContinuityAssessment:
            return prepared.assess(draft_text, gate)

        graph = create_continuity_gate_graph(generate, assess)
        return await run_continuity_gate(
            graph,
            create_gate_state(
                chapter_number=prepared.chapter.order,
                base_prompt=prepared.base_prompt,
                max_repair_attempts=gate.max_repair_attempts,
                gate_enabled=gate.enabled,
            ),
        )

    async def _commit(
        self,
        prepared: PreparedChapter,
        content: str,
        assessment: ContinuityAssessment,
        pending_review: bool,
    ) -> ChapterVersion:
        chapter = prepared.chapter.model_copy(deep=True)
        chapter.content = content
        chapter.advance_stage(GenerationStage.GENERATED)
        chapter.pending_review = pending_review
        if prepared.outline:
            chapter.outline = prepared.outline
        if prepared.chapter_card is not None:
            chapter.chapter_card = prepared.chapter_card.model_dump()

        version = ChapterVersion(chapter_id=chapter.id, content=content, continuity_score=assessment.score)
        await self.store.commit_chapter_content(chapter, version)
        return version
