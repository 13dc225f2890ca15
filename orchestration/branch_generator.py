# orchestration/branch_generator.py
"""Generate competing drafts of one chapter and rank them by continuity.

Branches share one base prompt and differ only by temperature. Every draft is
assessed independently, ranked by score (ties keep branch order), and the
top `BRANCH_CACHE_LIMIT` are cached as branch versions. The author later picks
one with `select_branch`, which promotes it to the chapter content.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import structlog
from pydantic import BaseModel, Field

import config
from core.exceptions import PreconditionError, ValidationError
from core.llm_interface import GenerationRuntime
from core.text_processing_service import count_words
from data_access.narrative_store import NarrativeStore
from models.narrative_models import (
    BranchCandidate,
    ChapterCard,
    ChapterVersion,
    GenerationStage,
)
from orchestration.chapter_preparation import ChapterPreparer, PreparedChapter
from processing.context_assembler import ContextAssembler
from processing.continuity_assessor import (
    ContinuityGateConfig,
    resolve_gate_config,
    verdict_for_score,
)
from processing.hook_tracker import HookTracker
from processing.pending_entity_gate import PendingEntityGate
from prompts.prompt_renderer import render_prompt

logger = structlog.get_logger(__name__)

BRANCH_ISSUE_LIMIT = 2


def branch_temperatures(count: int, schedule: Sequence[float] | None = None) -> list[float]:
    """Return `count` ascending temperatures drawn from `schedule`.

    Counts within the schedule length take its first entries. Longer counts
    spread evenly between the schedule's minimum and maximum.
    """
    if count < 1:
        return []
    steps = sorted(schedule or config.BRANCH_TEMPERATURES)
    if count <= len(steps):
        return list(steps[:count])

    low, high = steps[0], steps[-1]
    if high == low:
        return [round(low + 0.01 * i, 3) for i in range(count)]
    step = (high - low) / (count - 1)
    return [round(low + step * i, 3) for i in range(count)]


def rank_branches(candidates: Sequence[BranchCandidate]) -> list[BranchCandidate]:
    """Sort by score descending, ties by branch number; flag the first as recommended."""
    ordered = sorted(candidates, key=lambda c: (-c.continuity_score, c.branch_number))
    return [
        candidate.model_copy(update={"continuity_recommended": index == 0})
        for index, candidate in enumerate(ordered)
    ]


def next_iteration_round(current: int | None) -> int:
    return max(1, int(current or 1)) + 1


class BranchGenerationOptions(BaseModel):
    branch_count: int = Field(default_factory=lambda: config.BRANCH_DEFAULT_COUNT, ge=1)
    selected_version_id: str | None = None
    feedback: str | None = None
    iteration_round: int = Field(default=1, ge=1)
    agent_id: str | None = None
    outline: str | None = None
    chapter_card: ChapterCard | dict[str, Any] | None = None
    enable_web_search: bool = False


class BranchSummary(BaseModel):
    branch_number: int
    temperature: float
    preview: str
    word_count: int
    continuity_score: float
    continuity_verdict: str
    continuity_issues: list[str] = Field(default_factory=list)
    continuity_recommended: bool = False
    retained: bool = False
    version_id: str | None = None


class BranchGateSummary(BaseModel):
    pass_score: float
    reject_score: float
    rejected_count: int


class BranchGenerationResult(BaseModel):
    chapter_id: str
    branches: list[BranchSummary]
    continuity_gate: BranchGateSummary
    iteration_round: int


class BranchGenerator:
    def __init__(
        self,
        store: NarrativeStore,
        runtime: GenerationRuntime,
        hook_tracker: HookTracker | None = None,
        pending_gate: PendingEntityGate | None = None,
        assembler: ContextAssembler | None = None,
        gate_config: ContinuityGateConfig | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.preparer = ChapterPreparer(
            store,
            runtime,
            hook_tracker=hook_tracker,
            pending_gate=pending_gate,
            assembler=assembler,
        )
        self.gate_config = gate_config

    async def _iteration_prompt(
        self, chapter_id: str, prepared: PreparedChapter, options: BranchGenerationOptions
    ) -> str:
        if not (options.selected_version_id and options.feedback and options.feedback.strip()):
            return prepared.base_prompt

        selected = await self.store.get_version(options.selected_version_id)
        if selected is None or selected.chapter_id != chapter_id:
            raise ValidationError(
                "Selected version does not belong to this chapter",
                details={"chapter_id": chapter_id, "version_id": options.selected_version_id},
            )
        return render_prompt(
            "chapter_writer/iterate_branch.j2",
            {
                "iteration_round": options.iteration_round,
                "selected_content": selected.content,
                "feedback": options.feedback.strip(),
                "base_prompt": prepared.base_prompt,
            },
        )

    async def generate_branches(
        self, chapter_id: str, options: BranchGenerationOptions | None = None
    ) -> BranchGenerationResult:
        """Generate `branch_count` drafts concurrently and cache the best ones.

        Raises:
            PreconditionError: Same preconditions as single-chapter generation.
            ValidationError: If `branch_count` exceeds `BRANCH_MAX_COUNT` or the
                selected version belongs to another chapter.
            LLMServiceError, ExternalCallTimeout: The first branch failure, raised
                only after every branch has settled. No branches are cached.
        """
        options = options or BranchGenerationOptions()
        if options.branch_count > config.BRANCH_MAX_COUNT:
            raise ValidationError(
                "Too many branches requested",
                details={"branch_count": options.branch_count, "max": config.BRANCH_MAX_COUNT},
            )
        gate = self.gate_config or resolve_gate_config()

        target = await self.preparer.check_preconditions(chapter_id)
        prepared = await self.preparer.prepare(
            target,
            agent_id=options.agent_id,
            outline=options.outline,
            chapter_card=options.chapter_card,
        )
        prompt = await self._iteration_prompt(chapter_id, prepared, options)
        temperatures = branch_temperatures(options.branch_count)

        results = await asyncio.gather(
            *(
                self.preparer.draft(
                    prepared,
                    prompt,
                    temperature,
                    f"chapter_branch_{number}",
                    web_search=options.enable_web_search,
                )
                for number, temperature in enumerate(temperatures, start=1)
            ),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.error(
                "generate_branches: branch drafting failed",
                chapter_id=chapter_id,
                failed=len(failures),
                branch_count=len(results),
            )
            raise failures[0]
        contents: list[str] = list(results)

        candidates = []
        for number, (temperature, content) in enumerate(zip(temperatures, contents), start=1):
            assessment = prepared.assess(content, gate)
            candidates.append(
                BranchCandidate(
                    branch_number=number,
                    temperature=temperature,
                    content=content,
                    continuity_score=assessment.score,
                    continuity_verdict=assessment.verdict,
                    continuity_issues=assessment.issues,
                )
            )
        ranked = rank_branches(candidates)

        retained = ranked[: config.BRANCH_CACHE_LIMIT]
        versions = [
            ChapterVersion(
                chapter_id=chapter_id,
                content=candidate.content,
                is_branch=True,
                branch_number=candidate.branch_number,
                rank=rank,
                continuity_score=candidate.continuity_score,
            )
            for rank, candidate in enumerate(retained, start=1)
        ]
        await self.store.replace_branch_cache(chapter_id, versions)
        version_ids = {version.branch_number: version.id for version in versions}

        rejected_count = sum(1 for c in candidates if c.continuity_verdict == "reject")
        logger.info(
            "generate_branches: branches ranked",
            chapter_id=chapter_id,
            branch_count=len(candidates),
            order=[c.branch_number for c in ranked],
            top_score=ranked[0].continuity_score if ranked else None,
            rejected=rejected_count,
        )
        return BranchGenerationResult(
            chapter_id=chapter_id,
            branches=[
                BranchSummary(
                    branch_number=c.branch_number,
                    temperature=c.temperature,
                    preview=c.content[: config.BRANCH_PREVIEW_CHARS],
                    word_count=count_words(c.content),
                    continuity_score=c.continuity_score,
                    continuity_verdict=c.continuity_verdict,
                    continuity_issues=[issue.message for issue in c.continuity_issues[:BRANCH_ISSUE_LIMIT]],
                    continuity_recommended=c.continuity_recommended,
                    retained=c.branch_number in version_ids,
                    version_id=version_ids.get(c.branch_number),
                )
                for c in ranked
            ],
            continuity_gate=BranchGateSummary(
                pass_score=gate.pass_score,
                reject_score=gate.reject_score,
                rejected_count=rejected_count,
            ),
            iteration_round=options.iteration_round,
        )

    async def select_branch(self, chapter_id: str, version_id: str) -> ChapterVersion:
        """Promote a cached branch to the chapter content and clear the branch cache."""
        chapter = await self.store.get_chapter(chapter_id)
        if chapter is None:
            raise PreconditionError("Chapter not found", details={"chapter_id": chapter_id})
        branch = await self.store.get_version(version_id)
        if branch is None or branch.chapter_id != chapter_id or not branch.is_branch:
            raise ValidationError(
                "Branch version not found for chapter",
                details={"chapter_id": chapter_id, "version_id": version_id},
            )

        updated = chapter.model_copy(deep=True)
        updated.content = branch.content
        updated.advance_stage(GenerationStage.GENERATED)
        if branch.continuity_score is not None:
            gate = self.gate_config or resolve_gate_config()
            updated.pending_review = (
                verdict_for_score(branch.continuity_score, gate.pass_score, gate.reject_score) != "pass"
            )
        version = ChapterVersion(
            chapter_id=chapter_id,
            content=branch.content,
            continuity_score=branch.continuity_score,
        )
        await self.store.commit_chapter_content(updated, version, clear_branch_cache=True)
        logger.info(
            "select_branch: branch promoted",
            chapter_id=chapter_id,
            branch_number=branch.branch_number,
            version_id=version.id,
        )
        return version
