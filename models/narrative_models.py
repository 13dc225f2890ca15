# models/narrative_models.py
"""Define the narrative data models used across the chapter pipeline.

This module provides the in-memory representations moved between the store,
the continuity gate, and the orchestrators:

- Persistent records: `Novel`, `Chapter`, `ChapterSummary`, `NarrativeHook`,
  `PendingEntity`, `ChapterVersion`.
- Ephemeral results: `ContinuityAssessment`, `BranchCandidate`.
- External contracts: `GenerationJob` (owned by the job queue) and
  `AgentProfile` (owned by the agent registry).

Notes:
    Hook and entity associations to characters are name-keyed
    (`related_characters`) and resolved against the store at read time; no model
    holds an owning reference to another record.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from core.exceptions import HookTransitionError, ValidationError


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationStage(str, Enum):
    """Ordered workflow stages; a chapter only moves forward through them."""

    SEEDED = "seeded"
    ROUGH = "rough"
    DETAILED = "detailed"
    CHAPTERS = "chapters"
    DRAFTING = "drafting"
    GENERATED = "generated"
    REVIEWED = "reviewed"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER: tuple[GenerationStage, ...] = tuple(GenerationStage)

DRAFTING_STAGES: frozenset[GenerationStage] = frozenset({GenerationStage.CHAPTERS, GenerationStage.DRAFTING})


class Novel(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str = ""
    workflow_stage: GenerationStage = GenerationStage.SEEDED
    default_model: str | None = None

    @property
    def permits_drafting(self) -> bool:
        return self.workflow_stage in DRAFTING_STAGES


class Chapter(BaseModel):
    """A single chapter of a novel.

    `order` is unique per novel and starts at 1. `generation_stage` only advances;
    use `advance_stage()` rather than assigning the field directly.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_id)
    novel_id: str
    order: int = Field(ge=1)
    title: str = ""
    content: str = ""
    generation_stage: GenerationStage = GenerationStage.SEEDED
    pending_review: bool = False
    outline: str = ""
    chapter_card: dict[str, Any] | None = None

    def advance_stage(self, stage: GenerationStage) -> None:
        """Move the chapter to `stage`.

        Raises:
            ValidationError: If `stage` is earlier than the current stage.
        """
        if stage.rank < self.generation_stage.rank:
            raise ValidationError(
                "Chapter stage cannot move backwards",
                details={
                    "chapter_id": self.id,
                    "current": self.generation_stage.value,
                    "requested": stage.value,
                },
            )
        self.generation_stage = stage

    @property
    def is_completed(self) -> bool:
        return self.generation_stage == GenerationStage.COMPLETED


class ChapterSummary(BaseModel):
    """Rolling summary of one chapter, used in place of full text for older chapters."""

    novel_id: str
    chapter_number: int = Field(ge=1)
    one_line: str = ""
    key_events: list[str] = Field(default_factory=list)
    character_developments: list[str] = Field(default_factory=list)
    hooks_planted: list[str] = Field(default_factory=list)
    hooks_referenced: list[str] = Field(default_factory=list)
    hooks_resolved: list[str] = Field(default_factory=list)


HookType = Literal["foreshadowing", "chekhov_gun", "mystery", "promise", "setup"]
HookImportance = Literal["critical", "major", "minor"]

IMPORTANCE_RANK: dict[str, int] = {"critical": 0, "major": 1, "minor": 2}


class HookStatus(str, Enum):
    PLANTED = "planted"
    REFERENCED = "referenced"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


ACTIVE_HOOK_STATUSES: frozenset[HookStatus] = frozenset({HookStatus.PLANTED, HookStatus.REFERENCED})


class NarrativeHook(BaseModel):
    """A planted narrative element expected to be referenced and eventually resolved.

    Invariants:
        - `resolved_in_chapter`, when set, is >= `planted_in_chapter`.
        - Status moves planted -> referenced* -> resolved | abandoned and never
          leaves a terminal status.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_id)
    novel_id: str
    type: HookType = "foreshadowing"
    description: str
    planted_in_chapter: int = Field(ge=1)
    referenced_in_chapters: list[int] = Field(default_factory=list)
    resolved_in_chapter: int | None = None
    status: HookStatus = HookStatus.PLANTED
    importance: HookImportance = "minor"
    reminder_threshold: int = Field(default=10, ge=1)
    related_characters: list[str] = Field(default_factory=list)
    resolution_note: str | None = None
    abandon_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_HOOK_STATUSES

    @property
    def last_activity_chapter(self) -> int:
        return max([self.planted_in_chapter, *self.referenced_in_chapters])

    def mark_referenced(self, chapter: int) -> bool:
        """Append `chapter` to the reference list; returns False for terminal hooks."""
        if not self.is_active:
            return False
        if chapter not in self.referenced_in_chapters:
            self.referenced_in_chapters = [*self.referenced_in_chapters, chapter]
        self.status = HookStatus.REFERENCED
        return True

    def mark_resolved(self, chapter: int, note: str | None = None) -> bool:
        if not self.is_active:
            return False
        if chapter < self.planted_in_chapter:
            raise HookTransitionError(
                "Hook cannot be resolved before it was planted",
                details={
                    "hook_id": self.id,
                    "planted_in_chapter": self.planted_in_chapter,
                    "resolved_in_chapter": chapter,
                },
            )
        self.resolved_in_chapter = chapter
        self.resolution_note = note
        self.status = HookStatus.RESOLVED
        return True

    def mark_abandoned(self, reason: str | None = None) -> bool:
        if not self.is_active:
            return False
        self.abandon_reason = reason
        self.status = HookStatus.ABANDONED
        return True


EntityKind = Literal["character", "organization"]


class PendingEntityStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    MERGED = "merged"


class PendingEntity(BaseModel):
    """A newly introduced character/organization awaiting author confirmation."""

    id: str = Field(default_factory=_new_id)
    novel_id: str
    name: str
    kind: EntityKind = "character"
    introduced_in_chapter: int = Field(ge=1)
    status: PendingEntityStatus = PendingEntityStatus.PENDING
    description: str = ""
    merged_into: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.status != PendingEntityStatus.PENDING


IssueSeverity = Literal["critical", "major", "minor"]
IssueCategory = Literal["opening_anchor", "event_chain", "hook_progress", "timeline", "content"]
ContinuityVerdict = Literal["pass", "warn", "reject"]

SEVERITY_RANK: dict[str, int] = {"critical": 0, "major": 1, "minor": 2}


class ContinuityIssue(BaseModel):
    severity: IssueSeverity
    category: IssueCategory
    message: str
    signal: str | None = None


class ContinuityMetrics(BaseModel):
    opening_coverage: float = Field(ge=0.0, le=1.0)
    event_coverage: float = Field(ge=0.0, le=1.0)
    hook_coverage: float = Field(ge=0.0, le=1.0)
    timeline_cue: bool = False
    signal_totals: dict[str, int] = Field(default_factory=dict)
    matched_totals: dict[str, int] = Field(default_factory=dict)


class ContinuityAssessment(BaseModel):
    """Outcome of scoring one draft against prior narrative state. Not persisted."""

    score: float = Field(ge=0.0, le=10.0)
    verdict: ContinuityVerdict
    issues: list[ContinuityIssue] = Field(default_factory=list)
    metrics: ContinuityMetrics

    def top_issue_messages(self, limit: int) -> list[str]:
        return [issue.message for issue in self.issues[:limit]]


class ChapterCard(BaseModel):
    """Author constraints for a single chapter."""

    must: list[str] = Field(default_factory=list)
    should: list[str] = Field(default_factory=list)
    must_not: list[str] = Field(default_factory=list)
    hooks: list[str] = Field(default_factory=list)
    style_guidance: str = ""
    scene_objective: str = ""

    def is_empty(self) -> bool:
        return not (
            self.must or self.should or self.must_not or self.hooks or self.style_guidance or self.scene_objective
        )


class ChapterVersion(BaseModel):
    """A stored snapshot of chapter content; branch versions form a short-lived cache."""

    id: str = Field(default_factory=_new_id)
    chapter_id: str
    content: str
    is_branch: bool = False
    branch_number: int | None = None
    rank: int | None = None
    continuity_score: float | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class BranchCandidate(BaseModel):
    branch_number: int = Field(ge=1)
    temperature: float
    content: str
    continuity_score: float
    continuity_verdict: ContinuityVerdict
    continuity_issues: list[ContinuityIssue] = Field(default_factory=list)
    continuity_recommended: bool = False


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class GenerationJob(BaseModel):
    """Job record surface of the external queue."""

    id: str = Field(default_factory=_new_id)
    type: str
    status: JobStatus = JobStatus.QUEUED
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None


class AgentProfile(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    model: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
