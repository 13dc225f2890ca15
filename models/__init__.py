"""Export commonly used ChapterForge model types.

This package exposes a stable import surface for the Pydantic models used
across the chapter pipeline.
"""

from .narrative_models import (
    AgentProfile,
    BranchCandidate,
    Chapter,
    ChapterCard,
    ChapterSummary,
    ChapterVersion,
    ContinuityAssessment,
    ContinuityIssue,
    ContinuityMetrics,
    GenerationJob,
    GenerationStage,
    HookStatus,
    JobStatus,
    NarrativeHook,
    Novel,
    PendingEntity,
    PendingEntityStatus,
)

__all__ = [
    "AgentProfile",
    "BranchCandidate",
    "Chapter",
    "ChapterCard",
    "ChapterSummary",
    "ChapterVersion",
    "ContinuityAssessment",
    "ContinuityIssue",
    "ContinuityMetrics",
    "GenerationJob",
    "GenerationStage",
    "HookStatus",
    "JobStatus",
    "NarrativeHook",
    "Novel",
    "PendingEntity",
    "PendingEntityStatus",
]
