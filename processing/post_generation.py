# processing/post_generation.py
"""Enqueue the follow-up jobs that run after a chapter is committed.

Enqueueing is best-effort: every job is submitted concurrently, failures are
collected into `PostProcessSummary`, and nothing here ever raises back into
the generation path.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from core.exceptions import PostProcessingSoftFailure
from models.narrative_models import GenerationJob

logger = structlog.get_logger(__name__)

CHAPTER_SUMMARY_GENERATE = "chapter_summary_generate"
HOOKS_EXTRACT = "hooks_extract"
PENDING_ENTITY_EXTRACT = "pending_entity_extract"

POST_GENERATION_JOB_TYPES: tuple[str, ...] = (
    CHAPTER_SUMMARY_GENERATE,
    HOOKS_EXTRACT,
    PENDING_ENTITY_EXTRACT,
)


class JobQueue(Protocol):
    async def enqueue(self, job_type: str, input: dict[str, Any]) -> GenerationJob: ...


JobRunner = Callable[[GenerationJob], Awaitable[GenerationJob]]


class InProcessJobQueue:
    """Queue that holds jobs in memory until `drain()` runs them in order.

    For single-process use (the CLI); deployments plug in their own `JobQueue`.
    """

    def __init__(self, runner: JobRunner):
        self._runner = runner
        self._pending: list[GenerationJob] = []

    @property
    def pending(self) -> list[GenerationJob]:
        return list(self._pending)

    async def enqueue(self, job_type: str, input: dict[str, Any]) -> GenerationJob:
        job = GenerationJob(type=job_type, input=dict(input))
        self._pending.append(job)
        logger.debug("InProcessJobQueue: job queued", job_id=job.id, job_type=job_type)
        return job

    async def drain(self) -> list[GenerationJob]:
        finished: list[GenerationJob] = []
        while self._pending:
            job = self._pending.pop(0)
            finished.append(await self._runner(job))
        return finished


class FailedJob(BaseModel):
    type: str
    error: str


class PostProcessSummary(BaseModel):
    all_queued: bool
    queued_types: list[str] = Field(default_factory=list)
    failed: list[FailedJob] = Field(default_factory=list)
    job_ids: dict[str, str] = Field(default_factory=dict)


async def enqueue_post_generation_jobs(queue: JobQueue, chapter_id: str) -> PostProcessSummary:
    """Submit summary, hook and entity extraction jobs for `chapter_id`."""
    results = await asyncio.gather(
        *(queue.enqueue(job_type, {"chapter_id": chapter_id}) for job_type in POST_GENERATION_JOB_TYPES),
        return_exceptions=True,
    )

    summary = PostProcessSummary(all_queued=True)
    for job_type, result in zip(POST_GENERATION_JOB_TYPES, results):
        if isinstance(result, BaseException):
            failure = PostProcessingSoftFailure(
                f"Failed to enqueue {job_type}",
                details={"chapter_id": chapter_id, "job_type": job_type, "error": str(result)},
            )
            logger.error(
                "enqueue_post_generation_jobs: job not queued",
                chapter_id=chapter_id,
                job_type=job_type,
                error=str(failure),
            )
            summary.failed.append(FailedJob(type=job_type, error=str(result) or type(result).__name__))
            continue
        summary.queued_types.append(job_type)
        summary.job_ids[job_type] = result.id

    summary.all_queued = not summary.failed
    return summary
