# processing/chapter_extraction.py
"""Post-generation job handlers: chapter summary, hook and entity extraction.

Each handler loads the committed chapter, asks the extraction model for a
JSON answer, recovers it through the structured-output parser, and writes the
result through the store or the relevant tracker.
"""

from __future__ import annotations

from typing import Any

import structlog

import config
from core.exceptions import StructuredParseFailure, ValidationError
from core.llm_interface import GenerationRuntime
from data_access.narrative_store import NarrativeStore
from models.narrative_models import Chapter, ChapterSummary, GenerationJob, JobStatus
from processing.hook_tracker import ExtractedHooks, HookProcessingResult, HookTracker
from processing.pending_entity_gate import PendingEntityGate
from processing.post_generation import (
    CHAPTER_SUMMARY_GENERATE,
    HOOKS_EXTRACT,
    PENDING_ENTITY_EXTRACT,
)
from prompts.prompt_renderer import get_system_prompt, render_prompt
from utils.json_utils import safe_json_loads, truncate_for_log

logger = structlog.get_logger(__name__)

EXTRACTOR_AGENT = "chapter_extractor"


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


class ChapterExtractionService:
    def __init__(
        self,
        store: NarrativeStore,
        runtime: GenerationRuntime,
        hook_tracker: HookTracker | None = None,
        pending_gate: PendingEntityGate | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.hook_tracker = hook_tracker or HookTracker(store)
        self.pending_gate = pending_gate or PendingEntityGate(store)

    async def _load_chapter(self, chapter_id: str) -> Chapter:
        chapter = await self.store.get_chapter(chapter_id)
        if chapter is None:
            raise ValidationError("Chapter not found", details={"chapter_id": chapter_id})
        if not chapter.content.strip():
            raise ValidationError("Chapter has no content to analyze", details={"chapter_id": chapter_id})
        return chapter

    async def _ask_json(self, template: str, context: dict[str, Any], expected: type, label: str) -> Any:
        prompt = render_prompt(template, context)
        response = await self.runtime.generate(
            prompt,
            model=config.EXTRACTION_MODEL,
            temperature=config.TEMPERATURE_EXTRACTION,
            max_tokens=config.MAX_EXTRACTION_TOKENS,
            system_prompt=get_system_prompt(EXTRACTOR_AGENT) or None,
            label=label,
        )
        value = safe_json_loads(response.content, expected=expected)
        if value is None:
            logger.warning(
                "extraction response could not be parsed",
                label=label,
                raw=truncate_for_log(response.content),
            )
            raise StructuredParseFailure(
                f"{label} returned no usable {expected.__name__}",
                raw=response.content,
                details={"label": label},
            )
        return value

    async def generate_chapter_summary(self, chapter_id: str) -> ChapterSummary:
        chapter = await self._load_chapter(chapter_id)
        novel = await self.store.get_novel(chapter.novel_id)
        data = await self._ask_json(
            "chapter_extractor/chapter_summary.j2",
            {
                "chapter_number": chapter.order,
                "novel_title": novel.title if novel else "",
                "chapter_text": chapter.content,
            },
            dict,
            CHAPTER_SUMMARY_GENERATE,
        )
        one_line = data.get("one_line")
        summary = ChapterSummary(
            novel_id=chapter.novel_id,
            chapter_number=chapter.order,
            one_line=one_line.strip() if isinstance(one_line, str) else "",
            key_events=_string_list(data.get("key_events")),
            character_developments=_string_list(data.get("character_developments")),
            hooks_planted=_string_list(data.get("hooks_planted")),
            hooks_referenced=_string_list(data.get("hooks_referenced")),
            hooks_resolved=_string_list(data.get("hooks_resolved")),
        )
        await self.store.save_summary(summary)
        logger.info(
            "generate_chapter_summary: saved",
            chapter_id=chapter_id,
            chapter=chapter.order,
            key_events=len(summary.key_events),
        )
        return summary

    async def extract_chapter_hooks(self, chapter_id: str) -> HookProcessingResult:
        chapter = await self._load_chapter(chapter_id)
        active = await self.hook_tracker.unresolved_descriptions(chapter.novel_id)
        data = await self._ask_json(
            "chapter_extractor/extract_hooks.j2",
            {"chapter_number": chapter.order, "chapter_text": chapter.content, "active_hooks": active},
            dict,
            HOOKS_EXTRACT,
        )
        extracted = ExtractedHooks.model_validate(
            {
                key: [item for item in data.get(key) or [] if isinstance(item, dict)]
                for key in ("planted", "referenced", "resolved")
            }
        )
        return await self.hook_tracker.process_extracted_hooks(chapter.novel_id, chapter.order, extracted)

    async def extract_pending_entities(self, chapter_id: str, known_names: list[str] | None = None) -> list[str]:
        chapter = await self._load_chapter(chapter_id)
        known = list(known_names or [])
        known.extend(e.name for e in await self.store.list_pending_entities(chapter.novel_id))
        data = await self._ask_json(
            "chapter_extractor/extract_entities.j2",
            {"chapter_number": chapter.order, "chapter_text": chapter.content, "known_names": known},
            list,
            PENDING_ENTITY_EXTRACT,
        )
        created = await self.pending_gate.register_extracted(
            chapter.novel_id,
            chapter.order,
            [item for item in data if isinstance(item, dict)],
            known_names=known,
        )
        return [entity.id for entity in created]

    async def run_post_generation_job(self, job: GenerationJob) -> GenerationJob:
        """Dispatch `job` by type and record its outcome on the job."""
        chapter_id = str(job.input.get("chapter_id") or "")
        job.status = JobStatus.RUNNING
        try:
            if job.type == CHAPTER_SUMMARY_GENERATE:
                summary = await self.generate_chapter_summary(chapter_id)
                job.output = summary.model_dump(mode="json")
            elif job.type == HOOKS_EXTRACT:
                result = await self.extract_chapter_hooks(chapter_id)
                job.output = result.model_dump(mode="json")
            elif job.type == PENDING_ENTITY_EXTRACT:
                job.output = {"created": await self.extract_pending_entities(chapter_id)}
            else:
                raise ValidationError("Unknown post-generation job type", details={"job_type": job.type})
        except Exception as e:
            logger.error(
                "run_post_generation_job: job failed",
                job_id=job.id,
                job_type=job.type,
                chapter_id=chapter_id,
                error=str(e),
                exc_info=True,
            )
            job.status = JobStatus.FAILED
            job.error = str(e)
            return job

        job.status = JobStatus.SUCCEEDED
        logger.info("run_post_generation_job: job succeeded", job_id=job.id, job_type=job.type)
        return job
