# processing/hook_tracker.py
"""Track the lifecycle of narrative hooks across chapters.

Hooks are matched by description rather than id because extraction output only
names them in prose. A description matches a stored hook when it is identical
(score 1.0), when one contains the other (0.85), or when their `difflib`
similarity reaches `HOOK_MATCH_THRESHOLD`.

Overdue detection scales each hook's reminder threshold by importance:
critical hooks are flagged first and minor hooks get twice the slack.
"""

from __future__ import annotations

import math
from collections import Counter
from difflib import SequenceMatcher
from typing import Any

import structlog
from pydantic import BaseModel, Field

import config
from core.exceptions import ValidationError
from data_access.narrative_store import NarrativeStore
from models.narrative_models import (
    ACTIVE_HOOK_STATUSES,
    IMPORTANCE_RANK,
    HookImportance,
    HookStatus,
    HookType,
    NarrativeHook,
)

logger = structlog.get_logger(__name__)

IMPORTANCE_THRESHOLD_FACTOR: dict[str, float] = {"critical": 1.0, "major": 1.5, "minor": 2.0}
OVERDUE_WARNING_LIMIT = 5


class OverdueHook(BaseModel):
    hook_id: str
    description: str
    planted_chapter: int
    chapters_overdue: int
    importance: HookImportance
    suggested_action: str


class PlantedHookInput(BaseModel):
    type: HookType = "foreshadowing"
    description: str
    importance: HookImportance = "minor"
    related_characters: list[str] = Field(default_factory=list)
    context: str | None = None


class HookMention(BaseModel):
    hook_description: str
    context: str | None = None


class ExtractedHooks(BaseModel):
    """Hook changes detected in one chapter by the extraction model."""

    planted: list[PlantedHookInput] = Field(default_factory=list)
    referenced: list[HookMention] = Field(default_factory=list)
    resolved: list[HookMention] = Field(default_factory=list)


class HookProcessingResult(BaseModel):
    planted: list[str] = Field(default_factory=list)
    referenced: list[str] = Field(default_factory=list)
    resolved: list[str] = Field(default_factory=list)
    unmatched: list[str] = Field(default_factory=list)


def effective_threshold(hook: NarrativeHook) -> int:
    return math.ceil(hook.reminder_threshold * IMPORTANCE_THRESHOLD_FACTOR[hook.importance])


def description_similarity(left: str, right: str) -> float:
    a = " ".join(left.lower().split())
    b = " ".join(right.lower().split())
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return 0.85
    return SequenceMatcher(None, a, b).ratio()


def suggested_action(hook: NarrativeHook, chapters_elapsed: int) -> str:
    if hook.importance == "critical":
        return (
            f"Critical hook unresolved for {chapters_elapsed} chapters. "
            "Resolve it soon or the story's coherence will suffer."
        )
    if hook.importance == "major":
        return "Resolve this hook in the next few chapters, or reference it to keep it alive for the reader."
    return "Resolve this minor hook at a natural point, or abandon it if it is no longer relevant."


class HookTracker:
    """Plant, reference, resolve and report narrative hooks for a novel."""

    def __init__(self, store: NarrativeStore, match_threshold: float | None = None):
        self.store = store
        self.match_threshold = match_threshold if match_threshold is not None else config.HOOK_MATCH_THRESHOLD

    async def record_planted(self, hook: NarrativeHook) -> NarrativeHook:
        if hook.status != HookStatus.PLANTED:
            raise ValidationError(
                "New hooks must start in the planted status",
                details={"hook_id": hook.id, "status": hook.status.value},
            )
        await self.store.save_hook(hook)
        logger.info(
            "record_planted: hook planted",
            hook_id=hook.id,
            novel_id=hook.novel_id,
            chapter=hook.planted_in_chapter,
            importance=hook.importance,
        )
        return hook

    def find_best_match(self, description: str, hooks: list[NarrativeHook]) -> NarrativeHook | None:
        best: NarrativeHook | None = None
        best_score = 0.0
        for hook in hooks:
            score = description_similarity(description, hook.description)
            if score > best_score:
                best, best_score = hook, score
        if best is None or best_score < self.match_threshold:
            return None
        return best

    async def _match(self, novel_id: str, description: str) -> NarrativeHook | None:
        hooks = await self.store.list_hooks(novel_id, ACTIVE_HOOK_STATUSES)
        match = self.find_best_match(description, hooks)
        if match is None:
            logger.debug("hook description did not match any hook", novel_id=novel_id, description=description)
        return match

    async def record_referenced(self, novel_id: str, match_description: str, chapter: int) -> NarrativeHook | None:
        """Append `chapter` to the best-matching hook's references.

        Only planted or referenced hooks are candidates; resolved and abandoned
        hooks never shadow a live one. Returns the matched hook, or None when
        nothing matched.
        """
        hook = await self._match(novel_id, match_description)
        if hook is None:
            return None
        if hook.mark_referenced(chapter):
            await self.store.save_hook(hook)
            logger.info("record_referenced: hook referenced", hook_id=hook.id, chapter=chapter)
        return hook

    async def record_resolved(
        self,
        novel_id: str,
        match_description: str,
        chapter: int,
        context: str | None = None,
    ) -> NarrativeHook | None:
        """Resolve the best-matching hook in `chapter`.

        Raises:
            HookTransitionError: If `chapter` precedes the planting chapter.
        """
        hook = await self._match(novel_id, match_description)
        if hook is None:
            return None
        if hook.mark_resolved(chapter, context):
            await self.store.save_hook(hook)
            logger.info("record_resolved: hook resolved", hook_id=hook.id, chapter=chapter)
        return hook

    async def record_abandoned(
        self, novel_id: str, match_description: str, reason: str | None = None
    ) -> NarrativeHook | None:
        hook = await self._match(novel_id, match_description)
        if hook is None:
            return None
        if hook.mark_abandoned(reason):
            await self.store.save_hook(hook)
            logger.info("record_abandoned: hook abandoned", hook_id=hook.id, reason=reason)
        return hook

    async def get_overdue_hooks(self, novel_id: str, current_chapter: int) -> list[OverdueHook]:
        hooks = await self.store.list_hooks(novel_id, ACTIVE_HOOK_STATUSES)
        overdue: list[OverdueHook] = []
        for hook in hooks:
            elapsed = current_chapter - hook.planted_in_chapter
            threshold = effective_threshold(hook)
            if elapsed > threshold:
                overdue.append(
                    OverdueHook(
                        hook_id=hook.id,
                        description=hook.description,
                        planted_chapter=hook.planted_in_chapter,
                        chapters_overdue=elapsed - threshold,
                        importance=hook.importance,
                        suggested_action=suggested_action(hook, elapsed),
                    )
                )
        overdue.sort(key=lambda o: (IMPORTANCE_RANK[o.importance], -o.chapters_overdue))
        return overdue

    async def format_for_context(self, novel_id: str, chapter_order: int, limit: int | None = None) -> str:
        """Render active hooks as a prompt section; empty when none are active."""
        limit = limit if limit is not None else config.HOOK_CONTEXT_LIMIT
        hooks = await self.store.list_hooks(novel_id, ACTIVE_HOOK_STATUSES)
        if not hooks:
            return ""

        overdue = await self.get_overdue_hooks(novel_id, chapter_order)
        overdue_ids = {o.hook_id for o in overdue}

        ordered = sorted(hooks, key=lambda h: (IMPORTANCE_RANK[h.importance], -h.last_activity_chapter))
        lines = ["## Unresolved Narrative Hooks"]
        for hook in ordered[:limit]:
            prefix = "[OVERDUE] " if hook.id in overdue_ids else ""
            if hook.importance == "critical":
                prefix += "[CRITICAL] "
            elif hook.importance == "major":
                prefix += "[MAJOR] "
            lines.append(f"- {prefix}{hook.description} (Ch.{hook.planted_in_chapter})")

        if overdue:
            lines.append("")
            lines.append("### Overdue Hook Warnings")
            for warning in overdue[:OVERDUE_WARNING_LIMIT]:
                lines.append(f"- {warning.description}: {warning.suggested_action}")

        return "\n".join(lines)

    async def get_hooks_report(self, novel_id: str, current_chapter: int | None = None) -> dict[str, Any]:
        hooks = await self.store.list_hooks(novel_id)
        by_status = Counter(h.status.value for h in hooks)
        resolved = [h for h in hooks if h.status == HookStatus.RESOLVED and h.resolved_in_chapter is not None]
        countable = len(hooks) - by_status[HookStatus.ABANDONED.value]

        if current_chapter is None:
            current_chapter = max((h.last_activity_chapter for h in hooks), default=0)
        overdue = await self.get_overdue_hooks(novel_id, current_chapter) if hooks else []

        return {
            "total": len(hooks),
            "by_status": {status.value: by_status[status.value] for status in HookStatus},
            "resolution_rate": (len(resolved) / countable) if countable > 0 else 0.0,
            "average_resolution_chapters": (
                sum(h.resolved_in_chapter - h.planted_in_chapter for h in resolved) / len(resolved)  # type: ignore[operator]
                if resolved
                else 0.0
            ),
            "by_type": dict(Counter(h.type for h in hooks)),
            "by_importance": dict(Counter(h.importance for h in hooks)),
            "unresolved_by_importance": dict(Counter(h.importance for h in hooks if h.is_active)),
            "overdue_count": len(overdue),
        }

    async def process_extracted_hooks(
        self, novel_id: str, chapter: int, extracted: ExtractedHooks | dict[str, Any]
    ) -> HookProcessingResult:
        """Apply extracted hook changes for `chapter`."""
        if not isinstance(extracted, ExtractedHooks):
            extracted = ExtractedHooks.model_validate(extracted)

        result = HookProcessingResult()
        for planted in extracted.planted:
            hook = await self.record_planted(
                NarrativeHook(
                    novel_id=novel_id,
                    type=planted.type,
                    description=planted.description,
                    planted_in_chapter=chapter,
                    importance=planted.importance,
                    reminder_threshold=config.HOOK_REMINDER_THRESHOLD,
                    related_characters=planted.related_characters,
                )
            )
            result.planted.append(hook.id)

        for mention in extracted.referenced:
            hook = await self.record_referenced(novel_id, mention.hook_description, chapter)
            if hook is None:
                result.unmatched.append(mention.hook_description)
            elif hook.status == HookStatus.REFERENCED:
                result.referenced.append(hook.id)

        for mention in extracted.resolved:
            hook = await self.record_resolved(novel_id, mention.hook_description, chapter, mention.context)
            if hook is None:
                result.unmatched.append(mention.hook_description)
            elif hook.status == HookStatus.RESOLVED and hook.resolved_in_chapter == chapter:
                result.resolved.append(hook.id)

        logger.info(
            "process_extracted_hooks: applied",
            novel_id=novel_id,
            chapter=chapter,
            planted=len(result.planted),
            referenced=len(result.referenced),
            resolved=len(result.resolved),
            unmatched=len(result.unmatched),
        )
        return result

    async def get_hooks_for_character(self, novel_id: str, name: str) -> list[NarrativeHook]:
        needle = name.strip().lower()
        if not needle:
            return []
        hooks = await self.store.list_hooks(novel_id)
        return [h for h in hooks if any(c.strip().lower() == needle for c in h.related_characters)]

    async def unresolved_descriptions(self, novel_id: str) -> list[str]:
        hooks = await self.store.list_hooks(novel_id, ACTIVE_HOOK_STATUSES)
        return [h.description for h in sorted(hooks, key=lambda h: IMPORTANCE_RANK[h.importance])]
