# processing/context_assembler.py
"""Assemble the narrative context for a chapter under a token budget.

The context is a chronological sequence of labeled sections:

1. Rolling summaries of chapters older than the raw-text window.
2. Unresolved narrative hooks (optional).
3. The full text of the most recent chapters, most recent last.

When the rendered context exceeds the budget, sections are dropped oldest
summary first, then the hooks section, then the oldest raw chapters. The
most recent chapter is never dropped; `assemble_truncated` cuts its head
instead so the ending state survives.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Literal

import structlog
from pydantic import BaseModel, Field

import config
from core.exceptions import ContextAssemblyError
from core.text_processing_service import char_token_weight, estimate_tokens
from data_access.narrative_store import NarrativeStore
from models.narrative_models import Chapter, ChapterSummary
from processing.continuity_signals import FALLBACK_SNIPPET_CHARS, extract_ending_snippet
from processing.hook_tracker import HookTracker

logger = structlog.get_logger(__name__)

TRUNCATION_MARKER = "[...truncated...]"
SECTION_SEPARATOR = "\n\n"
FALLBACK_CHAPTERS = 3
BOUNDARY_SEARCH_CHARS = 200

SectionKind = Literal["summary", "hooks", "chapter"]


class ContextLayering(BaseModel):
    recent_chapters_count: int = Field(default_factory=lambda: config.CONTEXT_RECENT_CHAPTERS, ge=0)
    summary_chapters_count: int = Field(default_factory=lambda: config.CONTEXT_SUMMARY_CHAPTERS, ge=0)
    include_hooks: bool = True


class ContextSection(BaseModel):
    kind: SectionKind
    title: str
    content: str
    chapter_number: int | None = None

    def render(self) -> str:
        return f"{self.title}\n\n{self.content}" if self.content else self.title

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.render())


class AssembledContext(BaseModel):
    context: str
    token_count: int
    truncated: bool = False
    warnings: list[str] = Field(default_factory=list)
    sections: list[ContextSection] = Field(default_factory=list)


def render_sections(sections: Sequence[ContextSection]) -> str:
    return SECTION_SEPARATOR.join(section.render() for section in sections)


def format_summary(summary: ChapterSummary) -> str:
    lines: list[str] = []
    if summary.one_line:
        lines.append(summary.one_line)
    if summary.key_events:
        lines.append("Key events: " + "; ".join(summary.key_events))
    if summary.character_developments:
        lines.append("Characters: " + "; ".join(summary.character_developments))
    if summary.hooks_planted:
        lines.append("Hooks planted: " + "; ".join(summary.hooks_planted))
    return "\n".join(lines)


def _chapter_title(chapter: Chapter) -> str:
    return f"### Chapter {chapter.order}: {chapter.title or 'Untitled'}"


def truncate_head(text: str, max_tokens: int) -> str:
    """Keep the longest tail of `text` that fits `max_tokens`, marked at the cut.

    The cut moves forward to the next line or sentence boundary when one is
    close by.
    """
    if estimate_tokens(text) <= max_tokens:
        return text

    budget = max_tokens - estimate_tokens(TRUNCATION_MARKER + "\n")
    if budget <= 0:
        return TRUNCATION_MARKER

    start = len(text)
    used = 0.0
    while start > 0:
        weight = char_token_weight(text[start - 1])
        if math.ceil(used + weight) > budget:
            break
        used += weight
        start -= 1

    window = text[start : start + BOUNDARY_SEARCH_CHARS]
    newline = window.find("\n")
    if newline >= 0:
        start += newline + 1
    else:
        for idx, ch in enumerate(window):
            if ch in ".!?。！？":
                start += idx + 1
                break

    return f"{TRUNCATION_MARKER}\n{text[start:].lstrip()}"


def build_fallback_context(previous_chapters: Sequence[Chapter]) -> str:
    """Render ending snippets of the last three chapters from already-fetched content."""
    recent = sorted(previous_chapters, key=lambda c: c.order)[-FALLBACK_CHAPTERS:]
    if not recent:
        return ""
    parts = ["## Recent Chapter Endings"]
    for chapter in recent:
        snippet = extract_ending_snippet(chapter.content, FALLBACK_SNIPPET_CHARS)
        parts.append(f"{_chapter_title(chapter)}\n{snippet}" if snippet else _chapter_title(chapter))
    return SECTION_SEPARATOR.join(parts)


class ContextAssembler:
    def __init__(self, store: NarrativeStore, hook_tracker: HookTracker | None = None):
        self.store = store
        self.hook_tracker = hook_tracker

    async def _load_sections(
        self, novel_id: str, target_chapter_order: int, layering: ContextLayering
    ) -> list[ContextSection]:
        try:
            chapters = await self.store.list_chapters(novel_id, before_order=target_chapter_order)
            recent = [c for c in chapters if c.content.strip()]
            recent = recent[-layering.recent_chapters_count :] if layering.recent_chapters_count else []
            summary_cutoff = recent[0].order if recent else target_chapter_order
            summaries = (
                await self.store.list_summaries(
                    novel_id,
                    before_order=summary_cutoff,
                    limit=layering.summary_chapters_count,
                )
                if layering.summary_chapters_count
                else []
            )
            hooks_text = ""
            if layering.include_hooks and self.hook_tracker is not None:
                hooks_text = await self.hook_tracker.format_for_context(novel_id, target_chapter_order)
        except Exception as e:
            logger.error(
                "Context assembly failed to read from store",
                novel_id=novel_id,
                chapter=target_chapter_order,
                error=str(e),
            )
            raise ContextAssemblyError(
                "Failed to assemble chapter context",
                details={"novel_id": novel_id, "chapter": target_chapter_order, "original_error": str(e)},
            ) from e

        sections = [
            ContextSection(
                kind="summary",
                title=f"### Chapter {summary.chapter_number} Summary",
                content=format_summary(summary),
                chapter_number=summary.chapter_number,
            )
            for summary in sorted(summaries, key=lambda s: s.chapter_number)
        ]
        if hooks_text.strip():
            # Hooks text carries its own heading.
            sections.append(ContextSection(kind="hooks", title=hooks_text.strip(), content=""))
        sections.extend(
            ContextSection(
                kind="chapter",
                title=_chapter_title(chapter),
                content=chapter.content.strip(),
                chapter_number=chapter.order,
            )
            for chapter in recent
        )
        return sections

    @staticmethod
    def _drop_to_budget(sections: list[ContextSection], budget: int) -> tuple[list[ContextSection], list[str]]:
        warnings: list[str] = []
        kept = list(sections)

        def over() -> bool:
            return estimate_tokens(render_sections(kept)) > budget

        for kind in ("summary", "hooks", "chapter"):
            while over():
                candidates = [s for s in kept if s.kind == kind]
                if kind == "chapter":
                    candidates = candidates[:-1]
                if not candidates:
                    break
                dropped = candidates[0]
                kept.remove(dropped)
                if dropped.kind == "summary":
                    warnings.append(f"Dropped summary of chapter {dropped.chapter_number} to fit token budget")
                elif dropped.kind == "hooks":
                    warnings.append("Dropped unresolved hooks section to fit token budget")
                else:
                    warnings.append(f"Dropped full text of chapter {dropped.chapter_number} to fit token budget")
        return kept, warnings

    async def assemble(
        self,
        novel_id: str,
        target_chapter_order: int,
        budget: int | None = None,
        layering: ContextLayering | None = None,
    ) -> AssembledContext:
        """Assemble context for `target_chapter_order`, dropping sections to fit `budget`.

        Raises:
            ContextAssemblyError: When the store cannot be read.
        """
        budget = budget if budget is not None else config.CONTEXT_MAX_TOKENS
        layering = layering or ContextLayering()

        sections = await self._load_sections(novel_id, target_chapter_order, layering)
        kept, warnings = self._drop_to_budget(sections, budget)
        context = render_sections(kept)
        token_count = estimate_tokens(context)
        truncated = bool(warnings) or token_count > budget
        if token_count > budget:
            warnings.append(f"Context still exceeds token budget: {token_count} > {budget}")

        logger.debug(
            "assemble: context built",
            novel_id=novel_id,
            chapter=target_chapter_order,
            sections=len(kept),
            tokens=token_count,
            truncated=truncated,
        )
        return AssembledContext(
            context=context,
            token_count=token_count,
            truncated=truncated,
            warnings=warnings,
            sections=kept,
        )

    async def assemble_truncated(
        self,
        novel_id: str,
        target_chapter_order: int,
        max_tokens: int | None = None,
        layering: ContextLayering | None = None,
    ) -> AssembledContext:
        """Like `assemble`, but cut the head of the latest chapter if still over `max_tokens`."""
        max_tokens = max_tokens if max_tokens is not None else config.CONTEXT_MAX_TOKENS
        assembled = await self.assemble(novel_id, target_chapter_order, max_tokens, layering)
        if assembled.token_count <= max_tokens:
            return assembled

        sections = list(assembled.sections)
        warnings = [w for w in assembled.warnings if not w.startswith("Context still exceeds")]
        last_idx = max((i for i, s in enumerate(sections) if s.kind == "chapter"), default=None)
        if last_idx is None:
            return assembled

        last = sections[last_idx]
        others = sections[:last_idx] + sections[last_idx + 1 :]
        fixed_tokens = estimate_tokens(render_sections(others)) if others else 0
        header_tokens = estimate_tokens(f"{last.title}\n\n") + (estimate_tokens(SECTION_SEPARATOR) if others else 0)
        body_budget = max(0, max_tokens - fixed_tokens - header_tokens)
        sections[last_idx] = last.model_copy(update={"content": truncate_head(last.content, body_budget)})
        warnings.append(f"Truncated the beginning of chapter {last.chapter_number} to fit token budget")

        context = render_sections(sections)
        return AssembledContext(
            context=context,
            token_count=estimate_tokens(context),
            truncated=True,
            warnings=warnings,
            sections=sections,
        )
