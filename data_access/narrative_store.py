# data_access/narrative_store.py
"""Persistence contract for the chapter pipeline.

The pipeline depends only on this protocol. `Neo4jNarrativeStore` is the
shipped implementation; tests use an in-memory store with the same surface.

Atomic units:
    - `commit_chapter_content` writes content, stage, review flag and a new
      version record together (optionally clearing the branch cache).
    - `replace_branch_cache` swaps the full set of branch versions for a
      chapter in one step.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from models.narrative_models import (
    AgentProfile,
    Chapter,
    ChapterSummary,
    ChapterVersion,
    HookStatus,
    NarrativeHook,
    Novel,
    PendingEntity,
    PendingEntityStatus,
)


class NarrativeStore(Protocol):
    # Novels, chapters, agents
    async def get_novel(self, novel_id: str) -> Novel | None: ...

    async def get_chapter(self, chapter_id: str) -> Chapter | None: ...

    async def list_chapters(self, novel_id: str, before_order: int | None = None) -> list[Chapter]:
        """Chapters of a novel in ascending order, optionally only those before `before_order`."""
        ...

    async def get_agent(self, agent_id: str) -> AgentProfile | None: ...

    # Summaries
    async def list_summaries(
        self,
        novel_id: str,
        before_order: int | None = None,
        limit: int | None = None,
    ) -> list[ChapterSummary]:
        """Summaries in ascending chapter order; `limit` keeps the latest ones."""
        ...

    async def save_summary(self, summary: ChapterSummary) -> None: ...

    # Hooks
    async def get_hook(self, hook_id: str) -> NarrativeHook | None: ...

    async def list_hooks(
        self, novel_id: str, statuses: Iterable[HookStatus] | None = None
    ) -> list[NarrativeHook]: ...

    async def save_hook(self, hook: NarrativeHook) -> None: ...

    # Pending entities
    async def get_pending_entity(self, entity_id: str) -> PendingEntity | None: ...

    async def list_pending_entities(
        self, novel_id: str, status: PendingEntityStatus | None = None
    ) -> list[PendingEntity]: ...

    async def save_pending_entity(self, entity: PendingEntity) -> None: ...

    # Versions
    async def commit_chapter_content(
        self,
        chapter: Chapter,
        version: ChapterVersion,
        *,
        clear_branch_cache: bool = False,
    ) -> None: ...

    async def replace_branch_cache(self, chapter_id: str, versions: list[ChapterVersion]) -> None: ...

    async def get_version(self, version_id: str) -> ChapterVersion | None: ...

    async def list_versions(self, chapter_id: str, *, branches_only: bool = False) -> list[ChapterVersion]: ...
