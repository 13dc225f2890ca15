# processing/pending_entity_gate.py
"""Hold generation until newly introduced entities are confirmed by the author.

Extraction registers every new character or organization as a
`PendingEntity`. Any entity still pending from a chapter before the target
blocks generation of the target chapter; confirming, rejecting or merging the
entity lifts the block.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from difflib import SequenceMatcher
from typing import Any

import structlog
from pydantic import BaseModel, Field

import config
from core.exceptions import ValidationError
from data_access.narrative_store import NarrativeStore
from models.narrative_models import PendingEntity, PendingEntityStatus

logger = structlog.get_logger(__name__)

ENTITY_KINDS = ("character", "organization")


class BlockingReport(BaseModel):
    blocked: bool
    pending_entities: list[PendingEntity] = Field(default_factory=list)

    @property
    def pending_names(self) -> list[str]:
        return [entity.name for entity in self.pending_entities]


class EntityMatch(BaseModel):
    name: str
    score: float


def find_potential_matches(
    name: str, known_names: Iterable[str], threshold: float | None = None
) -> list[EntityMatch]:
    """Score `known_names` against `name`, best first.

    Exact (case-insensitive) matches score 1.0, containment 0.8, otherwise the
    `difflib` ratio is kept when it reaches the threshold.
    """
    threshold = threshold if threshold is not None else config.PENDING_ENTITY_MATCH_THRESHOLD
    needle = name.strip().lower()
    if not needle:
        return []

    matches: list[EntityMatch] = []
    for known in known_names:
        candidate = known.strip().lower()
        if not candidate:
            continue
        if candidate == needle:
            score = 1.0
        elif needle in candidate or candidate in needle:
            score = 0.8
        else:
            score = SequenceMatcher(None, needle, candidate).ratio()
            if score < threshold:
                continue
        matches.append(EntityMatch(name=known, score=round(score, 4)))
    matches.sort(key=lambda m: m.score, reverse=True)
    return matches


class PendingEntityGate:
    def __init__(self, store: NarrativeStore):
        self.store = store

    async def check_blocking(self, novel_id: str, up_to_chapter_order: int) -> BlockingReport:
        """Report entities still pending from chapters strictly before `up_to_chapter_order`."""
        pending = await self.store.list_pending_entities(novel_id, PendingEntityStatus.PENDING)
        blocking = [e for e in pending if e.introduced_in_chapter < up_to_chapter_order]
        if blocking:
            logger.info(
                "check_blocking: chapter blocked by pending entities",
                novel_id=novel_id,
                chapter=up_to_chapter_order,
                names=[e.name for e in blocking],
            )
        return BlockingReport(blocked=bool(blocking), pending_entities=blocking)

    async def _review(self, entity_id: str, status: PendingEntityStatus, merged_into: str | None = None) -> PendingEntity:
        entity = await self.store.get_pending_entity(entity_id)
        if entity is None:
            raise ValidationError("Pending entity not found", details={"entity_id": entity_id})
        entity.status = status
        entity.merged_into = merged_into
        await self.store.save_pending_entity(entity)
        logger.info(
            "pending entity reviewed",
            entity_id=entity_id,
            name=entity.name,
            status=status.value,
            merged_into=merged_into,
        )
        return entity

    async def confirm(self, entity_id: str) -> PendingEntity:
        return await self._review(entity_id, PendingEntityStatus.APPROVED)

    async def reject(self, entity_id: str) -> PendingEntity:
        return await self._review(entity_id, PendingEntityStatus.REJECTED)

    async def merge(self, entity_id: str, target_name: str) -> PendingEntity:
        if not target_name or not target_name.strip():
            raise ValidationError("A merge target name is required", details={"entity_id": entity_id})
        return await self._review(entity_id, PendingEntityStatus.MERGED, merged_into=target_name.strip())

    async def register_extracted(
        self,
        novel_id: str,
        chapter: int,
        entities: Sequence[dict[str, Any]],
        known_names: Iterable[str] = (),
    ) -> list[PendingEntity]:
        """Create pending records for extracted entities not seen before.

        Names already registered for the novel, or listed in `known_names`, are
        skipped case-insensitively, as are kinds other than character and
        organization.
        """
        existing = await self.store.list_pending_entities(novel_id)
        seen = {e.name.strip().lower() for e in existing}
        seen.update(name.strip().lower() for name in known_names)

        created: list[PendingEntity] = []
        for raw in entities:
            name = str(raw.get("name") or "").strip()
            kind = str(raw.get("kind") or raw.get("type") or "character").strip().lower()
            if not name or kind not in ENTITY_KINDS or name.lower() in seen:
                continue
            seen.add(name.lower())
            entity = PendingEntity(
                novel_id=novel_id,
                name=name,
                kind=kind,  # type: ignore[arg-type]
                introduced_in_chapter=chapter,
                description=str(raw.get("description") or ""),
            )
            await self.store.save_pending_entity(entity)
            created.append(entity)

        logger.info(
            "register_extracted: pending entities registered",
            novel_id=novel_id,
            chapter=chapter,
            created=len(created),
            skipped=len(entities) - len(created),
        )
        return created

    async def get_summary(self, novel_id: str) -> dict[str, Any]:
        pending = await self.store.list_pending_entities(novel_id, PendingEntityStatus.PENDING)
        by_kind = Counter(e.kind for e in pending)
        by_chapter = Counter(e.introduced_in_chapter for e in pending)
        return {
            "pending_count": len(pending),
            "by_kind": {kind: by_kind[kind] for kind in ENTITY_KINDS},
            "by_chapter": {str(chapter): count for chapter, count in sorted(by_chapter.items())},
            "blocked_chapters": sorted(by_chapter),
        }

    async def format_for_context(self, novel_id: str) -> str:
        pending = await self.store.list_pending_entities(novel_id, PendingEntityStatus.PENDING)
        if not pending:
            return ""
        lines = ["## Entities Awaiting Confirmation"]
        lines.extend(f"- {e.name} ({e.kind}, introduced in Ch.{e.introduced_in_chapter})" for e in pending)
        return "\n".join(lines)
