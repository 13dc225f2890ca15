# data_access/neo4j_store.py
"""Neo4j-backed implementation of `NarrativeStore`.

Records are stored as flat nodes keyed by `id` with a `novel_id` (or
`chapter_id`) property. Nested values that Neo4j cannot hold as properties,
such as the chapter card, are stored as JSON strings. Atomic units are issued
through `execute_cypher_batch`, which runs in a single transaction.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

import structlog

from core.db_manager import neo4j_manager
from core.exceptions import handle_database_error
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

logger = structlog.get_logger(__name__)


def _chapter_props(chapter: Chapter) -> dict[str, Any]:
    props = chapter.model_dump(mode="json")
    props["chapter_card"] = json.dumps(chapter.chapter_card) if chapter.chapter_card is not None else None
    return props


def _chapter_from_row(row: dict[str, Any]) -> Chapter:
    props = dict(row)
    card = props.get("chapter_card")
    if isinstance(card, str):
        props["chapter_card"] = json.loads(card) if card else None
    return Chapter.model_validate(props)


class Neo4jNarrativeStore:
    """Persist narrative records in Neo4j."""

    def __init__(self, manager: Any = None):
        self._db = manager or neo4j_manager

    async def _read(self, operation: str, query: str, parameters: dict[str, Any], **context: Any) -> list[dict[str, Any]]:
        try:
            return await self._db.execute_read_query(query, parameters)
        except Exception as e:
            logger.error("Neo4j read failed", operation=operation, error=str(e), exc_info=True)
            raise handle_database_error(operation, e, **context) from e

    async def _write(self, operation: str, query: str, parameters: dict[str, Any], **context: Any) -> None:
        try:
            await self._db.execute_write_query(query, parameters)
        except Exception as e:
            logger.error("Neo4j write failed", operation=operation, error=str(e), exc_info=True)
            raise handle_database_error(operation, e, **context) from e

    async def _batch(self, operation: str, statements: list[tuple[str, dict[str, Any]]], **context: Any) -> None:
        try:
            await self._db.execute_cypher_batch(statements)
        except Exception as e:
            logger.error("Neo4j batch failed", operation=operation, error=str(e), exc_info=True)
            raise handle_database_error(operation, e, **context) from e

    # ------------------------------------------------------------------
    # Novels, chapters, agents
    # ------------------------------------------------------------------

    async def get_novel(self, novel_id: str) -> Novel | None:
        rows = await self._read(
            "get_novel",
            "MATCH (n:Novel {id: $novel_id}) RETURN n {.*} AS novel",
            {"novel_id": novel_id},
            novel_id=novel_id,
        )
        return Novel.model_validate(rows[0]["novel"]) if rows else None

    async def save_novel(self, novel: Novel) -> None:
        await self._write(
            "save_novel",
            "MERGE (n:Novel {id: $id}) SET n += $props",
            {"id": novel.id, "props": novel.model_dump(mode="json")},
            novel_id=novel.id,
        )

    async def get_chapter(self, chapter_id: str) -> Chapter | None:
        rows = await self._read(
            "get_chapter",
            "MATCH (c:Chapter {id: $chapter_id}) RETURN c {.*} AS chapter",
            {"chapter_id": chapter_id},
            chapter_id=chapter_id,
        )
        return _chapter_from_row(rows[0]["chapter"]) if rows else None

    async def save_chapter(self, chapter: Chapter) -> None:
        await self._write(
            "save_chapter",
            """
            MERGE (c:Chapter {id: $id})
            SET c += $props
            WITH c
            MATCH (n:Novel {id: $novel_id})
            MERGE (n)-[:HAS_CHAPTER]->(c)
            """,
            {"id": chapter.id, "novel_id": chapter.novel_id, "props": _chapter_props(chapter)},
            chapter_id=chapter.id,
        )

    async def list_chapters(self, novel_id: str, before_order: int | None = None) -> list[Chapter]:
        rows = await self._read(
            "list_chapters",
            """
            MATCH (c:Chapter {novel_id: $novel_id})
            WHERE $before_order IS NULL OR c.order < $before_order
            RETURN c {.*} AS chapter
            ORDER BY c.order ASC
            """,
            {"novel_id": novel_id, "before_order": before_order},
            novel_id=novel_id,
        )
        return [_chapter_from_row(row["chapter"]) for row in rows]

    async def get_agent(self, agent_id: str) -> AgentProfile | None:
        rows = await self._read(
            "get_agent",
            "MATCH (a:AgentProfile {id: $agent_id}) RETURN a {.*} AS agent",
            {"agent_id": agent_id},
            agent_id=agent_id,
        )
        return AgentProfile.model_validate(rows[0]["agent"]) if rows else None

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def list_summaries(
        self,
        novel_id: str,
        before_order: int | None = None,
        limit: int | None = None,
    ) -> list[ChapterSummary]:
        query = """
        MATCH (s:ChapterSummary {novel_id: $novel_id})
        WHERE $before_order IS NULL OR s.chapter_number < $before_order
        RETURN s {.*} AS summary
        ORDER BY s.chapter_number DESC
        """
        parameters: dict[str, Any] = {"novel_id": novel_id, "before_order": before_order}
        if limit is not None:
            query += "\nLIMIT $limit"
            parameters["limit"] = max(0, limit)
        rows = await self._read("list_summaries", query, parameters, novel_id=novel_id)
        summaries = [ChapterSummary.model_validate(row["summary"]) for row in rows]
        summaries.sort(key=lambda s: s.chapter_number)
        return summaries

    async def save_summary(self, summary: ChapterSummary) -> None:
        await self._write(
            "save_summary",
            """
            MERGE (s:ChapterSummary {novel_id: $novel_id, chapter_number: $chapter_number})
            SET s += $props
            """,
            {
                "novel_id": summary.novel_id,
                "chapter_number": summary.chapter_number,
                "props": summary.model_dump(mode="json"),
            },
            novel_id=summary.novel_id,
            chapter_number=summary.chapter_number,
        )

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def get_hook(self, hook_id: str) -> NarrativeHook | None:
        rows = await self._read(
            "get_hook",
            "MATCH (h:NarrativeHook {id: $hook_id}) RETURN h {.*} AS hook",
            {"hook_id": hook_id},
            hook_id=hook_id,
        )
        return NarrativeHook.model_validate(rows[0]["hook"]) if rows else None

    async def list_hooks(self, novel_id: str, statuses: Iterable[HookStatus] | None = None) -> list[NarrativeHook]:
        status_values = [HookStatus(s).value for s in statuses] if statuses is not None else None
        rows = await self._read(
            "list_hooks",
            """
            MATCH (h:NarrativeHook {novel_id: $novel_id})
            WHERE $statuses IS NULL OR h.status IN $statuses
            RETURN h {.*} AS hook
            ORDER BY h.planted_in_chapter ASC
            """,
            {"novel_id": novel_id, "statuses": status_values},
            novel_id=novel_id,
        )
        return [NarrativeHook.model_validate(row["hook"]) for row in rows]

    async def save_hook(self, hook: NarrativeHook) -> None:
        await self._write(
            "save_hook",
            "MERGE (h:NarrativeHook {id: $id}) SET h += $props",
            {"id": hook.id, "props": hook.model_dump(mode="json")},
            hook_id=hook.id,
        )

    # ------------------------------------------------------------------
    # Pending entities
    # ------------------------------------------------------------------

    async def get_pending_entity(self, entity_id: str) -> PendingEntity | None:
        rows = await self._read(
            "get_pending_entity",
            "MATCH (p:PendingEntity {id: $entity_id}) RETURN p {.*} AS entity",
            {"entity_id": entity_id},
            entity_id=entity_id,
        )
        return PendingEntity.model_validate(rows[0]["entity"]) if rows else None

    async def list_pending_entities(
        self, novel_id: str, status: PendingEntityStatus | None = None
    ) -> list[PendingEntity]:
        rows = await self._read(
            "list_pending_entities",
            """
            MATCH (p:PendingEntity {novel_id: $novel_id})
            WHERE $status IS NULL OR p.status = $status
            RETURN p {.*} AS entity
            ORDER BY p.introduced_in_chapter ASC, p.name ASC
            """,
            {"novel_id": novel_id, "status": status.value if status is not None else None},
            novel_id=novel_id,
        )
        return [PendingEntity.model_validate(row["entity"]) for row in rows]

    async def save_pending_entity(self, entity: PendingEntity) -> None:
        await self._write(
            "save_pending_entity",
            "MERGE (p:PendingEntity {id: $id}) SET p += $props",
            {"id": entity.id, "props": entity.model_dump(mode="json")},
            entity_id=entity.id,
        )

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    @staticmethod
    def _delete_branches_statement(chapter_id: str) -> tuple[str, dict[str, Any]]:
        return (
            "MATCH (v:ChapterVersion {chapter_id: $chapter_id, is_branch: true}) DETACH DELETE v",
            {"chapter_id": chapter_id},
        )

    @staticmethod
    def _create_versions_statement(chapter_id: str, versions: list[ChapterVersion]) -> tuple[str, dict[str, Any]]:
        return (
            """
            MATCH (c:Chapter {id: $chapter_id})
            UNWIND $versions AS props
            CREATE (c)-[:HAS_VERSION]->(v:ChapterVersion)
            SET v = props
            """,
            {"chapter_id": chapter_id, "versions": [v.model_dump(mode="json") for v in versions]},
        )

    async def commit_chapter_content(
        self,
        chapter: Chapter,
        version: ChapterVersion,
        *,
        clear_branch_cache: bool = False,
    ) -> None:
        """Write content, stage, review flag and the version in one transaction."""
        statements: list[tuple[str, dict[str, Any]]] = [
            (
                """
                MATCH (c:Chapter {id: $chapter_id})
                SET c.content = $content,
                    c.generation_stage = $generation_stage,
                    c.pending_review = $pending_review,
                    c.outline = $outline,
                    c.chapter_card = $chapter_card,
                    c.last_updated = timestamp()
                """,
                {
                    "chapter_id": chapter.id,
                    "content": chapter.content,
                    "generation_stage": chapter.generation_stage.value,
                    "pending_review": chapter.pending_review,
                    "outline": chapter.outline,
                    "chapter_card": _chapter_props(chapter)["chapter_card"],
                },
            )
        ]
        if clear_branch_cache:
            statements.append(self._delete_branches_statement(chapter.id))
        statements.append(self._create_versions_statement(chapter.id, [version]))
        await self._batch("commit_chapter_content", statements, chapter_id=chapter.id)
        logger.info(
            "Neo4j: chapter content committed",
            chapter_id=chapter.id,
            version_id=version.id,
            cleared_branches=clear_branch_cache,
        )

    async def replace_branch_cache(self, chapter_id: str, versions: list[ChapterVersion]) -> None:
        """Replace every branch version of the chapter with `versions` in one transaction."""
        statements = [self._delete_branches_statement(chapter_id)]
        if versions:
            statements.append(self._create_versions_statement(chapter_id, versions))
        await self._batch("replace_branch_cache", statements, chapter_id=chapter_id)

    async def get_version(self, version_id: str) -> ChapterVersion | None:
        rows = await self._read(
            "get_version",
            "MATCH (v:ChapterVersion {id: $version_id}) RETURN v {.*} AS version",
            {"version_id": version_id},
            version_id=version_id,
        )
        return ChapterVersion.model_validate(rows[0]["version"]) if rows else None

    async def list_versions(self, chapter_id: str, *, branches_only: bool = False) -> list[ChapterVersion]:
        rows = await self._read(
            "list_versions",
            """
            MATCH (v:ChapterVersion {chapter_id: $chapter_id})
            WHERE NOT $branches_only OR v.is_branch = true
            RETURN v {.*} AS version
            ORDER BY v.created_at ASC
            """,
            {"chapter_id": chapter_id, "branches_only": branches_only},
            chapter_id=chapter_id,
        )
        return [ChapterVersion.model_validate(row["version"]) for row in rows]
