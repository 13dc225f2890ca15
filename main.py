# main.py
import argparse
import asyncio

import structlog

import config
from config.validator import validate_all
from core.concurrency import ConcurrencyLimiter
from core.db_manager import neo4j_manager
from core.exceptions import ChapterForgeError
from core.llm_interface import create_generation_runtime
from core.logging_config import setup_logging
from data_access.neo4j_store import Neo4jNarrativeStore
from orchestration.branch_generator import BranchGenerationOptions, BranchGenerator
from orchestration.chapter_orchestrator import ChapterGenerationOptions, ChapterGenerationOrchestrator
from processing.chapter_extraction import ChapterExtractionService
from processing.hook_tracker import HookTracker
from processing.pending_entity_gate import PendingEntityGate
from processing.post_generation import InProcessJobQueue

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate novel chapters with continuity checks.")
    sub = parser.add_subparsers(dest="command", required=True)

    generate = sub.add_parser("generate", help="Generate one chapter through the continuity gate")
    generate.add_argument("chapter_id")
    generate.add_argument("--agent-id", default=None)
    generate.add_argument("--outline", default=None, help="Override the stored chapter outline")
    generate.add_argument("--web-search", action="store_true", help="Ask the provider to use web search")

    branches = sub.add_parser("branches", help="Generate ranked alternative drafts of a chapter")
    branches.add_argument("chapter_id")
    branches.add_argument("--count", type=int, default=config.BRANCH_DEFAULT_COUNT)
    branches.add_argument("--agent-id", default=None)
    branches.add_argument("--selected-version", default=None, help="Version to iterate on")
    branches.add_argument("--feedback", default=None, help="Author feedback for the selected version")
    branches.add_argument("--round", type=int, default=1, dest="iteration_round")

    select = sub.add_parser("select", help="Promote a cached branch to the chapter content")
    select.add_argument("chapter_id")
    select.add_argument("version_id")

    hooks = sub.add_parser("hooks", help="Print the narrative hook report for a novel")
    hooks.add_argument("novel_id")
    hooks.add_argument("--chapter", type=int, default=None, help="Current chapter for overdue checks")

    sub.add_parser("init-schema", help="Create Neo4j constraints and indexes")
    return parser


async def run(args: argparse.Namespace) -> None:
    await neo4j_manager.connect()
    runtime = create_generation_runtime(ConcurrencyLimiter())
    store = Neo4jNarrativeStore(neo4j_manager)
    hook_tracker = HookTracker(store)
    pending_gate = PendingEntityGate(store)
    extraction = ChapterExtractionService(store, runtime, hook_tracker, pending_gate)
    queue = InProcessJobQueue(extraction.run_post_generation_job)

    try:
        if args.command == "init-schema":
            await neo4j_manager.create_db_schema()
        elif args.command == "generate":
            orchestrator = ChapterGenerationOrchestrator(
                store,
                runtime,
                queue,
                hook_tracker=hook_tracker,
                pending_gate=pending_gate,
            )
            result = await orchestrator.generate_chapter(
                args.chapter_id,
                ChapterGenerationOptions(
                    agent_id=args.agent_id,
                    outline=args.outline,
                    enable_web_search=args.web_search,
                ),
            )
            logger.info(
                "Chapter generated",
                chapter_id=args.chapter_id,
                words=result.word_count,
                score=result.continuity_gate.score,
                verdict=result.continuity_gate.verdict,
            )
            for job in await queue.drain():
                logger.info("Post-processing job finished", job_type=job.type, status=job.status.value)
        elif args.command == "branches":
            generator = BranchGenerator(store, runtime, hook_tracker=hook_tracker, pending_gate=pending_gate)
            result = await generator.generate_branches(
                args.chapter_id,
                BranchGenerationOptions(
                    branch_count=args.count,
                    agent_id=args.agent_id,
                    selected_version_id=args.selected_version,
                    feedback=args.feedback,
                    iteration_round=args.iteration_round,
                ),
            )
            for branch in result.branches:
                logger.info(
                    "Branch",
                    branch=branch.branch_number,
                    score=branch.continuity_score,
                    verdict=branch.continuity_verdict,
                    recommended=branch.continuity_recommended,
                    version_id=branch.version_id,
                )
        elif args.command == "select":
            generator = BranchGenerator(store, runtime, hook_tracker=hook_tracker, pending_gate=pending_gate)
            version = await generator.select_branch(args.chapter_id, args.version_id)
            logger.info("Branch selected", chapter_id=args.chapter_id, version_id=version.id)
        elif args.command == "hooks":
            report = await hook_tracker.get_hooks_report(args.novel_id, args.chapter)
            logger.info("Hook report", novel_id=args.novel_id, **report)
    finally:
        await runtime.aclose()
        await neo4j_manager.close()


def _report_config_health() -> None:
    report = validate_all()
    for issue in report["issues"]["errors"] + report["issues"]["warnings"]:
        logger.warning("Configuration issue", field=issue["field"], message=issue["message"])


def main() -> None:
    setup_logging()
    _report_config_health()
    args = build_parser().parse_args()
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("ChapterForge shutting down due to KeyboardInterrupt")
    except ChapterForgeError as e:
        logger.error(f"ChapterForge command failed: {e}")
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
