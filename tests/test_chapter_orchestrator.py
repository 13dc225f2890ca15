# tests/test_chapter_orchestrator.py
from unittest.mock import AsyncMock

import pytest

import config
from core.concurrency import ChapterLockRegistry, ConcurrencyLimiter
from core.exceptions import (
    ContextAssemblyError,
    ContinuityGateRejected,
    DatabaseError,
    ExternalCallTimeout,
    PreconditionError,
)
from core.llm_interface import GenerationRuntime, ProviderConfig
from core.text_processing_service import estimate_tokens
from models.narrative_models import (
    AgentProfile,
    Chapter,
    GenerationStage,
    PendingEntity,
)
from orchestration.chapter_orchestrator import (
    ChapterGenerationOptions,
    ChapterGenerationOrchestrator,
    build_rejection_message,
)
from processing.continuity_assessor import ContinuityGateConfig
from processing.post_generation import POST_GENERATION_JOB_TYPES
from tests.fakes.in_memory_store import InMemoryNarrativeStore
from tests.fakes.scripted_model import RecordingJobQueue, ScriptedModelAdapter, make_runtime
from tests.fakes.story import (
    CONTINUING_DRAFT,
    NOVEL_ID,
    UNRELATED_DRAFT,
    assessor_by_content,
    scripted_assessment,
    seed_story,
)

GATE = ContinuityGateConfig(pass_score=6.8, reject_score=4.9, max_repair_attempts=1)


@pytest.fixture
async def store() -> InMemoryNarrativeStore:
    store = InMemoryNarrativeStore()
    await seed_story(store)
    return store


@pytest.fixture
def queue() -> RecordingJobQueue:
    return RecordingJobQueue()


def _orchestrator(
    store: InMemoryNarrativeStore,
    adapter: ScriptedModelAdapter,
    queue: RecordingJobQueue,
    gate: ContinuityGateConfig = GATE,
    **kwargs,
) -> ChapterGenerationOrchestrator:
    return ChapterGenerationOrchestrator(
        store,
        make_runtime(adapter),
        queue,
        lock_registry=kwargs.pop("lock_registry", ChapterLockRegistry(enabled=True)),
        gate_config=gate,
        **kwargs,
    )


@pytest.mark.asyncio
class TestGenerateChapter:
    async def test_passing_draft_is_committed(self, store: InMemoryNarrativeStore, queue: RecordingJobQueue) -> None:
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])

        result = await _orchestrator(store, adapter, queue).generate_chapter("c2")

        assert result.content == CONTINUING_DRAFT
        assert result.continuity_gate.verdict == "pass"
        assert result.continuity_gate.score == 10.0
        assert result.continuity_gate.repair_attempts == 0
        assert result.continuity_gate.pass_score == 6.8
        assert result.pending_review is False
        assert result.word_count > 20

        chapter = store.chapters["c2"]
        assert chapter.content == CONTINUING_DRAFT
        assert chapter.generation_stage == GenerationStage.GENERATED
        assert chapter.pending_review is False
        assert chapter.chapter_card == {
            "must": ["Mara reaches the harbour.", "She meets Captain Reth."],
            "should": [],
            "must_not": [],
            "hooks": [],
            "style_guidance": "",
            "scene_objective": "",
        }

        version = store.versions[result.version_id]
        assert version.chapter_id == "c2"
        assert version.continuity_score == 10.0
        assert not version.is_branch

        assert queue.types == list(POST_GENERATION_JOB_TYPES)
        assert all(job.input == {"chapter_id": "c2"} for job in queue.jobs)
        assert result.post_process.all_queued

    async def test_prompt_carries_chapter_context(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue
    ) -> None:
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])

        await _orchestrator(store, adapter, queue).generate_chapter(
            "c2", ChapterGenerationOptions(word_count_target=1800)
        )

        prompt = adapter.prompts[0]
        assert prompt.startswith('You are writing Chapter 2 ("The Harbour") of "The Salt Road".')
        assert "The bell tower fell. Mara fled north." in prompt
        assert "## Chapter Card (must be followed)" in prompt
        assert "## Continuity Rules" in prompt
        assert "roughly 1800 words" in prompt
        assert adapter.temperatures == [config.TEMPERATURE_DRAFTING]
        assert adapter.requests[0].model == config.NARRATIVE_MODEL

    async def test_agent_overrides_model_and_system_prompt(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue
    ) -> None:
        store.add_agent(AgentProfile(id="a1", model="writer-x", system_prompt="Write sparse prose."))
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])

        await _orchestrator(store, adapter, queue).generate_chapter("c2", ChapterGenerationOptions(agent_id="a1"))

        request = adapter.requests[0]
        assert request.model == "writer-x"
        assert request.messages[0] == {"role": "system", "content": "Write sparse prose."}

    async def test_unknown_agent_fails_before_drafting(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue
    ) -> None:
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])
        with pytest.raises(PreconditionError, match="Agent not found"):
            await _orchestrator(store, adapter, queue).generate_chapter("c2", ChapterGenerationOptions(agent_id="nope"))
        assert adapter.requests == []

    async def test_repair_loop_recovers_weak_draft(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "orchestration.chapter_preparation.assess_continuity",
            assessor_by_content({"first draft": 5.5, "repaired draft": 8.0}),
        )
        adapter = ScriptedModelAdapter(["first draft", "repaired draft"])

        result = await _orchestrator(store, adapter, queue).generate_chapter("c2")

        assert result.content == "repaired draft"
        assert result.continuity_gate.repair_attempts == 1
        assert result.continuity_gate.score_history == [5.5, 8.0]
        assert result.pending_review is False
        assert adapter.temperatures == [config.TEMPERATURE_DRAFTING, config.TEMPERATURE_REVISION]

        repair_prompt = adapter.prompts[1]
        assert "## Current Draft (needs repair)\nfirst draft" in repair_prompt
        assert "weak continuation (5.5)" in repair_prompt

    async def test_warn_after_repairs_commits_for_review(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "orchestration.chapter_preparation.assess_continuity",
            assessor_by_content({"draft one": 5.5, "draft two": 6.0}),
        )
        adapter = ScriptedModelAdapter(["draft one", "draft two"])

        result = await _orchestrator(store, adapter, queue).generate_chapter("c2")

        assert result.continuity_gate.verdict == "warn"
        assert result.pending_review is True
        assert store.chapters["c2"].pending_review is True
        assert store.chapters["c2"].content == "draft two"
        assert len(adapter.requests) == 2

    async def test_rejected_draft_persists_nothing(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue
    ) -> None:
        adapter = ScriptedModelAdapter([UNRELATED_DRAFT, "Qqq zzz xxx."])

        with pytest.raises(ContinuityGateRejected) as exc_info:
            await _orchestrator(store, adapter, queue).generate_chapter("c2")

        error = exc_info.value
        assert error.message.startswith("Continuity gate rejected the draft (score 4.00): ")
        assert error.repair_attempts == 1
        assert error.assessment.verdict == "reject"
        assert "commit_chapter_content" not in store.calls
        assert store.chapters["c2"].content == ""
        assert store.chapters["c2"].generation_stage == GenerationStage.CHAPTERS
        assert store.versions == {}
        assert queue.jobs == []

    async def test_zero_repair_attempts_makes_one_call(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue
    ) -> None:
        gate = ContinuityGateConfig(pass_score=6.8, reject_score=4.9, max_repair_attempts=0)
        adapter = ScriptedModelAdapter([UNRELATED_DRAFT])

        with pytest.raises(ContinuityGateRejected):
            await _orchestrator(store, adapter, queue, gate=gate).generate_chapter("c2")
        assert len(adapter.requests) == 1

    async def test_disabled_gate_commits_without_repair(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue
    ) -> None:
        gate = ContinuityGateConfig(enabled=False, pass_score=6.8, reject_score=4.9, max_repair_attempts=2)
        adapter = ScriptedModelAdapter([UNRELATED_DRAFT])

        result = await _orchestrator(store, adapter, queue, gate=gate).generate_chapter("c2")

        assert len(adapter.requests) == 1
        assert result.continuity_gate.verdict == "reject"
        assert result.pending_review is True
        assert store.chapters["c2"].content == UNRELATED_DRAFT

    async def test_post_processing_failure_is_reported_not_raised(self, store: InMemoryNarrativeStore) -> None:
        queue = RecordingJobQueue(fail_types={"hooks_extract"})
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])

        result = await _orchestrator(store, adapter, queue).generate_chapter("c2")

        assert store.chapters["c2"].generation_stage == GenerationStage.GENERATED
        assert result.post_process.all_queued is False
        assert [f.type for f in result.post_process.failed] == ["hooks_extract"]
        assert result.post_process.queued_types == ["chapter_summary_generate", "pending_entity_extract"]

    async def test_context_failure_falls_back_to_chapter_endings(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue
    ) -> None:
        assembler = AsyncMock()
        assembler.assemble_truncated.side_effect = ContextAssemblyError("graph unavailable")
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])

        result = await _orchestrator(store, adapter, queue, assembler=assembler).generate_chapter("c2")

        assert result.context_warnings == ["Context assembly failed; using recent chapter endings"]
        assert "## Recent Chapter Endings\n\n### Chapter 1: The Fall" in adapter.prompts[0]

    @pytest.mark.parametrize("failing_read", ["list_summaries", "list_hooks"])
    async def test_narrative_state_failure_degrades_instead_of_aborting(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue, failing_read: str
    ) -> None:
        store.fail_on[failing_read] = DatabaseError("summary index offline")
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])

        result = await _orchestrator(store, adapter, queue).generate_chapter("c2")

        assert "Summaries and hooks unavailable; continuity uses recent chapters only" in result.context_warnings
        assert store.chapters["c2"].generation_stage == GenerationStage.GENERATED
        assert len(adapter.requests) == 1

    async def test_model_timeout_persists_nothing(self, store: InMemoryNarrativeStore, queue: RecordingJobQueue) -> None:
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT], delay=0.5)
        runtime = GenerationRuntime(
            adapter,
            ConcurrencyLimiter(max_concurrent=1, default_timeout=0.01),
            provider=ProviderConfig(api_base="http://llm.test/v1", api_key="test"),
            token_counter=lambda text, model: estimate_tokens(text),
        )
        orchestrator = ChapterGenerationOrchestrator(store, runtime, queue, gate_config=GATE)

        with pytest.raises(ExternalCallTimeout):
            await orchestrator.generate_chapter("c2")
        assert "commit_chapter_content" not in store.calls
        assert not orchestrator.lock_registry.is_locked("c2")


@pytest.mark.asyncio
class TestPreconditions:
    async def test_out_of_order_generation_is_refused(self, queue: RecordingJobQueue) -> None:
        store = InMemoryNarrativeStore()
        await seed_story(store, second_stage=GenerationStage.GENERATED)
        await store.save_chapter(Chapter(id="c3", novel_id=NOVEL_ID, order=3))
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])

        with pytest.raises(PreconditionError, match="Complete chapter 2 before generating chapter 3"):
            await _orchestrator(store, adapter, queue).generate_chapter("c3")

        assert adapter.requests == []
        assert store.chapters["c3"].content == ""
        assert store.chapters["c3"].generation_stage == GenerationStage.SEEDED

    async def test_pending_entities_block_generation(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue
    ) -> None:
        await store.save_pending_entity(PendingEntity(novel_id=NOVEL_ID, name="Ivo", introduced_in_chapter=1))
        await store.save_pending_entity(
            PendingEntity(novel_id=NOVEL_ID, name="The Salt Guild", kind="organization", introduced_in_chapter=1)
        )
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])

        with pytest.raises(PreconditionError) as exc_info:
            await _orchestrator(store, adapter, queue).generate_chapter("c2")

        assert exc_info.value.message == (
            "Confirm pending entities before generating this chapter: Ivo, The Salt Guild"
        )
        assert exc_info.value.details["pending_entities"] == ["Ivo", "The Salt Guild"]
        assert adapter.requests == []

    async def test_outline_stage_blocks_drafting(self, queue: RecordingJobQueue) -> None:
        store = InMemoryNarrativeStore()
        await seed_story(store, novel_stage=GenerationStage.DETAILED)

        with pytest.raises(PreconditionError, match="Complete the chapter outline"):
            await _orchestrator(store, ScriptedModelAdapter(), queue).generate_chapter("c2")

    async def test_reviewed_chapter_cannot_be_regenerated(self, queue: RecordingJobQueue) -> None:
        store = InMemoryNarrativeStore()
        await seed_story(store, second_stage=GenerationStage.REVIEWED)

        with pytest.raises(PreconditionError):
            await _orchestrator(store, ScriptedModelAdapter(), queue).generate_chapter("c2")

    async def test_missing_chapter(self, store: InMemoryNarrativeStore, queue: RecordingJobQueue) -> None:
        with pytest.raises(PreconditionError, match="Chapter not found"):
            await _orchestrator(store, ScriptedModelAdapter(), queue).generate_chapter("missing")

    async def test_generated_chapter_can_be_regenerated(self, queue: RecordingJobQueue) -> None:
        store = InMemoryNarrativeStore()
        await seed_story(store, second_stage=GenerationStage.GENERATED)
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])

        result = await _orchestrator(store, adapter, queue).generate_chapter("c2")
        assert result.content == CONTINUING_DRAFT

    async def test_concurrent_generation_is_refused(
        self, store: InMemoryNarrativeStore, queue: RecordingJobQueue
    ) -> None:
        registry = ChapterLockRegistry(enabled=True)
        adapter = ScriptedModelAdapter([CONTINUING_DRAFT])
        orchestrator = _orchestrator(store, adapter, queue, lock_registry=registry)

        async with registry.hold("c2"):
            with pytest.raises(PreconditionError, match="already in progress"):
                await orchestrator.generate_chapter("c2")
        assert adapter.requests == []


def test_rejection_message_lists_top_three_issues() -> None:
    assessment = scripted_assessment(3.0)
    assessment.issues = assessment.issues * 4
    message = build_rejection_message(assessment)
    assert message == (
        "Continuity gate rejected the draft (score 3.00): "
        "weak continuation (3.0); weak continuation (3.0); weak continuation (3.0)."
    )
