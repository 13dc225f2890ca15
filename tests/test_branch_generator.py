# tests/test_branch_generator.py
import asyncio

import pytest

from core.exceptions import LLMServiceError, PreconditionError, ValidationError
from models.narrative_models import BranchCandidate, ChapterVersion, GenerationStage
from orchestration.branch_generator import (
    BranchGenerationOptions,
    BranchGenerator,
    branch_temperatures,
    next_iteration_round,
    rank_branches,
)
from processing.continuity_assessor import ContinuityGateConfig
from tests.fakes.in_memory_store import InMemoryNarrativeStore
from tests.fakes.scripted_model import ScriptedModelAdapter, make_runtime
from tests.fakes.story import assessor_by_content, seed_story

GATE = ContinuityGateConfig(pass_score=6.8, reject_score=4.9, max_repair_attempts=1)
SCHEDULE = [0.7, 0.8, 0.9]
DRAFTS = {0.7: "branch one", 0.8: "branch two", 0.9: "branch three"}


@pytest.fixture
async def store() -> InMemoryNarrativeStore:
    store = InMemoryNarrativeStore()
    await seed_story(store)
    return store


@pytest.fixture(autouse=True)
def fixed_schedule(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("config.BRANCH_TEMPERATURES", SCHEDULE)
    monkeypatch.setattr("config.BRANCH_CACHE_LIMIT", 3)
    monkeypatch.setattr("config.BRANCH_MAX_COUNT", 8)


def _by_temperature(request) -> str:
    return DRAFTS.get(request.temperature, f"draft at {request.temperature}")


class _OneBranchFails(ScriptedModelAdapter):
    """Fails the 0.8 branch at once; the others finish after a short delay."""

    def __init__(self) -> None:
        super().__init__(responder=_by_temperature)
        self.finished: list[float] = []

    async def generate(self, provider, request):
        if request.temperature == 0.8:
            raise LLMServiceError("provider down")
        await asyncio.sleep(0.05)
        response = await super().generate(provider, request)
        self.finished.append(request.temperature)
        return response


def _generator(store: InMemoryNarrativeStore, adapter: ScriptedModelAdapter) -> BranchGenerator:
    return BranchGenerator(store, make_runtime(adapter), gate_config=GATE)


def _candidate(number: int, score: float) -> BranchCandidate:
    return BranchCandidate(
        branch_number=number,
        temperature=0.7,
        content=f"text {number}",
        continuity_score=score,
        continuity_verdict="pass",
    )


class TestHelpers:
    def test_temperatures_follow_schedule(self) -> None:
        assert branch_temperatures(3, SCHEDULE) == [0.7, 0.8, 0.9]
        assert branch_temperatures(1, SCHEDULE) == [0.7]
        assert branch_temperatures(0, SCHEDULE) == []

    def test_temperatures_interpolate_past_schedule(self) -> None:
        assert branch_temperatures(5, [0.7, 0.9]) == [0.7, 0.75, 0.8, 0.85, 0.9]

    def test_flat_schedule_still_varies(self) -> None:
        assert branch_temperatures(3, [0.8]) == [0.8, 0.81, 0.82]

    def test_ranking_is_stable_for_ties(self) -> None:
        ranked = rank_branches([_candidate(1, 6.0), _candidate(2, 8.5), _candidate(3, 8.5)])
        assert [c.branch_number for c in ranked] == [2, 3, 1]
        assert [c.continuity_recommended for c in ranked] == [True, False, False]

    def test_next_iteration_round(self) -> None:
        assert next_iteration_round(None) == 2
        assert next_iteration_round(3) == 4


@pytest.mark.asyncio
class TestGenerateBranches:
    async def test_branches_ranked_by_continuity(
        self, store: InMemoryNarrativeStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "orchestration.chapter_preparation.assess_continuity",
            assessor_by_content({"branch one": 6.0, "branch two": 8.5, "branch three": 8.5}),
        )
        adapter = ScriptedModelAdapter(responder=_by_temperature)

        result = await _generator(store, adapter).generate_branches("c2", BranchGenerationOptions(branch_count=3))

        assert [b.branch_number for b in result.branches] == [2, 3, 1]
        assert [b.continuity_recommended for b in result.branches] == [True, False, False]
        assert [b.temperature for b in result.branches] == [0.8, 0.9, 0.7]
        assert result.branches[2].continuity_verdict == "warn"
        assert result.branches[2].continuity_issues == ["weak continuation (6.0)"]
        assert result.continuity_gate.rejected_count == 0
        assert result.iteration_round == 1
        assert sorted(adapter.temperatures) == SCHEDULE

        cached = sorted(
            (v for v in store.versions.values() if v.is_branch),
            key=lambda v: v.rank,
        )
        assert [(v.branch_number, v.rank) for v in cached] == [(2, 1), (3, 2), (1, 3)]
        assert result.branches[0].version_id == cached[0].id

    async def test_branches_do_not_touch_chapter(self, store: InMemoryNarrativeStore) -> None:
        adapter = ScriptedModelAdapter(responder=_by_temperature)

        await _generator(store, adapter).generate_branches("c2")

        assert store.chapters["c2"].content == ""
        assert store.chapters["c2"].generation_stage == GenerationStage.CHAPTERS
        assert "commit_chapter_content" not in store.calls

    async def test_only_top_branches_are_cached(
        self, store: InMemoryNarrativeStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        scores = {"draft at 0.75": 9.0, "draft at 0.85": 4.0, **{text: 7.0 for text in DRAFTS.values()}}
        monkeypatch.setattr("orchestration.chapter_preparation.assess_continuity", assessor_by_content(scores))
        adapter = ScriptedModelAdapter(responder=_by_temperature)

        result = await _generator(store, adapter).generate_branches("c2", BranchGenerationOptions(branch_count=5))

        assert [b.branch_number for b in result.branches] == [2, 1, 3, 5, 4]
        assert [b.retained for b in result.branches] == [True, True, True, False, False]
        assert result.branches[-1].version_id is None
        assert result.continuity_gate.rejected_count == 1
        assert len([v for v in store.versions.values() if v.is_branch]) == 3

    async def test_new_generation_replaces_branch_cache(self, store: InMemoryNarrativeStore) -> None:
        adapter = ScriptedModelAdapter(responder=_by_temperature)
        generator = _generator(store, adapter)

        first = await generator.generate_branches("c2", BranchGenerationOptions(branch_count=2))
        second = await generator.generate_branches("c2", BranchGenerationOptions(branch_count=2))

        cached_ids = {v.id for v in store.versions.values() if v.is_branch}
        assert cached_ids == {b.version_id for b in second.branches}
        assert cached_ids.isdisjoint(b.version_id for b in first.branches)

    async def test_branch_failure_is_raised_after_every_branch_settles(self, store: InMemoryNarrativeStore) -> None:
        adapter = _OneBranchFails()

        with pytest.raises(LLMServiceError, match="provider down"):
            await _generator(store, adapter).generate_branches("c2", BranchGenerationOptions(branch_count=3))

        assert sorted(adapter.finished) == [0.7, 0.9]
        assert "replace_branch_cache" not in store.calls
        assert not any(v.is_branch for v in store.versions.values())

    async def test_too_many_branches(self, store: InMemoryNarrativeStore) -> None:
        adapter = ScriptedModelAdapter(responder=_by_temperature)
        with pytest.raises(ValidationError):
            await _generator(store, adapter).generate_branches("c2", BranchGenerationOptions(branch_count=9))
        assert adapter.requests == []

    async def test_branches_share_preconditions(self) -> None:
        store = InMemoryNarrativeStore()
        await seed_story(store, novel_stage=GenerationStage.DETAILED)
        with pytest.raises(PreconditionError):
            await _generator(store, ScriptedModelAdapter()).generate_branches("c2")

    async def test_iteration_prompt_includes_selection_and_feedback(self, store: InMemoryNarrativeStore) -> None:
        previous = ChapterVersion(chapter_id="c2", content="The old harbour scene.")
        store.versions[previous.id] = previous
        adapter = ScriptedModelAdapter(responder=_by_temperature)

        result = await _generator(store, adapter).generate_branches(
            "c2",
            BranchGenerationOptions(
                branch_count=2,
                selected_version_id=previous.id,
                feedback="  Add the storm.  ",
                iteration_round=2,
            ),
        )

        assert result.iteration_round == 2
        for prompt in adapter.prompts:
            assert prompt.startswith("This is iteration round 2 of the chapter.")
            assert "The old harbour scene." in prompt
            assert "## Author Feedback\nAdd the storm." in prompt
            assert 'You are writing Chapter 2 ("The Harbour")' in prompt

    async def test_feedback_without_selection_uses_base_prompt(self, store: InMemoryNarrativeStore) -> None:
        adapter = ScriptedModelAdapter(responder=_by_temperature)
        await _generator(store, adapter).generate_branches(
            "c2", BranchGenerationOptions(branch_count=1, feedback="Add the storm.")
        )
        assert adapter.prompts[0].startswith("You are writing Chapter 2")

    async def test_selected_version_from_other_chapter_is_rejected(self, store: InMemoryNarrativeStore) -> None:
        foreign = ChapterVersion(chapter_id="c1", content="Chapter one text.")
        store.versions[foreign.id] = foreign
        adapter = ScriptedModelAdapter(responder=_by_temperature)

        with pytest.raises(ValidationError):
            await _generator(store, adapter).generate_branches(
                "c2", BranchGenerationOptions(selected_version_id=foreign.id, feedback="More.")
            )
        assert adapter.requests == []


@pytest.mark.asyncio
class TestSelectBranch:
    async def test_selected_branch_becomes_chapter_content(
        self, store: InMemoryNarrativeStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "orchestration.chapter_preparation.assess_continuity",
            assessor_by_content({"branch one": 6.0, "branch two": 8.5, "branch three": 8.5}),
        )
        generator = _generator(store, ScriptedModelAdapter(responder=_by_temperature))
        result = await generator.generate_branches("c2")
        third = next(b for b in result.branches if b.branch_number == 3)

        version = await generator.select_branch("c2", third.version_id)

        chapter = store.chapters["c2"]
        assert chapter.content == "branch three"
        assert chapter.generation_stage == GenerationStage.GENERATED
        assert chapter.pending_review is False
        assert not version.is_branch
        assert version.continuity_score == 8.5
        assert [v.id for v in store.versions.values()] == [version.id]

    async def test_selecting_warn_branch_flags_review(
        self, store: InMemoryNarrativeStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "orchestration.chapter_preparation.assess_continuity",
            assessor_by_content({"branch one": 6.0, "branch two": 8.5, "branch three": 8.5}),
        )
        generator = _generator(store, ScriptedModelAdapter(responder=_by_temperature))
        result = await generator.generate_branches("c2")
        first = next(b for b in result.branches if b.branch_number == 1)

        await generator.select_branch("c2", first.version_id)

        assert store.chapters["c2"].pending_review is True

    async def test_non_branch_version_is_rejected(self, store: InMemoryNarrativeStore) -> None:
        saved = ChapterVersion(chapter_id="c2", content="Committed text.")
        store.versions[saved.id] = saved
        with pytest.raises(ValidationError):
            await _generator(store, ScriptedModelAdapter()).select_branch("c2", saved.id)

    async def test_unknown_version_is_rejected(self, store: InMemoryNarrativeStore) -> None:
        with pytest.raises(ValidationError):
            await _generator(store, ScriptedModelAdapter()).select_branch("c2", "missing")

    async def test_missing_chapter(self, store: InMemoryNarrativeStore) -> None:
        with pytest.raises(PreconditionError):
            await _generator(store, ScriptedModelAdapter()).select_branch("missing", "v1")
