# tests/test_continuity_assessor.py
import pytest

import config
from models.narrative_models import Chapter, ChapterSummary, GenerationStage
from processing.continuity_assessor import (
    ContinuityGateConfig,
    assess_continuity,
    extract_opening,
    resolve_gate_config,
    verdict_for_score,
)

GATE = ContinuityGateConfig(pass_score=6.8, reject_score=4.9, max_repair_attempts=1)


def _previous() -> list[Chapter]:
    return [
        Chapter(
            novel_id="n1",
            order=1,
            content="The bell tower fell. Mara fled north.",
            generation_stage=GenerationStage.COMPLETED,
        )
    ]


def _summaries() -> list[ChapterSummary]:
    return [
        ChapterSummary(
            novel_id="n1",
            chapter_number=1,
            key_events=["Mara stole the ledger"],
            hooks_planted=["the sealed letter"],
        )
    ]


class TestVerdict:
    @pytest.mark.parametrize(
        ("score", "expected"),
        [(6.8, "pass"), (9.9, "pass"), (6.79, "warn"), (5.0, "warn"), (4.9, "reject"), (0.0, "reject")],
    )
    def test_verdict_is_a_function_of_score(self, score: float, expected: str) -> None:
        assert verdict_for_score(score, 6.8, 4.9) == expected


class TestResolveGateConfig:
    def test_pass_score_is_clamped(self) -> None:
        assert resolve_gate_config(pass_score=12).pass_score == 9.5
        assert resolve_gate_config(pass_score=1).pass_score == 4.5

    def test_reject_score_stays_below_pass_score(self) -> None:
        gate = resolve_gate_config(pass_score=6.8, reject_score=9.4)
        assert gate.reject_score == 6.4
        assert resolve_gate_config(pass_score=6.8, reject_score=1.0).reject_score == 3.5

    def test_repair_attempts_are_clamped(self) -> None:
        assert resolve_gate_config(max_repair_attempts=7).max_repair_attempts == 3
        assert resolve_gate_config(max_repair_attempts=-2).max_repair_attempts == 0

    def test_none_overrides_fall_back_to_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(config, "CONTINUITY_PASS_SCORE", None)
        monkeypatch.setattr(config, "REVIEW_PASS_THRESHOLD", 7.4)
        monkeypatch.setattr(config, "CONTINUITY_REJECT_SCORE", 4.9)
        gate = resolve_gate_config(pass_score=None)
        assert gate.pass_score == 6.8
        assert gate.reject_score == 4.9

    def test_config_rejects_inverted_thresholds(self) -> None:
        with pytest.raises(ValueError):
            ContinuityGateConfig(pass_score=5.0, reject_score=6.0)


class TestExtractOpening:
    def test_skips_headings_and_takes_first_paragraph(self) -> None:
        draft = "# Chapter 2\n\nFirst line\nsecond line\n\nNext paragraph"
        assert extract_opening(draft, 420) == "First line second line"

    def test_caps_at_window(self) -> None:
        assert extract_opening("abcdefghij", 4) == "abcd"


class TestAssessContinuity:
    def test_empty_draft_is_rejected(self) -> None:
        assessment = assess_continuity("   ", _previous(), _summaries(), GATE)
        assert assessment.score == 0.0
        assert assessment.verdict == "reject"
        assert assessment.issues[0].category == "content"

    def test_no_history_scores_full_marks(self) -> None:
        assessment = assess_continuity("Once upon a time.", [], [], GATE)
        assert assessment.score == 10.0
        assert assessment.verdict == "pass"
        assert assessment.metrics.opening_coverage == 1.0
        assert assessment.metrics.event_coverage == 1.0
        assert assessment.metrics.hook_coverage == 1.0

    def test_draft_that_continues_the_story_passes(self) -> None:
        draft = (
            "Shortly after the bell tower fell, Mara fled north. "
            "Mara stole the ledger back from the guard and hid the sealed letter in her boot."
        )
        assessment = assess_continuity(draft, _previous(), _summaries(), GATE)
        assert assessment.score == 10.0
        assert assessment.verdict == "pass"
        assert assessment.metrics.matched_totals == {"anchors": 2, "events": 1, "hooks": 1}
        assert assessment.metrics.timeline_cue is True
        assert assessment.issues == []

    def test_unrelated_draft_is_rejected_with_ordered_issues(self) -> None:
        assessment = assess_continuity("Zzz qqq xxx.", _previous(), _summaries(), GATE)
        assert assessment.score == 4.0
        assert assessment.verdict == "reject"
        assert assessment.metrics.opening_coverage == 0.0
        assert assessment.metrics.event_coverage == 0.0
        assert assessment.metrics.hook_coverage == 0.0
        severities = [issue.severity for issue in assessment.issues]
        assert severities == sorted(severities, key=["critical", "major", "minor"].index)
        assert severities[0] == "critical"
        assert any(issue.category == "timeline" for issue in assessment.issues)

    def test_timeline_cue_earns_opening_bonus(self) -> None:
        assessment = assess_continuity("The next morning zzz qqq.", _previous(), [], GATE)
        assert assessment.metrics.timeline_cue is True
        assert assessment.metrics.opening_coverage == 0.25
        assert not any(issue.category == "timeline" for issue in assessment.issues)

    @pytest.mark.parametrize(
        "opening",
        [
            "When zzz qqq.",
            "Then zzz qqq again.",
            "Before zzz, qqq. After that, xxx once more.",
            "Because zzz qqq until xxx.",
        ],
    )
    def test_ordinary_connectives_are_not_timeline_cues(self, opening: str) -> None:
        assessment = assess_continuity(opening, _previous(), [], GATE)
        assert assessment.metrics.timeline_cue is False
        assert assessment.metrics.opening_coverage == 0.0
        assert any(issue.category == "timeline" for issue in assessment.issues)

    @pytest.mark.parametrize(
        "opening",
        ["Meanwhile zzz qqq.", "Moments later zzz.", "She returned to the qqq.", "That night zzz."],
    )
    def test_transition_phrases_are_timeline_cues(self, opening: str) -> None:
        assert assess_continuity(opening, _previous(), [], GATE).metrics.timeline_cue is True

    def test_explicit_hooks_replace_summary_hooks(self) -> None:
        assessment = assess_continuity(
            "Zzz qqq xxx.", [], _summaries(), GATE, unresolved_hooks=["a", "b"]
        )
        # single letters are below the minimum signal length
        assert assessment.metrics.signal_totals["hooks"] == 0

    def test_metrics_stay_in_range(self) -> None:
        for draft in ("Mara", "The bell tower fell.", "Zzz", "After the ledger"):
            assessment = assess_continuity(draft, _previous(), _summaries(), GATE)
            assert 0.0 <= assessment.score <= 10.0
            for value in (
                assessment.metrics.opening_coverage,
                assessment.metrics.event_coverage,
                assessment.metrics.hook_coverage,
            ):
                assert 0.0 <= value <= 1.0
