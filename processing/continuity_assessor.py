# processing/continuity_assessor.py
"""Score a draft chapter's adherence to prior narrative state.

The assessor derives three signal sets from the supplied history:

- anchors: ending snippets of the immediately preceding chapters,
- events: key events and one-line summaries of recent chapters,
- hooks: descriptions of currently unresolved hooks.

Coverage for each set is the fraction of its signals detectably present in the
draft (an empty set counts as fully covered). Anchors are checked against the
draft's opening paragraph only, and a temporal or causal connective near the
opening earns a bonus. The composite score maps the weighted coverage onto
`[baseline, 10]`; the verdict is a pure function of that score.

All thresholds and weights live in `ContinuityGateConfig` so deployments can
recalibrate them without code changes.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

import structlog
from pydantic import BaseModel, model_validator

import config
from models.narrative_models import (
    SEVERITY_RANK,
    Chapter,
    ChapterSummary,
    ContinuityAssessment,
    ContinuityIssue,
    ContinuityMetrics,
    ContinuityVerdict,
)
from processing.continuity_signals import (
    ANCHOR_SNIPPET_CHARS,
    MatchTarget,
    count_matches,
    extract_ending_snippet,
    latest_chapters_with_content,
    split_into_signals,
    unresolved_hooks_from_summaries,
)

logger = structlog.get_logger(__name__)

ANCHOR_SOURCE_CHAPTERS = 2
EVENT_SOURCE_SUMMARIES = 8
EVENTS_PER_SUMMARY = 2

_TIMELINE_CUE_RE = re.compile(
    r"\b("
    r"the next (?:morning|day|night|evening|dawn)|the following (?:morning|day|night|evening)"
    r"|that (?:night|evening)|later that (?:day|night|evening)|shortly (?:after|afterwards?)|soon after"
    r"|meanwhile|at the same (?:time|moment)|(?:moments?|minutes?) later|(?:only |just )?moments ago"
    r"|returned to|back (?:at|in) the|still|continued to"
    r")\b",
    re.IGNORECASE,
)


class ContinuityGateConfig(BaseModel):
    """Thresholds and weights of the continuity gate."""

    enabled: bool = True
    pass_score: float = 6.8
    reject_score: float = 4.9
    max_repair_attempts: int = 1
    opening_window_chars: int = 420
    max_anchor_signals: int = 8
    max_event_signals: int = 10
    max_hook_signals: int = 8
    baseline_score: float = 4.0
    weight_opening: float = 0.45
    weight_events: float = 0.35
    weight_hooks: float = 0.2
    timeline_bonus: float = 0.25

    @model_validator(mode="after")
    def check_thresholds(self) -> ContinuityGateConfig:
        if self.reject_score >= self.pass_score:
            raise ValueError("reject_score must be lower than pass_score")
        if not 0.0 <= self.baseline_score < 10.0:
            raise ValueError("baseline_score must be within [0, 10)")
        return self


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def resolve_gate_config(**overrides: Any) -> ContinuityGateConfig:
    """Build the gate config from settings plus per-call overrides.

    `pass_score` defaults to the review threshold minus 0.6 (kept within
    [5.8, 8.2]) and is clamped to [4.5, 9.5]. `reject_score` is clamped to
    [3.5, pass_score - 0.4], so it always stays below `pass_score`.
    `max_repair_attempts` is clamped to [0, 3].
    """
    overrides = {k: v for k, v in overrides.items() if v is not None}
    default_pass = config.CONTINUITY_PASS_SCORE
    if default_pass is None:
        default_pass = _clamp(config.REVIEW_PASS_THRESHOLD - 0.6, 5.8, 8.2)

    pass_score = round(_clamp(float(overrides.pop("pass_score", default_pass)), 4.5, 9.5), 2)
    reject_score = round(
        _clamp(float(overrides.pop("reject_score", config.CONTINUITY_REJECT_SCORE)), 3.5, pass_score - 0.4), 2
    )
    attempts = int(_clamp(int(overrides.pop("max_repair_attempts", config.CONTINUITY_MAX_REPAIR_ATTEMPTS)), 0, 3))

    values: dict[str, Any] = {
        "enabled": config.CONTINUITY_GATE_ENABLED,
        "opening_window_chars": config.CONTINUITY_OPENING_WINDOW_CHARS,
        "max_anchor_signals": config.CONTINUITY_MAX_ANCHOR_SIGNALS,
        "max_event_signals": config.CONTINUITY_MAX_EVENT_SIGNALS,
        "max_hook_signals": config.CONTINUITY_MAX_HOOK_SIGNALS,
        "baseline_score": config.CONTINUITY_BASELINE_SCORE,
        "weight_opening": config.CONTINUITY_WEIGHT_OPENING,
        "weight_events": config.CONTINUITY_WEIGHT_EVENTS,
        "weight_hooks": config.CONTINUITY_WEIGHT_HOOKS,
        "timeline_bonus": config.CONTINUITY_TIMELINE_BONUS,
    }
    values.update(overrides)
    return ContinuityGateConfig(
        pass_score=pass_score,
        reject_score=reject_score,
        max_repair_attempts=attempts,
        **values,
    )


def verdict_for_score(score: float, pass_score: float, reject_score: float) -> ContinuityVerdict:
    if score >= pass_score:
        return "pass"
    if score <= reject_score:
        return "reject"
    return "warn"


def extract_opening(draft_text: str, window: int) -> str:
    """Return the draft's first paragraph, skipping leading headings, capped at `window` chars."""
    lines = draft_text.strip().splitlines()
    start = 0
    while start < len(lines) and (not lines[start].strip() or lines[start].lstrip().startswith("#")):
        start += 1

    paragraph: list[str] = []
    for line in lines[start:]:
        if not line.strip():
            break
        paragraph.append(line.strip())
    return " ".join(paragraph)[:window]


def build_signal_sets(
    previous_chapters: Sequence[Chapter],
    summaries: Sequence[ChapterSummary],
    gate: ContinuityGateConfig,
    unresolved_hooks: Sequence[str] | None = None,
) -> dict[str, list[str]]:
    anchor_text = "\n".join(
        extract_ending_snippet(chapter.content, ANCHOR_SNIPPET_CHARS)
        for chapter in latest_chapters_with_content(previous_chapters, ANCHOR_SOURCE_CHAPTERS)
    )

    recent = sorted(summaries, key=lambda s: s.chapter_number, reverse=True)[:EVENT_SOURCE_SUMMARIES]
    event_lines: list[str] = []
    for summary in recent:
        event_lines.extend(summary.key_events[:EVENTS_PER_SUMMARY])
        if summary.one_line:
            event_lines.append(summary.one_line)

    hooks = list(unresolved_hooks) if unresolved_hooks is not None else unresolved_hooks_from_summaries(summaries)

    return {
        "anchors": split_into_signals(anchor_text, gate.max_anchor_signals),
        "events": split_into_signals("\n".join(event_lines), gate.max_event_signals),
        "hooks": split_into_signals("\n".join(hooks), gate.max_hook_signals),
    }


def _coverage(matched: int, total: int) -> float:
    return 1.0 if total == 0 else matched / total


def assess_continuity(
    draft_text: str,
    previous_chapters: Sequence[Chapter],
    summaries: Sequence[ChapterSummary],
    gate: ContinuityGateConfig | None = None,
    *,
    unresolved_hooks: Sequence[str] | None = None,
) -> ContinuityAssessment:
    """Score `draft_text` against prior chapters and summaries.

    Args:
        draft_text: Candidate chapter text.
        previous_chapters: Chapters before the target, any order.
        summaries: Rolling summaries of earlier chapters.
        gate: Gate thresholds; defaults to `resolve_gate_config()`.
        unresolved_hooks: Hook descriptions to check; derived from `summaries`
            when omitted.

    Returns:
        The assessment. Coverage metrics lie in [0, 1] and the score in [0, 10].
    """
    gate = gate or resolve_gate_config()

    if not draft_text or not draft_text.strip():
        return ContinuityAssessment(
            score=0.0,
            verdict="reject",
            issues=[ContinuityIssue(severity="critical", category="content", message="Draft is empty")],
            metrics=ContinuityMetrics(opening_coverage=0.0, event_coverage=0.0, hook_coverage=0.0),
        )

    signals = build_signal_sets(previous_chapters, summaries, gate, unresolved_hooks)
    totals = {name: len(values) for name, values in signals.items()}

    opening_text = extract_opening(draft_text, gate.opening_window_chars)
    timeline_cue = bool(_TIMELINE_CUE_RE.search(opening_text))

    if not any(totals.values()):
        return ContinuityAssessment(
            score=10.0,
            verdict=verdict_for_score(10.0, gate.pass_score, gate.reject_score),
            issues=[],
            metrics=ContinuityMetrics(
                opening_coverage=1.0,
                event_coverage=1.0,
                hook_coverage=1.0,
                timeline_cue=timeline_cue,
                signal_totals=totals,
                matched_totals={name: 0 for name in totals},
            ),
        )

    opening_target = MatchTarget(opening_text)
    draft_target = MatchTarget(draft_text)
    anchors_hit, anchors_missed = count_matches(opening_target, signals["anchors"])
    events_hit, events_missed = count_matches(draft_target, signals["events"])
    hooks_hit, hooks_missed = count_matches(draft_target, signals["hooks"])

    anchor_coverage = _coverage(len(anchors_hit), totals["anchors"])
    opening_coverage = anchor_coverage
    if timeline_cue and totals["anchors"]:
        opening_coverage = min(1.0, anchor_coverage + gate.timeline_bonus)
    event_coverage = _coverage(len(events_hit), totals["events"])
    hook_coverage = _coverage(len(hooks_hit), totals["hooks"])

    weight_sum = gate.weight_opening + gate.weight_events + gate.weight_hooks
    weighted = (
        gate.weight_opening * opening_coverage + gate.weight_events * event_coverage + gate.weight_hooks * hook_coverage
    ) / (weight_sum or 1.0)
    score = round(_clamp(gate.baseline_score + (10.0 - gate.baseline_score) * weighted, 0.0, 10.0), 2)

    issues: list[ContinuityIssue] = []
    issues.extend(
        ContinuityIssue(
            severity="critical",
            category="opening_anchor",
            message=f'Opening does not pick up the previous ending: "{signal}"',
            signal=signal,
        )
        for signal in anchors_missed
    )
    issues.extend(
        ContinuityIssue(
            severity="major",
            category="event_chain",
            message=f'Recent event is not carried forward: "{signal}"',
            signal=signal,
        )
        for signal in events_missed
    )
    issues.extend(
        ContinuityIssue(
            severity="minor",
            category="hook_progress",
            message=f'Unresolved hook is not advanced: "{signal}"',
            signal=signal,
        )
        for signal in hooks_missed
    )
    if totals["anchors"] and not anchors_hit and not timeline_cue:
        issues.append(
            ContinuityIssue(
                severity="minor",
                category="timeline",
                message="Opening has no time or causal transition from the previous chapter",
            )
        )
    issues.sort(key=lambda issue: SEVERITY_RANK[issue.severity])

    assessment = ContinuityAssessment(
        score=score,
        verdict=verdict_for_score(score, gate.pass_score, gate.reject_score),
        issues=issues,
        metrics=ContinuityMetrics(
            opening_coverage=round(opening_coverage, 4),
            event_coverage=round(event_coverage, 4),
            hook_coverage=round(hook_coverage, 4),
            timeline_cue=timeline_cue,
            signal_totals=totals,
            matched_totals={
                "anchors": len(anchors_hit),
                "events": len(events_hit),
                "hooks": len(hooks_hit),
            },
        ),
    )
    logger.debug(
        "assess_continuity: draft scored",
        score=assessment.score,
        verdict=assessment.verdict,
        issues=len(issues),
        totals=totals,
    )
    return assessment
