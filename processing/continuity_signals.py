# processing/continuity_signals.py
"""Derive continuity signals from chapter history and match them against drafts.

A *signal* is a short text fragment expected to resurface in the next chapter:
the tail of the previous chapter (an anchor), a key event from a rolling
summary, or the description of an unresolved hook. Matching is heuristic and
deliberately tolerant of paraphrase: a signal counts as present when it appears
verbatim (ignoring case, whitespace and punctuation), when enough of its chunks
appear, or when enough of its character bigrams overlap the draft.

The prompt helpers at the bottom render the same history as prompt text so the
model sees exactly what the assessor will check.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Sequence

from models.narrative_models import Chapter, ChapterSummary

_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_SPLIT_RE = re.compile(r"[。！？!?；;.\n]+")
_SENTENCE_BREAK_RE = re.compile(r"[。！？.!?]")
_NOISE_RE = re.compile(r"[\s\"'“”‘’「」『』（）()\[\]【】{}<>,，、:：;；\-—–…*_#`~]+")

WHOLE_SIGNAL_MAX_CHARS = 24
SIGNAL_EDGE_CHARS = 16
MIN_SIGNAL_CHARS = 4

ANCHOR_SNIPPET_CHARS = 240
FALLBACK_SNIPPET_CHARS = 180


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def compact(text: str) -> str:
    """Lowercase and drop whitespace/punctuation; the form used for matching."""
    return _NOISE_RE.sub("", (text or "").lower())


def extract_ending_snippet(content: str, max_length: int = 220) -> str:
    """Return the last `max_length` characters, starting at a sentence boundary when possible."""
    normalized = normalize_whitespace(content)
    if len(normalized) <= max_length:
        return normalized

    tail = normalized[-max_length:]
    match = _SENTENCE_BREAK_RE.search(tail)
    if match and match.start() < len(tail) - 12:
        tail = tail[match.start() + 1 :].strip()
    return tail


def split_into_signals(text: str, limit: int) -> list[str]:
    """Split text into short matchable signals.

    Segments of up to 24 characters are kept whole; longer segments contribute
    their first and last 16 characters. Duplicates (after compaction) are dropped
    and the result is capped at `limit`.
    """
    if limit <= 0 or not text:
        return []

    signals: list[str] = []
    seen: set[str] = set()

    def _add(fragment: str) -> None:
        fragment = fragment.strip()
        key = compact(fragment)
        if len(key) < MIN_SIGNAL_CHARS or key in seen:
            return
        seen.add(key)
        signals.append(fragment)

    for segment in _SENTENCE_SPLIT_RE.split(text):
        segment = normalize_whitespace(segment)
        if len(compact(segment)) < MIN_SIGNAL_CHARS:
            continue
        if len(segment) <= WHOLE_SIGNAL_MAX_CHARS:
            _add(segment)
        else:
            _add(segment[:SIGNAL_EDGE_CHARS])
            _add(segment[-SIGNAL_EDGE_CHARS:])
        if len(signals) >= limit:
            break

    return signals[:limit]


def _bigrams(text: str) -> set[str]:
    return {text[i : i + 2] for i in range(len(text) - 1)}


class MatchTarget:
    """Pre-compacted draft text reused across many signal checks."""

    def __init__(self, text: str):
        self.compact = compact(text)
        self.bigrams = _bigrams(self.compact)

    def contains(self, signal: str) -> bool:
        needle = compact(signal)
        if not needle or not self.compact:
            return False
        if needle in self.compact:
            return True
        if self._chunks_match(needle):
            return True
        return self._bigrams_match(needle)

    def _chunks_match(self, needle: str) -> bool:
        size = 6 if len(needle) >= 12 else 4
        chunks = [needle[i : i + size] for i in range(0, len(needle), size)]
        chunks = [chunk for chunk in chunks if len(chunk) >= 3]
        if len(chunks) < 2:
            return False
        required = max(2, math.ceil(len(chunks) / 2))
        hits = sum(1 for chunk in chunks if chunk in self.compact)
        return hits >= required

    def _bigrams_match(self, needle: str) -> bool:
        grams = _bigrams(needle)
        if not grams:
            return False
        hits = sum(1 for gram in grams if gram in self.bigrams)
        coverage = hits / len(grams)
        if coverage >= 0.55 and hits >= 3:
            return True
        return len(needle) >= 8 and coverage >= 0.42 and hits >= 4


def count_matches(target: MatchTarget, signals: Iterable[str]) -> tuple[list[str], list[str]]:
    """Partition signals into (matched, missed) against `target`."""
    matched: list[str] = []
    missed: list[str] = []
    for signal in signals:
        (matched if target.contains(signal) else missed).append(signal)
    return matched, missed


def unresolved_hooks_from_summaries(summaries: Sequence[ChapterSummary]) -> list[str]:
    """Hook descriptions planted or referenced in summaries and never resolved."""
    resolved = {compact(h) for summary in summaries for h in summary.hooks_resolved}
    ordered: list[str] = []
    seen: set[str] = set()
    for summary in sorted(summaries, key=lambda s: s.chapter_number):
        for description in [*summary.hooks_planted, *summary.hooks_referenced]:
            key = compact(description)
            if key and key not in resolved and key not in seen:
                seen.add(key)
                ordered.append(description.strip())
    return ordered


def latest_chapters_with_content(chapters: Sequence[Chapter], count: int) -> list[Chapter]:
    with_content = [c for c in sorted(chapters, key=lambda c: c.order) if c.content.strip()]
    return with_content[-count:] if count > 0 else []


# ---------------------------------------------------------------------------
# Prompt helpers
# ---------------------------------------------------------------------------


def build_recent_chapter_anchors(chapters: Sequence[Chapter], limit: int = 6) -> list[str]:
    lines = []
    for chapter in latest_chapters_with_content(chapters, limit):
        snippet = extract_ending_snippet(chapter.content, 220)
        title = f" ({chapter.title})" if chapter.title else ""
        lines.append(f"Chapter {chapter.order}{title} ended with: {snippet}")
    return lines


def build_summary_continuity_highlights(summaries: Sequence[ChapterSummary], limit: int = 12) -> list[str]:
    lines: list[str] = []
    for summary in sorted(summaries, key=lambda s: s.chapter_number, reverse=True):
        n = summary.chapter_number
        if summary.key_events:
            lines.append(f"Ch.{n} key event: {summary.key_events[0]}")
        elif summary.one_line:
            lines.append(f"Ch.{n}: {summary.one_line}")
        if summary.character_developments:
            lines.append(f"Ch.{n} character: {summary.character_developments[0]}")
        if len(lines) >= limit:
            break

    for description in unresolved_hooks_from_summaries(summaries)[:3]:
        lines.append(f"Unresolved hook: {description}")
    return lines[:limit]


def build_continuity_rules() -> list[str]:
    return [
        "Open by continuing directly from the final moment of the previous chapter; do not skip or restart the scene without a clear transition.",
        "Keep the timeline consistent and signal any time jump or location change explicitly.",
        "Carry forward the consequences of recent key events; do not contradict what has already happened.",
        "Keep every character's knowledge, injuries, possessions and relationships consistent with earlier chapters.",
        "Advance or acknowledge open narrative hooks instead of silently dropping them.",
    ]


def build_continuity_context(
    previous_chapters: Sequence[Chapter],
    summaries: Sequence[ChapterSummary],
    anchor_limit: int = 6,
    highlight_limit: int = 12,
) -> str:
    """Render anchors, highlights and rules as one prompt block."""
    parts: list[str] = []
    anchors = build_recent_chapter_anchors(previous_chapters, anchor_limit)
    if anchors:
        parts.append("## Recent Chapter Endings\n" + "\n".join(f"- {line}" for line in anchors))
    highlights = build_summary_continuity_highlights(summaries, highlight_limit)
    if highlights:
        parts.append("## Continuity Highlights\n" + "\n".join(f"- {line}" for line in highlights))
    parts.append("## Continuity Rules\n" + "\n".join(f"{i}. {rule}" for i, rule in enumerate(build_continuity_rules(), 1)))
    return "\n\n".join(parts)
