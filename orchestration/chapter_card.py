# orchestration/chapter_card.py
"""Normalize author chapter cards and render them for prompts."""

from __future__ import annotations

import re
from typing import Any

from models.narrative_models import ChapterCard

OUTLINE_CARD_LINES = 4
OUTLINE_FALLBACK_CHARS = 120

_BULLET_PREFIX_RE = re.compile(r"^[-*•\d.、\s]+")


def _clean_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_chapter_card(raw: ChapterCard | dict[str, Any] | None) -> ChapterCard | None:
    """Coerce loose caller input into a `ChapterCard`; None when nothing usable remains.

    Accepts snake_case and camelCase keys (`must_not`/`mustNot`).
    """
    if raw is None:
        return None
    if isinstance(raw, ChapterCard):
        return None if raw.is_empty() else raw
    if not isinstance(raw, dict):
        return None

    card = ChapterCard(
        must=_clean_list(raw.get("must")),
        should=_clean_list(raw.get("should")),
        must_not=_clean_list(raw.get("must_not", raw.get("mustNot"))),
        hooks=_clean_list(raw.get("hooks")),
        style_guidance=_clean_text(raw.get("style_guidance", raw.get("styleGuidance"))),
        scene_objective=_clean_text(raw.get("scene_objective", raw.get("sceneObjective"))),
    )
    return None if card.is_empty() else card


def derive_chapter_card_from_outline(outline: str | None) -> ChapterCard | None:
    """Use the first outline lines (bullets stripped) as the card's `must` items."""
    if not outline or not outline.strip():
        return None

    must = [_BULLET_PREFIX_RE.sub("", line.strip()) for line in outline.splitlines()]
    must = [line for line in must if line][:OUTLINE_CARD_LINES]
    if not must:
        return ChapterCard(must=[outline.strip()[:OUTLINE_FALLBACK_CHARS]])
    return ChapterCard(must=must)


def resolve_chapter_card(raw: ChapterCard | dict[str, Any] | None, outline: str | None) -> ChapterCard | None:
    return normalize_chapter_card(raw) or derive_chapter_card_from_outline(outline)


def format_chapter_card_for_prompt(card: ChapterCard | None) -> str:
    if card is None or card.is_empty():
        return ""

    lines = ["## Chapter Card (must be followed)"]
    for title, items in (
        ("Must (has to happen in this chapter)", card.must),
        ("Should (cover when possible)", card.should),
        ("Must not (do not drift into)", card.must_not),
        ("Hooks (touch on in this chapter)", card.hooks),
    ):
        if items:
            lines.append(title)
            lines.extend(f"- {item}" for item in items)
    if card.scene_objective:
        lines.append(f"Scene objective: {card.scene_objective}")
    if card.style_guidance:
        lines.append(f"Style guidance: {card.style_guidance}")
    return "\n".join(lines)
