# tests/test_chapter_card.py
import pytest

from models.narrative_models import ChapterCard
from orchestration.chapter_card import (
    derive_chapter_card_from_outline,
    format_chapter_card_for_prompt,
    normalize_chapter_card,
    resolve_chapter_card,
)


class TestNormalize:
    def test_accepts_camel_case_keys_and_drops_blanks(self):
        card = normalize_chapter_card(
            {
                "must": ["  Mara reaches the harbour ", "", 3],
                "mustNot": ["Reth dies"],
                "styleGuidance": " terse ",
                "sceneObjective": "Arrival",
            }
        )

        assert card == ChapterCard(
            must=["Mara reaches the harbour"],
            must_not=["Reth dies"],
            style_guidance="terse",
            scene_objective="Arrival",
        )

    def test_snake_case_wins_over_camel_case(self):
        card = normalize_chapter_card({"must_not": ["a"], "mustNot": ["b"]})
        assert card is not None
        assert card.must_not == ["a"]

    @pytest.mark.parametrize(
        "raw",
        [None, "must: everything", {}, {"must": ["  "], "style_guidance": ""}, ChapterCard()],
    )
    def test_unusable_input_yields_none(self, raw):
        assert normalize_chapter_card(raw) is None

    def test_existing_card_passes_through(self):
        card = ChapterCard(hooks=["the sealed letter"])
        assert normalize_chapter_card(card) is card


class TestDeriveFromOutline:
    def test_first_four_lines_without_bullets(self):
        outline = "- Mara reaches the harbour\n\n* She meets Captain Reth\n1. The letter\n2. A storm\n3. Departure"

        card = derive_chapter_card_from_outline(outline)

        assert card is not None
        assert card.must == ["Mara reaches the harbour", "She meets Captain Reth", "The letter", "A storm"]

    def test_bullet_only_outline_falls_back_to_text(self):
        card = derive_chapter_card_from_outline("- - -")
        assert card is not None
        assert card.must == ["- - -"]

    @pytest.mark.parametrize("outline", [None, "", "   \n "])
    def test_empty_outline(self, outline):
        assert derive_chapter_card_from_outline(outline) is None

    def test_resolve_prefers_explicit_card(self):
        card = resolve_chapter_card({"should": ["rain"]}, "Mara reaches the harbour")
        assert card is not None
        assert card.should == ["rain"]
        assert card.must == []

        derived = resolve_chapter_card({}, "Mara reaches the harbour")
        assert derived is not None
        assert derived.must == ["Mara reaches the harbour"]


class TestFormat:
    def test_renders_only_filled_sections(self):
        text = format_chapter_card_for_prompt(
            ChapterCard(must=["Mara reaches the harbour"], hooks=["the sealed letter"], style_guidance="terse")
        )

        assert text.splitlines() == [
            "## Chapter Card (must be followed)",
            "Must (has to happen in this chapter)",
            "- Mara reaches the harbour",
            "Hooks (touch on in this chapter)",
            "- the sealed letter",
            "Style guidance: terse",
        ]

    def test_empty_card_renders_nothing(self):
        assert format_chapter_card_for_prompt(None) == ""
        assert format_chapter_card_for_prompt(ChapterCard()) == ""
