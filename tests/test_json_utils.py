# tests/test_json_utils.py
import json

import pytest

from core.exceptions import StructuredParseFailure
from utils.json_utils import (
    extract_json_candidate,
    is_parse_failure,
    parse_embedded_array,
    parse_structured,
    repair_structure,
    safe_json_loads,
    sanitize_control_characters,
    truncate_for_log,
)


class TestExtractJsonCandidate:
    def test_strips_fence_and_isolates_object(self) -> None:
        raw = 'Here you go:\n```json\n{"a": 1}\n```\nThanks'
        assert extract_json_candidate(raw) == '{"a": 1}'

    def test_takes_outermost_span_without_fence(self) -> None:
        raw = 'Result -> [{"a": 1}, {"b": 2}] <- done'
        assert extract_json_candidate(raw) == '[{"a": 1}, {"b": 2}]'

    def test_returns_text_when_no_brackets(self) -> None:
        assert extract_json_candidate("  nothing here  ") == "nothing here"

    def test_non_string_input(self) -> None:
        assert extract_json_candidate(None) == ""  # type: ignore[arg-type]


class TestRepairSteps:
    def test_sanitize_escapes_newlines_inside_strings_only(self) -> None:
        text = '{"line": "first\nsecond"}\n'
        assert sanitize_control_characters(text) == '{"line": "first\\nsecond"}\n'

    def test_sanitize_drops_other_control_bytes(self) -> None:
        assert sanitize_control_characters('{"a": "x\x07y"}') == '{"a": "xy"}'

    def test_repair_removes_trailing_commas_and_quotes_keys(self) -> None:
        assert repair_structure('{a: 1, "b": [1, 2,],}') == '{"a": 1, "b": [1, 2]}'

    def test_embedded_array_search(self) -> None:
        result = parse_embedded_array('noise [{"name": "Ash"}] more noise')
        assert result.ok
        assert result.value == [{"name": "Ash"}]

    def test_embedded_array_missing(self) -> None:
        assert not parse_embedded_array("no arrays").ok


class TestParseStructured:
    def test_fenced_object_with_trailing_comma(self) -> None:
        raw = 'Here is the result:\n```json\n{"a":1,}\n```'
        assert parse_structured(raw) == {"a": 1}

    def test_strict_json_passes_through(self) -> None:
        assert parse_structured('[1, 2, 3]') == [1, 2, 3]

    def test_raw_newline_inside_string(self) -> None:
        assert parse_structured('{"summary": "one\ntwo"}') == {"summary": "one\ntwo"}

    def test_bare_keys(self) -> None:
        assert parse_structured("{one_line: \"A storm\", key_events: []}") == {
            "one_line": "A storm",
            "key_events": [],
        }

    def test_gives_up_with_raw_and_error(self) -> None:
        value = parse_structured("not json at all")
        assert is_parse_failure(value)
        assert value["raw"] == "not json at all"
        assert value["parse_error"]

    def test_empty_input_never_raises(self) -> None:
        assert is_parse_failure(parse_structured(""))
        assert is_parse_failure(parse_structured(None))

    def test_throw_on_error(self) -> None:
        with pytest.raises(StructuredParseFailure) as exc_info:
            parse_structured("{{{", throw_on_error=True)
        assert exc_info.value.raw == "{{{"

    def test_round_trips_valid_documents(self) -> None:
        document = {"planted": [{"description": "a locked box", "importance": "major"}], "resolved": []}

        assert parse_structured(json.dumps(document)) == document

    @pytest.mark.parametrize(
        "value",
        [
            "{}",
            "[1, 2]",
            {"note": "see ```json\n[1]\n```"},
            ["plain", {"nested": [1, 2]}],
            {"outer": {"inner": [{"a": 1}]}},
            "",
            42,
            None,
        ],
    )
    def test_valid_json_is_never_narrowed_to_an_inner_span(self, value) -> None:
        assert parse_structured(json.dumps(value)) == value


class TestSafeJsonLoads:
    def test_returns_none_on_failure(self) -> None:
        assert safe_json_loads("nope") is None

    def test_checks_expected_type(self) -> None:
        assert safe_json_loads('{"a": 1}', expected=list) is None
        assert safe_json_loads('[{"a": 1}]', expected=list) == [{"a": 1}]


def test_truncate_for_log() -> None:
    assert truncate_for_log("abcdef", 3) == "abc..."
    assert truncate_for_log("abc", 3) == "abc"
    assert truncate_for_log(None) == ""  # type: ignore[arg-type]
