# utils/json_utils.py
"""Recover structured data from free-form model output.

The upstream generator is not guaranteed to emit well-formed JSON. Every
consumer of generated structured data goes through `parse_structured()`.
Input that is already a valid JSON document is returned as-is; anything else
goes through an ordered chain of pure `(str) -> ParseResult` steps and the
first success wins:

1. `extract_json_candidate`: strip an enclosing fenced block and isolate the
   outermost bracket/brace span.
2. `parse_strict`: plain `json.loads`.
3. `parse_sanitized`: escape newline/CR/tab inside strings and drop other
   control bytes, then parse.
4. `parse_repaired`: sanitize, remove trailing commas, quote bare keys, then
   parse.
5. `parse_embedded_array`: search the raw text for an array-of-objects and
   parse that.
6. Give up: return `{"raw": ..., "parse_error": ...}`, or raise
   `StructuredParseFailure` when `throw_on_error` is set.

Each step is independently testable and never raises.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from core.exceptions import StructuredParseFailure

logger = structlog.get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:[a-zA-Z0-9_-]+)?\s*(.*?)\s*```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([\]}])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_\-]*)(\s*:)")
_ARRAY_OF_OBJECTS_RE = re.compile(r"\[\s*\{[\s\S]*\}\s*\]")

_STRING_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


@dataclass(frozen=True)
class ParseResult:
    ok: bool
    value: Any = None
    error: str | None = None


ParseStep = Callable[[str], ParseResult]


def strip_code_fence(text: str) -> str:
    """Return the body of the first fenced block, or the stripped text when unfenced."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def extract_json_candidate(text: str) -> str:
    """Isolate the most likely JSON span from arbitrary model output.

    Looks inside an enclosing fenced block when present, then takes the text
    from the earliest '[' or '{' to the latest ']' or '}'. Returns the unfenced
    text unchanged when no bracket span exists.
    """
    if not isinstance(text, str) or not text:
        return ""

    body = strip_code_fence(text)
    first = min([i for i in (body.find("["), body.find("{")) if i != -1] or [len(body)])
    last = max([i for i in (body.rfind("]"), body.rfind("}")) if i != -1] or [-1])
    if first < len(body) and last != -1 and last >= first:
        candidate = body[first : last + 1]
        if candidate.strip():
            return candidate
    return body


def sanitize_control_characters(text: str) -> str:
    """Escape raw newline/CR/tab inside string literals and drop other control bytes."""
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
                out.append(ch)
            elif ch == "\\":
                escaped = True
                out.append(ch)
            elif ch == '"':
                in_string = False
                out.append(ch)
            elif ch in _STRING_ESCAPES:
                out.append(_STRING_ESCAPES[ch])
            elif ord(ch) < 0x20:
                continue
            else:
                out.append(ch)
        else:
            if ch == '"':
                in_string = True
                out.append(ch)
            elif ord(ch) < 0x20 and ch not in _STRING_ESCAPES:
                continue
            else:
                out.append(ch)
    return "".join(out)


def repair_structure(text: str) -> str:
    """Remove trailing commas and quote bare object keys."""
    repaired = _TRAILING_COMMA_RE.sub(r"\1", text)
    return _BARE_KEY_RE.sub(r'\1"\2"\3', repaired)


def parse_strict(text: str) -> ParseResult:
    try:
        return ParseResult(True, json.loads(text))
    except (json.JSONDecodeError, TypeError, ValueError) as exc:
        return ParseResult(False, error=str(exc))


def parse_sanitized(text: str) -> ParseResult:
    return parse_strict(sanitize_control_characters(text))


def parse_repaired(text: str) -> ParseResult:
    return parse_strict(repair_structure(sanitize_control_characters(text)))


def parse_embedded_array(text: str) -> ParseResult:
    """Find an embedded array-of-objects and parse it with the earlier steps."""
    match = _ARRAY_OF_OBJECTS_RE.search(text)
    if not match:
        return ParseResult(False, error="no embedded array of objects found")
    snippet = match.group(0)
    result = ParseResult(False, error="embedded array could not be parsed")
    for step in (parse_strict, parse_sanitized, parse_repaired):
        result = step(snippet)
        if result.ok:
            return result
    return result


CANDIDATE_STEPS: tuple[ParseStep, ...] = (parse_strict, parse_sanitized, parse_repaired)


def _candidates(raw: str) -> list[str]:
    seen: list[str] = []
    for candidate in (extract_json_candidate(raw), strip_code_fence(raw), raw.strip()):
        if candidate and candidate not in seen:
            seen.append(candidate)
    return seen


def parse_structured(raw_text: Any, *, throw_on_error: bool = False) -> Any:
    """Parse model output into a structured value with progressive repair.

    Args:
        raw_text: Raw model output.
        throw_on_error: Raise instead of returning the degraded value.

    Returns:
        The parsed value, or `{"raw": raw_text, "parse_error": message}` when
        every step fails.

    Raises:
        StructuredParseFailure: Only when `throw_on_error` is set and no step succeeds.
    """
    if not isinstance(raw_text, str) or not raw_text.strip():
        error = "input is empty or not text"
        return _give_up(raw_text if isinstance(raw_text, str) else "", error, throw_on_error)

    whole = parse_strict(raw_text.strip())
    if whole.ok:
        return whole.value

    last_error = whole.error or "no parse step succeeded"
    for step in CANDIDATE_STEPS:
        for candidate in _candidates(raw_text):
            result = step(candidate)
            if result.ok:
                if step is not parse_strict:
                    logger.debug("parse_structured: recovered via repair step", step=step.__name__)
                return result.value
            last_error = result.error or last_error

    result = parse_embedded_array(raw_text)
    if result.ok:
        logger.debug("parse_structured: recovered embedded array")
        return result.value

    return _give_up(raw_text, last_error, throw_on_error)


def _give_up(raw: str, error: str, throw_on_error: bool) -> dict[str, Any]:
    if throw_on_error:
        raise StructuredParseFailure(
            "Model output is not valid structured data",
            raw=raw,
            details={"parse_error": error, "preview": truncate_for_log(raw, 200)},
        )
    logger.warning("parse_structured: giving up, returning raw output", error=error, preview=truncate_for_log(raw, 120))
    return {"raw": raw, "parse_error": error}


def is_parse_failure(value: Any) -> bool:
    """Return True for the degraded value produced by `parse_structured`."""
    return isinstance(value, dict) and set(value.keys()) == {"raw", "parse_error"}


def safe_json_loads(text: str, *, expected: type | tuple[type, ...] | None = None) -> Any | None:
    """Parse text through the repair chain; optionally validate type.

    Returns None on failure or unexpected type.
    """
    value = parse_structured(text)
    if is_parse_failure(value):
        return None
    if expected is not None and not isinstance(value, expected):
        return None
    return value


def truncate_for_log(s: str, limit: int = 300) -> str:
    """Return a truncated string for logging purposes."""
    if not isinstance(s, str):
        return ""
    return s if len(s) <= limit else s[:limit] + "..."
