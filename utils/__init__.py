"""General utility functions for the ChapterForge pipeline."""

from __future__ import annotations

from .json_utils import (
    ParseResult,
    extract_json_candidate,
    parse_structured,
    safe_json_loads,
    truncate_for_log,
)

__all__ = [
    "ParseResult",
    "extract_json_candidate",
    "parse_structured",
    "safe_json_loads",
    "truncate_for_log",
]
