"""Expose ChapterForge configuration as stable module-level constants.

This package is a facade over the Pydantic settings model defined in
`config.settings`. The primary API is the `settings` singleton plus a set of
module-level constants mirroring its fields, so call sites can write
`config.MAX_CONCURRENT_LLM_CALLS`.

Values come from the process environment and may be sourced from a `.env` file.
`reload()` re-reads `.env` with override enabled and replaces the exported values.
"""

from typing import Any

from .settings import (
    rich_formatter as rich_formatter,
)
from .settings import (
    settings as settings,
)
from .settings import (
    simple_formatter as simple_formatter,
)

# Provider
OPENAI_API_BASE = settings.OPENAI_API_BASE
OPENAI_API_KEY = settings.OPENAI_API_KEY
NARRATIVE_MODEL = settings.NARRATIVE_MODEL
EXTRACTION_MODEL = settings.EXTRACTION_MODEL
HTTPX_TIMEOUT = settings.HTTPX_TIMEOUT
LLM_TOP_P = settings.LLM_TOP_P

# Neo4j
NEO4J_URI = settings.NEO4J_URI
NEO4J_USER = settings.NEO4J_USER
NEO4J_PASSWORD = settings.NEO4J_PASSWORD
NEO4J_DATABASE = settings.NEO4J_DATABASE

# Temperatures
TEMPERATURE_DRAFTING = settings.TEMPERATURE_DRAFTING
TEMPERATURE_REVISION = settings.TEMPERATURE_REVISION
TEMPERATURE_EXTRACTION = settings.TEMPERATURE_EXTRACTION
TEMPERATURE_SUMMARY = settings.TEMPERATURE_SUMMARY

# Tokens and concurrency
TIKTOKEN_DEFAULT_ENCODING = settings.TIKTOKEN_DEFAULT_ENCODING
FALLBACK_CHARS_PER_TOKEN = settings.FALLBACK_CHARS_PER_TOKEN
TOKENIZER_CACHE_SIZE = settings.TOKENIZER_CACHE_SIZE
MAX_CONCURRENT_LLM_CALLS = settings.MAX_CONCURRENT_LLM_CALLS
LLM_CALL_TIMEOUT_SECONDS = settings.LLM_CALL_TIMEOUT_SECONDS
CHAPTER_ADVISORY_LOCK_ENABLED = settings.CHAPTER_ADVISORY_LOCK_ENABLED
MAX_CONTEXT_TOKENS = settings.MAX_CONTEXT_TOKENS
MAX_GENERATION_TOKENS = settings.MAX_GENERATION_TOKENS
MIN_GENERATION_TOKENS = settings.MIN_GENERATION_TOKENS
MAX_EXTRACTION_TOKENS = settings.MAX_EXTRACTION_TOKENS

# Context layering
CONTEXT_MAX_TOKENS = settings.CONTEXT_MAX_TOKENS
CONTEXT_RECENT_CHAPTERS = settings.CONTEXT_RECENT_CHAPTERS
CONTEXT_SUMMARY_CHAPTERS = settings.CONTEXT_SUMMARY_CHAPTERS

# Continuity gate
CONTINUITY_GATE_ENABLED = settings.CONTINUITY_GATE_ENABLED
REVIEW_PASS_THRESHOLD = settings.REVIEW_PASS_THRESHOLD
CONTINUITY_PASS_SCORE = settings.CONTINUITY_PASS_SCORE
CONTINUITY_REJECT_SCORE = settings.CONTINUITY_REJECT_SCORE
CONTINUITY_MAX_REPAIR_ATTEMPTS = settings.CONTINUITY_MAX_REPAIR_ATTEMPTS
CONTINUITY_OPENING_WINDOW_CHARS = settings.CONTINUITY_OPENING_WINDOW_CHARS
CONTINUITY_MAX_ANCHOR_SIGNALS = settings.CONTINUITY_MAX_ANCHOR_SIGNALS
CONTINUITY_MAX_EVENT_SIGNALS = settings.CONTINUITY_MAX_EVENT_SIGNALS
CONTINUITY_MAX_HOOK_SIGNALS = settings.CONTINUITY_MAX_HOOK_SIGNALS
CONTINUITY_BASELINE_SCORE = settings.CONTINUITY_BASELINE_SCORE
CONTINUITY_WEIGHT_OPENING = settings.CONTINUITY_WEIGHT_OPENING
CONTINUITY_WEIGHT_EVENTS = settings.CONTINUITY_WEIGHT_EVENTS
CONTINUITY_WEIGHT_HOOKS = settings.CONTINUITY_WEIGHT_HOOKS
CONTINUITY_TIMELINE_BONUS = settings.CONTINUITY_TIMELINE_BONUS

# Hooks and pending entities
HOOK_REMINDER_THRESHOLD = settings.HOOK_REMINDER_THRESHOLD
HOOK_MATCH_THRESHOLD = settings.HOOK_MATCH_THRESHOLD
HOOK_CONTEXT_LIMIT = settings.HOOK_CONTEXT_LIMIT
PENDING_ENTITY_MATCH_THRESHOLD = settings.PENDING_ENTITY_MATCH_THRESHOLD

# Branches
BRANCH_TEMPERATURES = settings.BRANCH_TEMPERATURES
BRANCH_DEFAULT_COUNT = settings.BRANCH_DEFAULT_COUNT
BRANCH_MAX_COUNT = settings.BRANCH_MAX_COUNT
BRANCH_CACHE_LIMIT = settings.BRANCH_CACHE_LIMIT
BRANCH_PREVIEW_CHARS = settings.BRANCH_PREVIEW_CHARS

# Logging
LOG_LEVEL_STR = settings.LOG_LEVEL_STR
LOG_DATE_FORMAT = settings.LOG_DATE_FORMAT
LOG_FILE = settings.LOG_FILE
BASE_OUTPUT_DIR = settings.BASE_OUTPUT_DIR
ENABLE_RICH_PROGRESS = settings.ENABLE_RICH_PROGRESS
SIMPLE_LOGGING_MODE = settings.SIMPLE_LOGGING_MODE


def get(key: str) -> Any:
    """Return the value of a configuration attribute from `settings`.

    Raises:
        AttributeError: If `key` is not a valid attribute on `settings`.
    """
    return getattr(settings, key)


def set(key: str, value: Any) -> None:
    """Set a configuration attribute on `settings` and the mirrored constant.

    This mutates the in-memory settings instance and does not persist to `.env`.
    """
    setattr(settings, key, value)
    globals()[key] = value


def reload() -> None:
    """Reload configuration and refresh this package's exported constants."""
    from .loader import reload_settings

    reload_settings()
