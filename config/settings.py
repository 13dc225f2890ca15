# config/settings.py
"""
Configuration settings for the ChapterForge chapter generation pipeline.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import logging as stdlib_logging
import os
from collections.abc import MutableMapping
from typing import Any

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()


class ChapterForgeSettings(BaseSettings):
    """Full configuration for the chapter generation and continuity pipeline."""

    # API and Model Configuration
    OPENAI_API_BASE: str = "http://127.0.0.1:8080/v1"
    OPENAI_API_KEY: str = "nope"
    NARRATIVE_MODEL: str = "qwen3-a3b"
    EXTRACTION_MODEL: str = "qwen3-a3b"

    # Neo4j Connection Settings
    NEO4J_URI: str = "bolt://localhost:7687"
    NEO4J_USER: str = "neo4j"
    NEO4J_PASSWORD: str = "chapterforge_password"
    NEO4J_DATABASE: str | None = "neo4j"

    # Temperature Settings
    TEMPERATURE_DRAFTING: float = 0.8
    TEMPERATURE_REVISION: float = 0.65
    TEMPERATURE_EXTRACTION: float = 0.1
    TEMPERATURE_SUMMARY: float = 0.5

    # LLM Call Settings
    HTTPX_TIMEOUT: float = 600.0
    LLM_TOP_P: float = 0.8
    TIKTOKEN_DEFAULT_ENCODING: str = "cl100k_base"
    FALLBACK_CHARS_PER_TOKEN: float = 4.0
    TOKENIZER_CACHE_SIZE: int = 10

    # Concurrency and Timeouts
    MAX_CONCURRENT_LLM_CALLS: int = 4
    LLM_CALL_TIMEOUT_SECONDS: float = 300.0
    CHAPTER_ADVISORY_LOCK_ENABLED: bool = True

    # Token budgets
    MAX_CONTEXT_TOKENS: int = 40960
    MAX_GENERATION_TOKENS: int = 16384
    MIN_GENERATION_TOKENS: int = 1024
    MAX_EXTRACTION_TOKENS: int = 4096

    # Context layering
    CONTEXT_MAX_TOKENS: int = 28000
    CONTEXT_RECENT_CHAPTERS: int = 6
    CONTEXT_SUMMARY_CHAPTERS: int = 20

    # Continuity gate
    CONTINUITY_GATE_ENABLED: bool = True
    REVIEW_PASS_THRESHOLD: float = 7.4
    CONTINUITY_PASS_SCORE: float | None = None
    CONTINUITY_REJECT_SCORE: float = 4.9
    CONTINUITY_MAX_REPAIR_ATTEMPTS: int = 1
    CONTINUITY_OPENING_WINDOW_CHARS: int = 420
    CONTINUITY_MAX_ANCHOR_SIGNALS: int = 8
    CONTINUITY_MAX_EVENT_SIGNALS: int = 10
    CONTINUITY_MAX_HOOK_SIGNALS: int = 8
    CONTINUITY_BASELINE_SCORE: float = 4.0
    CONTINUITY_WEIGHT_OPENING: float = 0.45
    CONTINUITY_WEIGHT_EVENTS: float = 0.35
    CONTINUITY_WEIGHT_HOOKS: float = 0.2
    CONTINUITY_TIMELINE_BONUS: float = 0.25

    # Narrative hooks
    HOOK_REMINDER_THRESHOLD: int = 10
    HOOK_MATCH_THRESHOLD: float = 0.6
    HOOK_CONTEXT_LIMIT: int = 12

    # Pending entities
    PENDING_ENTITY_MATCH_THRESHOLD: float = 0.6

    # Branch generation
    BRANCH_TEMPERATURES: list[float] = Field(default_factory=lambda: [0.7, 0.8, 0.9])
    BRANCH_DEFAULT_COUNT: int = 3
    BRANCH_MAX_COUNT: int = 8
    BRANCH_CACHE_LIMIT: int = 3
    BRANCH_PREVIEW_CHARS: int = 500

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="LOG_LEVEL")
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = None
    BASE_OUTPUT_DIR: str = "output"
    ENABLE_RICH_PROGRESS: bool = True
    # Minimal logging mode for single-user setups: console only, no rotation/Rich
    SIMPLE_LOGGING_MODE: bool = False

    @model_validator(mode="after")
    def clamp_generation_limits(self) -> ChapterForgeSettings:
        # Optional FAST profile for consumer laptops: lower budgets to avoid timeouts.
        fast = os.getenv("FAST_PROFILE", "false").lower() in {"1", "true", "yes", "on"}
        if fast:
            object.__setattr__(
                self, "MAX_CONTEXT_TOKENS", min(self.MAX_CONTEXT_TOKENS, 8192)
            )
            object.__setattr__(
                self, "MAX_GENERATION_TOKENS", min(self.MAX_GENERATION_TOKENS, 2048)
            )
            object.__setattr__(
                self, "CONTEXT_MAX_TOKENS", min(self.CONTEXT_MAX_TOKENS, 6000)
            )
        if self.MAX_CONCURRENT_LLM_CALLS < 1:
            object.__setattr__(self, "MAX_CONCURRENT_LLM_CALLS", 1)
        if not self.BRANCH_TEMPERATURES:
            object.__setattr__(self, "BRANCH_TEMPERATURES", [0.7, 0.8, 0.9])
        return self

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")


settings = ChapterForgeSettings()


# Update module level variables for backward compatibility
for _field in settings.model_fields:
    globals()[_field] = getattr(settings, _field)


# Configure structlog to integrate with standard logging and output human-readable messages
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt=settings.LOG_DATE_FORMAT),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)


def filter_internal_keys(
    logger: Any, name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Remove internal structlog fields from event dict."""
    for key in [k for k in event_dict.keys() if k.startswith("_")]:
        event_dict.pop(key, None)
    return event_dict


def _format_context(event_dict: MutableMapping[str, Any], key_style: str) -> str:
    context_parts = []
    for key, value in event_dict.items():
        if key.startswith("_"):
            continue
        if isinstance(value, str) and len(value) > 50:
            value_str = f"{value[:47]}..."
        else:
            value_str = str(value)
        context_parts.append(key_style.format(key=key) + f"={value_str}")
    return f"({', '.join(context_parts)})" if context_parts else ""


def simple_log_format_rich(
    logger: Any, name: str, event_dict: MutableMapping[str, Any]
) -> str:
    """Human-readable log line with Rich markup for console output."""
    level = str(event_dict.pop("level", "INFO")).upper()
    timestamp = event_dict.pop("timestamp", "")
    logger_name = event_dict.pop("logger", "")
    event = event_dict.pop("event", "")

    parts = []
    if timestamp:
        parts.append(f"{timestamp}")
    if logger_name:
        parts.append(f"[cyan]{logger_name.split('.')[-1]}[/cyan]")

    colors = {"ERROR": "red", "CRITICAL": "red", "WARNING": "yellow", "INFO": "green"}
    color = colors.get(level)
    parts.append(f"[{color}]{level}[/{color}]" if color else level)
    parts.append(f"[bold]{event}[/bold]" if event else "")

    context = _format_context(event_dict, "[dim]{key}[/dim]")
    if context:
        parts.append(context)
    return " ".join(parts)


def simple_log_format_plain(
    logger: Any, name: str, event_dict: MutableMapping[str, Any]
) -> str:
    """Human-readable log line without markup for file output."""
    level = str(event_dict.pop("level", "INFO")).upper()
    timestamp = event_dict.pop("timestamp", "")
    logger_name = event_dict.pop("logger", "")
    event = event_dict.pop("event", "")

    parts = []
    if timestamp:
        parts.append(f"{timestamp}")
    if logger_name:
        parts.append(f"[{logger_name.split('.')[-1]}]")
    parts.append(level)
    parts.append(event if event else "")

    context = _format_context(event_dict, "{key}")
    if context:
        parts.append(context)
    return " ".join(parts)


_foreign_pre_chain = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt=settings.LOG_DATE_FORMAT),
    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
]

# Formatter for file output (plain text, no Rich markup)
simple_formatter = structlog.stdlib.ProcessorFormatter(
    foreign_pre_chain=_foreign_pre_chain,
    processors=[
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        filter_internal_keys,
        simple_log_format_plain,
    ],
)

# Formatter for Rich console output (with color markup)
rich_formatter = structlog.stdlib.ProcessorFormatter(
    foreign_pre_chain=_foreign_pre_chain,
    processors=[
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        filter_internal_keys,
        simple_log_format_rich,
    ],
)

root_logger = stdlib_logging.getLogger()
root_logger.setLevel(settings.LOG_LEVEL_STR)
