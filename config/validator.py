# config/validator.py
"""
Configuration validation for ChapterForge.

`validate_all()` runs cross-field sanity checks that Pydantic field types
cannot express (token budgets that must nest, gate thresholds that must be
ordered, branch limits) and returns a health report:

{
    "overall_health": "healthy" | "warning" | "error",
    "issues": {
        "errors":   [{ "field": "<field>", "message": "<msg>" }, ...],
        "warnings": [{ "field": "<field>", "message": "<msg>" }, ...],
        "info":     [{ "field": "<field>", "message": "<msg>" }, ...],
    }
}
"""

from __future__ import annotations

from typing import Any

import config


def _add_issue(
    issues: dict[str, list[dict[str, str]]],
    severity: str,
    field: str,
    message: str,
) -> None:
    issues.setdefault(severity, []).append({"field": field, "message": message})


def _check_token_budgets(current: Any, issues: dict[str, list[dict[str, str]]]) -> None:
    if current.MAX_CONTEXT_TOKENS <= current.MAX_GENERATION_TOKENS:
        _add_issue(
            issues,
            "errors",
            "MAX_CONTEXT_TOKENS",
            (
                f"MAX_CONTEXT_TOKENS ({current.MAX_CONTEXT_TOKENS}) must be "
                f"greater than MAX_GENERATION_TOKENS ({current.MAX_GENERATION_TOKENS})."
            ),
        )
    if current.MIN_GENERATION_TOKENS > current.MAX_GENERATION_TOKENS:
        _add_issue(
            issues,
            "errors",
            "MIN_GENERATION_TOKENS",
            "MIN_GENERATION_TOKENS must not exceed MAX_GENERATION_TOKENS.",
        )
    if current.CONTEXT_MAX_TOKENS >= current.MAX_CONTEXT_TOKENS:
        _add_issue(
            issues,
            "warnings",
            "CONTEXT_MAX_TOKENS",
            (
                f"CONTEXT_MAX_TOKENS ({current.CONTEXT_MAX_TOKENS}) leaves no room in the "
                f"model window ({current.MAX_CONTEXT_TOKENS}) for the rest of the prompt."
            ),
        )


def _check_continuity_gate(current: Any, issues: dict[str, list[dict[str, str]]]) -> None:
    pass_score = current.CONTINUITY_PASS_SCORE
    if pass_score is not None and current.CONTINUITY_REJECT_SCORE >= pass_score:
        _add_issue(
            issues,
            "warnings",
            "CONTINUITY_REJECT_SCORE",
            (
                f"CONTINUITY_REJECT_SCORE ({current.CONTINUITY_REJECT_SCORE}) is not below "
                f"CONTINUITY_PASS_SCORE ({pass_score}); it will be clamped at runtime."
            ),
        )
    weights = (
        current.CONTINUITY_WEIGHT_OPENING + current.CONTINUITY_WEIGHT_EVENTS + current.CONTINUITY_WEIGHT_HOOKS
    )
    if abs(weights - 1.0) > 1e-6:
        _add_issue(
            issues,
            "warnings",
            "CONTINUITY_WEIGHT_OPENING",
            f"Continuity weights sum to {weights:.3f}; scores will not span the full range.",
        )
    if not 0.0 <= current.CONTINUITY_BASELINE_SCORE < 10.0:
        _add_issue(
            issues,
            "errors",
            "CONTINUITY_BASELINE_SCORE",
            "CONTINUITY_BASELINE_SCORE must be within [0, 10).",
        )
    if not current.CONTINUITY_GATE_ENABLED:
        _add_issue(issues, "info", "CONTINUITY_GATE_ENABLED", "Continuity gate is disabled.")


def _check_branches(current: Any, issues: dict[str, list[dict[str, str]]]) -> None:
    if current.BRANCH_DEFAULT_COUNT > current.BRANCH_MAX_COUNT:
        _add_issue(
            issues,
            "errors",
            "BRANCH_DEFAULT_COUNT",
            f"BRANCH_DEFAULT_COUNT ({current.BRANCH_DEFAULT_COUNT}) exceeds BRANCH_MAX_COUNT ({current.BRANCH_MAX_COUNT}).",
        )
    if current.BRANCH_CACHE_LIMIT < 1:
        _add_issue(issues, "errors", "BRANCH_CACHE_LIMIT", "BRANCH_CACHE_LIMIT must be >= 1.")


def validate_all() -> dict:
    """Validate the current configuration state."""
    issues: dict[str, list[dict[str, str]]] = {"errors": [], "warnings": [], "info": []}
    current = config.settings

    if current is None:
        _add_issue(issues, "errors", "settings", "Configuration object not initialized.")
        return {"overall_health": "error", "issues": issues}

    _check_token_budgets(current, issues)
    _check_continuity_gate(current, issues)
    _check_branches(current, issues)

    if current.TOKENIZER_CACHE_SIZE < 1:
        _add_issue(issues, "errors", "TOKENIZER_CACHE_SIZE", "TOKENIZER_CACHE_SIZE must be >= 1.")

    temperature_fields = [
        "TEMPERATURE_DRAFTING",
        "TEMPERATURE_REVISION",
        "TEMPERATURE_EXTRACTION",
        "TEMPERATURE_SUMMARY",
    ]
    for name in temperature_fields:
        value = getattr(current, name)
        if not (0.0 <= value <= 2.0):
            _add_issue(issues, "warnings", name, f"{name} = {value} is outside the recommended range 0.0-2.0.")
    for value in current.BRANCH_TEMPERATURES:
        if not (0.0 <= value <= 2.0):
            _add_issue(
                issues,
                "warnings",
                "BRANCH_TEMPERATURES",
                f"Branch temperature {value} is outside the recommended range 0.0-2.0.",
            )

    overall = "healthy"
    if issues["errors"]:
        overall = "error"
    elif issues["warnings"]:
        overall = "warning"

    return {"overall_health": overall, "issues": issues}
