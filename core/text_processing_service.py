# core/text_processing_service.py
"""Measure and normalize generated chapter text.

This module provides:
- A deterministic character-weighted token estimate used for context budgets.
- `tiktoken`-backed token counting used to size generation requests.
- Word counting that treats each CJK character as a word.
- Cleaning of model responses (reasoning tags, wrapper phrases, fences).

Notes:
    `estimate_tokens()` is intentionally independent of any tokenizer so context
    assembly is reproducible across providers. `TokenizerService` falls back to
    `FALLBACK_CHARS_PER_TOKEN` when no encoding can be loaded.
"""

from __future__ import annotations

import functools
import math
import re
from typing import Any

import structlog
import tiktoken

import config

logger = structlog.get_logger(__name__)

CJK_TOKEN_WEIGHT = 1.5
NON_ASCII_TOKEN_WEIGHT = 1.2
ASCII_TOKEN_WEIGHT = 0.25

_CJK_RANGES = (
    (0x3040, 0x30FF),  # Hiragana, Katakana
    (0x3400, 0x4DBF),  # CJK Extension A
    (0x4E00, 0x9FFF),  # CJK Unified Ideographs
    (0xAC00, 0xD7AF),  # Hangul
    (0xF900, 0xFAFF),  # CJK Compatibility Ideographs
)

_WORD_RE = re.compile(r"[A-Za-z0-9À-ɏ]+(?:['’\-][A-Za-z0-9À-ɏ]+)*")


def is_cjk(ch: str) -> bool:
    code = ord(ch)
    return any(lo <= code <= hi for lo, hi in _CJK_RANGES)


def estimate_tokens(text: str) -> int:
    """Estimate the token count of `text` from its characters.

    CJK characters weigh 1.5 tokens, other non-ASCII characters 1.2, and ASCII
    characters 0.25. The result is rounded up.
    """
    if not text:
        return 0
    return math.ceil(sum(char_token_weight(ch) for ch in text))


def char_token_weight(ch: str) -> float:
    if ord(ch) < 128:
        return ASCII_TOKEN_WEIGHT
    if is_cjk(ch):
        return CJK_TOKEN_WEIGHT
    return NON_ASCII_TOKEN_WEIGHT


def count_words(text: str) -> int:
    """Count words, treating every CJK character as one word."""
    if not text:
        return 0
    cjk_count = sum(1 for ch in text if is_cjk(ch))
    return cjk_count + len(_WORD_RE.findall(text))


class TokenizerService:
    """Count tokens with model encodings, with a character-based fallback."""

    def __init__(self) -> None:
        self._stats = {
            "tokenizer_requests": 0,
            "fallback_used": 0,
        }

    @functools.lru_cache(maxsize=config.TOKENIZER_CACHE_SIZE)  # noqa: B019
    def get_tokenizer(self, model_name: str) -> tiktoken.Encoding | None:
        """Return a cached `tiktoken` encoder for a model name, or None when unavailable."""
        try:
            try:
                encoder = tiktoken.encoding_for_model(model_name)
            except KeyError:
                logger.debug(
                    "get_tokenizer: no model encoding, using default",
                    model=model_name,
                    encoding=config.TIKTOKEN_DEFAULT_ENCODING,
                )
                encoder = tiktoken.get_encoding(config.TIKTOKEN_DEFAULT_ENCODING)
            return encoder
        except Exception as e:
            logger.error("get_tokenizer: failed to load encoding", model=model_name, error=str(e))
            return None

    def count_tokens(self, text: str, model_name: str) -> int:
        """Count tokens in `text` for `model_name`."""
        if not text:
            return 0
        self._stats["tokenizer_requests"] += 1

        encoder = self.get_tokenizer(model_name)
        if encoder:
            return len(encoder.encode(text, allowed_special="all"))

        self._stats["fallback_used"] += 1
        token_estimate = int(len(text) / config.FALLBACK_CHARS_PER_TOKEN)
        logger.warning(
            "count_tokens: falling back to character-based estimate",
            model=model_name,
            chars=len(text),
            tokens=token_estimate,
        )
        return token_estimate

    def get_statistics(self) -> dict[str, Any]:
        total_requests = self._stats["tokenizer_requests"]
        return {
            **self._stats,
            "fallback_rate": (self._stats["fallback_used"] / total_requests * 100) if total_requests > 0 else 0,
        }


class ResponseCleaningService:
    """Remove reasoning blocks and assistant wrapper phrases from chapter drafts."""

    _THINK_TAGS = ("think", "thought", "thinking", "reasoning", "analysis", "reflection")

    _PHRASE_PATTERNS = (
        r"^\s*(Okay,\s*)?(Sure,\s*)?(Here's|Here is)\s+(the|your)\s+[\w\s]+?:\s*",
        r"^\s*Certainly! Here is the text:\s*",
        r"^\s*(?:Output|Result|Response)\s*:\s*",
        r"\s*Let me know if you (need|have) any(thing else| other questions| further revisions| adjustments)\b.*?\.?[^\w\n]*$",
        r"\s*I hope this (meets your expectations|helps|is what you were looking for)\b.*?\.?[^\w\n]*$",
    )

    def __init__(self) -> None:
        tags = "|".join(self._THINK_TAGS)
        self._think_block = re.compile(rf"<\s*({tags})\s*>.*?<\s*/\s*\1\s*>", re.DOTALL | re.IGNORECASE)
        self._think_stray = re.compile(rf"<\s*/?\s*({tags})\s*/?\s*>", re.IGNORECASE)
        self._fence = re.compile(r"^\s*```(?:[a-zA-Z0-9_-]+)?\s*\n(.*?)\n\s*```\s*$", re.DOTALL)
        self._phrases = [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in self._PHRASE_PATTERNS]
        self._stats = {"responses_cleaned": 0, "think_tags_removed": 0, "phrases_removed": 0}

    def clean_response(self, text: str) -> str:
        """Clean common artifacts from a model text response.

        Removes provider reasoning tags, an enclosing markdown fence (keeping its
        content), and common lead-in and sign-off phrases.
        """
        if not isinstance(text, str):
            logger.warning("clean_response: non-string input", input_type=type(text).__name__)
            return ""

        self._stats["responses_cleaned"] += 1
        cleaned = self._think_block.sub("", text)
        cleaned = self._think_stray.sub("", cleaned)
        if len(cleaned) < len(text):
            self._stats["think_tags_removed"] += 1

        fenced = self._fence.match(cleaned)
        if fenced:
            cleaned = fenced.group(1)

        for pattern in self._phrases:
            updated = pattern.sub("", cleaned, count=1).strip()
            if len(updated) < len(cleaned.strip()):
                self._stats["phrases_removed"] += 1
            cleaned = updated

        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned.strip())
        return cleaned

    def get_statistics(self) -> dict[str, Any]:
        return dict(self._stats)


_default_tokenizer = TokenizerService()


def count_tokens(text: str, model_name: str) -> int:
    """Count tokens using the module-default tokenizer service."""
    return _default_tokenizer.count_tokens(text, model_name)
