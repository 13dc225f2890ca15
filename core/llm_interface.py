# core/llm_interface.py
"""
Model adapter contract and the shared generation runtime.

The pipeline talks to the generative model through two layers:

- A `ModelAdapter` turns a `ModelRequest` into a `ModelResponse` for one
  provider. `OpenAICompatibleAdapter` is the shipped implementation and sits on
  `HTTPClientService`.
- `GenerationRuntime` owns the process-wide `ConcurrencyLimiter`, resolves
  the model and token budget, and cleans responses. The orchestrator and the
  branch generator share one runtime instance so every call is bounded by the
  same limiter.

Licensed under the Apache License, Version 2.0
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, Field

import config
from core.concurrency import ConcurrencyLimiter
from core.exceptions import LLMServiceError
from core.http_client_service import HTTPClientService
from core.text_processing_service import ResponseCleaningService, count_tokens

logger = structlog.get_logger(__name__)


class ProviderConfig(BaseModel):
    api_base: str = Field(default_factory=lambda: config.OPENAI_API_BASE)
    api_key: str = Field(default_factory=lambda: config.OPENAI_API_KEY)
    default_model: str = Field(default_factory=lambda: config.NARRATIVE_MODEL)


class ModelRequest(BaseModel):
    messages: list[dict[str, str]]
    model: str
    temperature: float
    max_tokens: int | None = None
    web_search: bool = False
    response_format: dict[str, Any] | None = None


class ModelResponse(BaseModel):
    content: str
    usage: dict[str, Any] | None = None


class ModelAdapter(Protocol):
    async def generate(self, provider: ProviderConfig, request: ModelRequest) -> ModelResponse: ...


def build_messages(prompt: str, system_prompt: str | None = None) -> list[dict[str, str]]:
    return ([{"role": "system", "content": system_prompt}] if system_prompt else []) + [
        {"role": "user", "content": prompt}
    ]


def resolve_model(*candidates: str | None, fallback: str | None = None) -> str:
    """Return the first non-empty model name, in priority order.

    Call sites pass the agent model first, then the novel default; the
    configured `NARRATIVE_MODEL` is the final fallback.
    """
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return fallback or config.NARRATIVE_MODEL


class OpenAICompatibleAdapter:
    """Call an OpenAI-compatible chat completions endpoint."""

    def __init__(self, http_client: HTTPClientService):
        self._http_client = http_client

    async def generate(self, provider: ProviderConfig, request: ModelRequest) -> ModelResponse:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": request.messages,
            "temperature": request.temperature,
            "top_p": config.LLM_TOP_P,
            "stream": False,
        }
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.response_format is not None:
            payload["response_format"] = request.response_format
        if request.web_search:
            payload["web_search_options"] = {}

        headers = {
            "Authorization": f"Bearer {provider.api_key}",
            "Content-Type": "application/json",
        }

        logger.debug(
            "OpenAICompatibleAdapter.generate: requesting completion",
            model=request.model,
            messages=len(request.messages),
        )
        response = await self._http_client.post_json(
            f"{provider.api_base.rstrip('/')}/chat/completions", payload, headers
        )
        try:
            response_data = response.json()
        except ValueError as e:
            raise LLMServiceError("Provider returned a non-JSON body", details={"model": request.model}) from e

        return ModelResponse(
            content=self._extract_completion_content(response_data),
            usage=response_data.get("usage"),
        )

    def _extract_completion_content(self, response_data: dict[str, Any]) -> str:
        """Extract completion content from an API response."""
        choices = response_data.get("choices") or []
        if choices:
            choice0 = choices[0] or {}
            message = choice0.get("message") or {}

            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content

            # Some reasoning models expose only 'reasoning_content'
            reasoning_content = message.get("reasoning_content")
            if isinstance(reasoning_content, str) and reasoning_content.strip():
                logger.warning("LLM response missing 'content'; using 'reasoning_content' fallback")
                return reasoning_content

            direct_choice_content = choice0.get("text") or choice0.get("content")
            if isinstance(direct_choice_content, str) and direct_choice_content.strip():
                return direct_choice_content

        for key in ("output_text", "text", "response", "content"):
            top = response_data.get(key)
            if isinstance(top, str) and top.strip():
                logger.warning("LLM response using top-level fallback for content", key=key)
                return top

        logger.error("Invalid response structure - missing choices/content", keys=list(response_data.keys()))
        return ""


class GenerationRuntime:
    """Shared entry point for every model call made by the pipeline."""

    def __init__(
        self,
        adapter: ModelAdapter,
        limiter: ConcurrencyLimiter,
        provider: ProviderConfig | None = None,
        cleaner: ResponseCleaningService | None = None,
        token_counter: Any = None,
    ):
        self.adapter = adapter
        self.limiter = limiter
        self.provider = provider or ProviderConfig()
        self._cleaner = cleaner or ResponseCleaningService()
        self._count_tokens = token_counter or count_tokens
        self._owned_http_client: HTTPClientService | None = None

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
        web_search: bool = False,
        response_format: dict[str, Any] | None = None,
        timeout: float | None = None,
        clean_response: bool = True,
        label: str = "model_call",
    ) -> ModelResponse:
        """Generate one completion through the shared limiter.

        Raises:
            ExternalCallTimeout: When the call exceeds its timeout.
            LLMServiceError: When the provider call fails.
        """
        request = ModelRequest(
            messages=build_messages(prompt, system_prompt),
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            web_search=web_search,
            response_format=response_format,
        )
        response = await self.limiter.run(
            lambda: self.adapter.generate(self.provider, request),
            timeout=timeout,
            label=label,
        )
        content = self._cleaner.clean_response(response.content) if clean_response else response.content
        logger.debug(
            "GenerationRuntime.generate: completion received",
            label=label,
            model=model,
            temperature=temperature,
            chars=len(content),
        )
        return ModelResponse(content=content, usage=response.usage)

    def count_tokens(self, text: str, model: str) -> int:
        return self._count_tokens(text, model)

    def generation_budget(self, prompt: str, model: str) -> int:
        """Return the `max_tokens` for a prompt, bounded by the context window."""
        prompt_tokens = self.count_tokens(prompt, model)
        available = config.MAX_CONTEXT_TOKENS - prompt_tokens
        budget = min(config.MAX_GENERATION_TOKENS, available)
        if budget < config.MIN_GENERATION_TOKENS:
            logger.warning(
                "generation_budget: prompt leaves little room for output",
                prompt_tokens=prompt_tokens,
                available=available,
            )
            budget = config.MIN_GENERATION_TOKENS
        return budget

    async def aclose(self) -> None:
        if self._owned_http_client is not None:
            await self._owned_http_client.aclose()


def create_generation_runtime(
    limiter: ConcurrencyLimiter | None = None,
    provider: ProviderConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GenerationRuntime:
    """Build a runtime backed by the OpenAI-compatible adapter."""
    http_client = HTTPClientService(transport=transport)
    runtime = GenerationRuntime(
        OpenAICompatibleAdapter(http_client),
        limiter or ConcurrencyLimiter(),
        provider=provider,
    )
    runtime._owned_http_client = http_client
    return runtime
