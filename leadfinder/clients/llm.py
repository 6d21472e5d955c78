"""Structured-output inference over an OpenAI-compatible chat completions API."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

from openai import APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from leadfinder.config import settings
from leadfinder.observability.metrics import metrics

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound=BaseModel)
SleepFn = Callable[[float], Awaitable[None]]


class InferenceError(RuntimeError):
    """Base exception raised by inference clients."""

    def __init__(self, message: str, code: str = "INFERENCE_ERROR") -> None:
        super().__init__(message)
        self.code = code


class InferenceProviderError(InferenceError):
    """Raised when the upstream model provider fails."""


class InferenceValidationError(InferenceError):
    """Raised when a model response cannot be parsed into the requested schema."""


class TextInferenceModel(Protocol):
    """Minimal contract for schema-constrained text inference."""

    async def complete(
        self,
        prompt: str,
        schema: type[_M],
        *,
        system_prompt: str | None = None,
        model: str | None = None,
    ) -> _M:
        ...


class OpenAIStructuredModel(TextInferenceModel):
    """Requests JSON-object completions and validates them against a pydantic schema."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        default_model: str | None = None,
        temperature: float = 0.1,
        timeout: float = 20.0,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        client: AsyncOpenAI | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        if not api_key and client is None:
            raise ValueError("LLM_API_KEY is required to run model inference.")
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )
        self._default_model = default_model or settings.pattern_model
        self._temperature = temperature
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(cls, *, default_model: str | None = None) -> "OpenAIStructuredModel":
        return cls(
            settings.llm_api_key or "",
            base_url=settings.llm_base_url,
            default_model=default_model,
            temperature=settings.llm_temperature,
            timeout=settings.llm_timeout_seconds,
            retry_attempts=settings.llm_retry_attempts,
        )

    async def complete(
        self,
        prompt: str,
        schema: type[_M],
        *,
        system_prompt: str | None = None,
        model: str | None = None,
    ) -> _M:
        resolved_model = model or self._default_model
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        raw_text = await self._execute_with_retry(
            lambda: self._create(messages, resolved_model), model=resolved_model
        )
        try:
            payload = parse_json_payload(raw_text)
            return schema.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            metrics.increment("inference.parse_error", tags={"model": resolved_model})
            logger.error(
                "inference.parse_error",
                extra={"model": resolved_model, "schema": schema.__name__},
            )
            raise InferenceValidationError(
                f"Model response did not match {schema.__name__}.",
                code="502_INFERENCE_SCHEMA",
            ) from exc

    async def _create(self, messages: list[dict[str, str]], model: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=self._temperature,
                response_format={"type": "json_object"},
            )
        except APITimeoutError as exc:
            raise InferenceProviderError("Inference request timed out.", code="504_INFERENCE_TIMEOUT") from exc
        except APIStatusError as exc:
            code = "429_RATE_LIMIT" if exc.status_code == 429 else "502_INFERENCE_UPSTREAM"
            raise InferenceProviderError(f"Inference request failed: {exc.message}", code=code) from exc
        except OpenAIError as exc:
            raise InferenceProviderError(f"Inference request failed: {exc}", code="502_INFERENCE_UPSTREAM") from exc

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not isinstance(content, str) or not content.strip():
            raise InferenceProviderError(
                "Inference response did not include text output.",
                code="502_INFERENCE_UPSTREAM",
            )
        return content.strip()

    async def _execute_with_retry(
        self, func: Callable[[], Awaitable[str]], *, model: str
    ) -> str:
        """Retry rate-limited calls with exponential backoff."""
        delay = self._retry_backoff_seconds
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return await func()
            except InferenceProviderError as exc:
                logger.warning(
                    "inference.retry",
                    extra={"attempt": attempt, "code": exc.code, "model": model},
                )
                if attempt == self._retry_attempts or exc.code != "429_RATE_LIMIT":
                    metrics.increment("inference.errors", tags={"model": model, "code": exc.code})
                    raise
                await self._sleep(delay)
                delay *= 2
        raise InferenceProviderError("Retry attempts exhausted.", code="502_INFERENCE_UPSTREAM")


def parse_json_payload(raw_text: str) -> dict[str, Any]:
    """Best-effort JSON decoding that tolerates code fences or prose."""
    candidate = raw_text.strip()
    if candidate.startswith("```"):
        candidate = "\n".join(
            line for line in candidate.splitlines() if not line.strip().startswith("```")
        ).strip()
    if candidate.startswith("{") and candidate.endswith("}"):
        return json.loads(candidate)
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end != -1 and end > start:
        return json.loads(candidate[start : end + 1])
    raise ValueError("Response did not contain JSON object.")
