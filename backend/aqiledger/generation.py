from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from .config import Settings
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)


# USD per million tokens
PRICES_PER_MILLION_TOKENS: dict[str, dict[str, float]] = {
    "meta-llama/Meta-Llama-3.1-70B-Instruct-Turbo": {"input": 0.59, "output": 0.79},
    "meta-llama/Meta-Llama-3.1-405B-Instruct-Turbo": {"input": 2.5, "output": 2.5},
    "default": {"input": 0.2, "output": 0.2},
}


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    price = PRICES_PER_MILLION_TOKENS.get(model, PRICES_PER_MILLION_TOKENS["default"])
    return (input_tokens / 1_000_000) * price["input"] + (output_tokens / 1_000_000) * price["output"]


@dataclass(frozen=True)
class GenerationResult:
    text: str
    model: str
    tokens_used: dict[str, int] = field(default_factory=lambda: {"input": 0, "output": 0, "total": 0})
    cost_usd: float = 0.0
    latency_ms: int = 0

    def metadata(self, provider: str) -> dict[str, Any]:
        return {
            "provider": provider,
            "model": self.model,
            "tokens_used": dict(self.tokens_used),
            "cost_usd": self.cost_usd,
            "processing_time_ms": self.latency_ms,
        }


class Generator(Protocol):
    provider: str

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> GenerationResult: ...


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ExternalServiceError) and exc.retryable


def _extract_text(payload: Any) -> str:
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not isinstance(choices, list) or not choices:
        raise ExternalServiceError("generation", "Invalid response from LLM: no choices returned")
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    text = message.get("content") if isinstance(message, dict) else None
    if not isinstance(text, str) or not text.strip():
        raise ExternalServiceError("generation", "LLM response did not contain text content")
    return text


class TogetherClient:
    """OpenAI-compatible chat completions client with a bounded retry budget."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.together.xyz/v1",
        provider: str = "together",
        max_attempts: int = 3,
        timeout: float = 60.0,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "TogetherClient":
        return cls(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            provider=settings.llm_provider,
            max_attempts=settings.llm_max_attempts,
            timeout=settings.llm_timeout_seconds,
        )

    async def _request(self, body: dict[str, Any]) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    "/chat/completions",
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
            response.raise_for_status()
        except httpx.RequestError as exc:
            raise ExternalServiceError("generation", f"unable to contact LLM ({exc})") from exc
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                "generation",
                f"LLM returned HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise ExternalServiceError("generation", "LLM returned invalid JSON") from exc

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> GenerationResult:
        if not self.api_key:
            raise ExternalServiceError("generation", "LLM_API_KEY is not configured")

        body = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        started = time.monotonic()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=30),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                data = await self._request(body)
                text = _extract_text(data)

        usage = data.get("usage") or {}
        tokens = {
            "input": int(usage.get("prompt_tokens", 0)),
            "output": int(usage.get("completion_tokens", 0)),
            "total": int(usage.get("total_tokens", 0)),
        }
        latency_ms = int((time.monotonic() - started) * 1000)
        cost = calculate_cost(model, tokens["input"], tokens["output"])
        logger.info("LLM inference succeeded: model=%s tokens=%s latency_ms=%d", model, tokens, latency_ms)
        return GenerationResult(text=text, model=model, tokens_used=tokens, cost_usd=cost, latency_ms=latency_ms)
