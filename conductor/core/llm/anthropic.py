"""Anthropic planning model."""

from __future__ import annotations

from anthropic import APIStatusError, AsyncAnthropic, RateLimitError

from conductor.config import LLMConfig
from conductor.core.llm.base import PlanningModel, with_retries
from conductor.core.llm.types import Completion


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    return isinstance(exc, APIStatusError) and exc.status_code >= 500


class AnthropicPlanningModel(PlanningModel):
    max_retries = 3

    def __init__(self, config: LLMConfig) -> None:
        self._config = config
        # Retries are handled here so they show up in our logs.
        self._client = AsyncAnthropic(api_key=config.api_key, max_retries=0)

    async def complete(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion:
        request = dict(
            model=self._config.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens or self._config.max_tokens,
            temperature=self._config.temperature if temperature is None else temperature,
        )
        if system:
            request["system"] = system

        response = await with_retries(
            lambda: self._client.messages.create(**request),
            _is_transient,
            self.max_retries,
            provider="anthropic",
        )
        return Completion(
            content="".join(b.text for b in response.content if b.type == "text"),
            stop_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def close(self) -> None:
        await self._client.close()
