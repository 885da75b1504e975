"""OpenAI-compatible planning model (ollama, llama.cpp, vllm, ...)."""

from __future__ import annotations

from typing import Any

import httpx

from conductor.config import LLMConfig
from conductor.core.llm.base import PlanningModel, with_retries
from conductor.core.llm.types import Completion


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.ConnectError)


class LocalPlanningModel(PlanningModel):
    max_retries = 2

    def __init__(
        self, config: LLMConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.local_endpoint.rstrip("/"),
            timeout=120,
            transport=transport,
        )

    async def complete(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion:
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        body = {
            "model": self._config.model,
            "messages": messages,
            "max_tokens": max_tokens or self._config.max_tokens,
            "temperature": self._config.temperature if temperature is None else temperature,
        }

        data = await with_retries(
            lambda: self._post("/chat/completions", body),
            _is_transient,
            self.max_retries,
            provider="local",
        )
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return Completion(
            content=choice["message"].get("content") or "",
            stop_reason=choice.get("finish_reason"),
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        )

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        resp = await self._client.post(path, json=body)
        resp.raise_for_status()
        return resp.json()

    async def close(self) -> None:
        await self._client.aclose()
