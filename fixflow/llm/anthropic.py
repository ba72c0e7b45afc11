"""Anthropic Messages API adapter."""

from __future__ import annotations

import httpx

from fixflow.agent.prompts import SYSTEM_PROMPT
from fixflow.errors import ProviderFailure
from fixflow.llm.base import parse_patch, post_json
from fixflow.schemas import ModelPatch


class AnthropicProvider:
    """Anthropic Messages API adapter."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.anthropic.com/v1",
        model: str = "claude-sonnet-4-20250514",
        api_version: str = "2023-06-01",
        max_tokens: int = 8192,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Anthropic API key not configured")
        self.model = model
        self.max_tokens = max_tokens
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "x-api-key": api_key,
                "anthropic-version": api_version,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "anthropic"

    async def submit(self, prompt: str) -> ModelPatch:
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": 0.2,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }
        data = await post_json(self.name, self._client, "/messages", payload)

        blocks = data.get("content") or []
        text = "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
        if not text and data.get("stop_reason") == "max_tokens":
            raise ProviderFailure(self.name, "response truncated at max_tokens")
        return parse_patch(self.name, text)

    async def close(self) -> None:
        await self._client.aclose()
