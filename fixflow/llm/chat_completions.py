"""OpenAI-compatible chat completions adapter.

Serves two providers through the same wire format:
- openai: https://api.openai.com/v1 (gpt-4o), JSON response format
- huggingface: https://router.huggingface.co/v1, free-tier hosted inference
"""

from __future__ import annotations

from typing import Any

import httpx

from fixflow.agent.prompts import SYSTEM_PROMPT
from fixflow.errors import ProviderFailure
from fixflow.llm.base import parse_patch, post_json
from fixflow.schemas import ModelPatch


class ChatCompletionsProvider:
    """Chat completions API adapter."""

    def __init__(
        self,
        *,
        name: str,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 120.0,
        json_mode: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError(f"{name} API key not configured")
        self._name = name
        self.model = model
        self.json_mode = json_mode
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return self._name

    async def submit(self, prompt: str) -> ModelPatch:
        """Send the fix prompt and normalise the answer."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.2,
        }
        if self.json_mode:
            payload["response_format"] = {"type": "json_object"}

        data = await post_json(self._name, self._client, "/chat/completions", payload)

        choices = data.get("choices") or []
        if not choices:
            raise ProviderFailure(self._name, "response has no choices")
        message = choices[0].get("message") or {}
        return parse_patch(self._name, message.get("content"))

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
