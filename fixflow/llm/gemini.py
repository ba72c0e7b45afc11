"""Google Gemini adapter (``generateContent`` REST endpoint)."""

from __future__ import annotations

import httpx

from fixflow.agent.prompts import SYSTEM_PROMPT
from fixflow.errors import ProviderFailure
from fixflow.llm.base import parse_patch, post_json
from fixflow.schemas import ModelPatch


class GeminiProvider:
    """Gemini API adapter. The system prompt is prepended to the user prompt."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        model: str = "gemini-2.0-flash",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Google API key not configured")
        self.model = model
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "x-goog-api-key": api_key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "google"

    async def submit(self, prompt: str) -> ModelPatch:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": f"{SYSTEM_PROMPT}\n\n{prompt}"}]}],
            "generationConfig": {
                "temperature": 0.2,
                "responseMimeType": "application/json",
            },
        }
        data = await post_json(self.name, self._client, f"/models/{self.model}:generateContent", payload)

        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates")
            raise ProviderFailure(self.name, f"empty response: {reason}")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        return parse_patch(self.name, text)

    async def close(self) -> None:
        await self._client.aclose()
