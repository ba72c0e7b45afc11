"""Provider capability shared by all model adapters.

Every provider (Hugging Face, OpenAI, Gemini, Anthropic) satisfies the
``ModelProvider`` protocol: it takes the fix prompt and returns a
``ModelPatch``. Adapters are plain classes selected by tag in
``fixflow.llm.router``; they do not share a base class.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import ValidationError

from fixflow.errors import ProviderFailure, ProviderRateLimited
from fixflow.schemas import ModelPatch


RATE_LIMIT_MARKERS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "quota exceeded",
    "exceeded your current quota",
    "too many requests",
    "resource exhausted",
    "resource_exhausted",
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@runtime_checkable
class ModelProvider(Protocol):
    """Capability: submit a prompt, get a normalised patch back."""

    @property
    def name(self) -> str:
        ...

    async def submit(self, prompt: str) -> ModelPatch:
        ...

    async def close(self) -> None:
        ...


def is_rate_limited(exc: BaseException) -> bool:
    """True if a provider failure looks like rate limiting or quota exhaustion."""
    if isinstance(exc, ProviderRateLimited):
        return True
    if isinstance(exc, ProviderFailure) and exc.status_code == 429:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def parse_patch(provider: str, content: str | None) -> ModelPatch:
    """Normalise a model's JSON answer into a ``ModelPatch``.

    Raises:
        ProviderFailure: if the content is empty or not a JSON object.
    """
    if not content or not content.strip():
        raise ProviderFailure(provider, "empty response")

    text = content.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProviderFailure(provider, f"response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProviderFailure(provider, "response JSON is not an object")

    try:
        return ModelPatch(
            file_path=_optional_str(data.get("file_path")),
            code_change=_optional_str(data.get("code_change")),
            commit_message=data.get("commit_message"),
            analysis=data.get("analysis"),
            confidence_score=data.get("confidence_score"),
        )
    except ValidationError as exc:
        raise ProviderFailure(provider, f"response does not match the patch schema: {exc}") from exc


def raise_for_status(provider: str, response: httpx.Response) -> None:
    """Map an HTTP error response to the provider error taxonomy."""
    if response.is_success:
        return
    message = _error_text(response)
    if response.status_code == 429 or any(m in message.lower() for m in RATE_LIMIT_MARKERS):
        raise ProviderRateLimited(provider, message, status_code=response.status_code)
    raise ProviderFailure(provider, message, status_code=response.status_code)


async def post_json(
    provider: str,
    client: httpx.AsyncClient,
    path: str,
    payload: dict[str, Any],
    **kwargs: Any,
) -> dict[str, Any]:
    """POST a JSON payload and return the decoded body, mapping failures."""
    try:
        response = await client.post(path, json=payload, **kwargs)
    except httpx.HTTPError as exc:
        raise ProviderFailure(provider, f"request failed: {exc}") from exc
    raise_for_status(provider, response)
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderFailure(provider, "response body is not JSON") from exc


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if payload.get("message"):
            return str(payload["message"])
    return response.text or f"HTTP {response.status_code}"


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None
