"""Model query routing with rate-limit fallback.

Strategy:
- Query the provider named in the run's credentials.
- On a rate-limit or quota failure, and only if the user holds a key for the
  free fallback provider, resend the identical prompt to that provider.
- Any other failure propagates unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fixflow.agent.prompts import build_fix_prompt
from fixflow.config import Settings, get_settings
from fixflow.errors import FallbackFailure, UnsupportedProvider
from fixflow.llm.anthropic import AnthropicProvider
from fixflow.llm.base import ModelProvider, is_rate_limited
from fixflow.llm.chat_completions import ChatCompletionsProvider
from fixflow.llm.gemini import GeminiProvider
from fixflow.schemas import CredentialBundle, ModelPatch, Provider, RepoContext


logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str, str], ModelProvider]


def build_provider(tag: str, api_key: str, settings: Settings | None = None) -> ModelProvider:
    """Create the adapter for a provider tag.

    Raises:
        UnsupportedProvider: if no adapter exists for ``tag``.
    """
    settings = settings or get_settings()
    timeout = settings.provider_timeout_seconds

    if tag == Provider.HUGGINGFACE.value:
        return ChatCompletionsProvider(
            name=tag,
            api_key=api_key,
            base_url=settings.huggingface_base_url,
            model=settings.huggingface_model,
            timeout=timeout,
            # Not every hosted model honours response_format
            json_mode=False,
        )
    if tag == Provider.OPENAI.value:
        return ChatCompletionsProvider(
            name=tag,
            api_key=api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            timeout=timeout,
        )
    if tag == Provider.GOOGLE.value:
        return GeminiProvider(
            api_key=api_key,
            base_url=settings.google_base_url,
            model=settings.google_model,
            timeout=timeout,
        )
    if tag == Provider.ANTHROPIC.value:
        return AnthropicProvider(
            api_key=api_key,
            base_url=settings.anthropic_base_url,
            model=settings.anthropic_model,
            api_version=settings.anthropic_version,
            timeout=timeout,
        )
    raise UnsupportedProvider(f"Provider {tag} not supported for bug fixing")


class ModelQueryRouter:
    """Routes the fix prompt to the user's provider, with free-tier fallback."""

    def __init__(
        self,
        provider_factory: ProviderFactory | None = None,
        fallback_provider: str = Provider.HUGGINGFACE.value,
    ) -> None:
        self._provider_factory = provider_factory or build_provider
        self.fallback_provider = fallback_provider

    async def query(self, context: RepoContext, credentials: CredentialBundle) -> ModelPatch:
        """Build the prompt from ``context`` and dispatch it."""
        prompt = build_fix_prompt(context)
        return await self.dispatch(prompt, credentials)

    async def dispatch(self, prompt: str, credentials: CredentialBundle) -> ModelPatch:
        """Send ``prompt`` to the primary provider, falling back on rate limits.

        Raises:
            FallbackFailure: primary was rate limited and the fallback failed too.
            Exception: the primary provider's error, unchanged, in all other cases.
        """
        primary = credentials.primary_provider
        logger.info(f"Routing fix query to {primary}")

        try:
            return await self._submit(primary, credentials.primary_api_key, prompt)
        except Exception as exc:
            if not is_rate_limited(exc) or not credentials.fallback_api_key:
                raise
            logger.warning(f"Provider {primary} rate limited ({exc}); falling back to {self.fallback_provider}")

        try:
            return await self._submit(self.fallback_provider, credentials.fallback_api_key, prompt)
        except Exception as fallback_exc:
            raise FallbackFailure(primary, self.fallback_provider, str(fallback_exc)) from fallback_exc

    async def _submit(self, tag: str, api_key: str, prompt: str) -> ModelPatch:
        provider = self._provider_factory(tag, api_key)
        try:
            return await provider.submit(prompt)
        finally:
            await provider.close()
