"""
OpenAI-compatible chat providers.

OpenAI and OpenRouter both serve the chat-completions protocol through
``AsyncOpenAI``; they differ only in base URL and model naming.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from openai import AsyncOpenAI

from doc_translator.llm.base import Completion, LLMProvider, Message

logger = logging.getLogger(__name__)


class ChatCompletionsProvider(LLMProvider):
    """Request loop with exponential backoff between attempts."""

    provider_name = "openai"
    backoff_base = 2.0

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout: float = 120.0,
        max_retries: int = 3,
        client: AsyncOpenAI | None = None,
    ):
        """
        Args:
            api_key: API key for the endpoint.
            model: Model name sent with every request.
            base_url: Override for the API base URL.
            timeout: Request timeout in seconds.
            max_retries: Attempts per request before the error is raised.
            client: Pre-built client, mainly for tests.
        """
        self._model_name = model
        self._attempts = max(1, max_retries)
        # SDK retries off; the loop below owns backoff
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    @property
    def name(self) -> str:
        return self.provider_name

    @property
    def model(self) -> str:
        return self._model_name

    async def complete(
        self,
        messages: list[Message],
        *,
        temperature: float = 0.2,
        max_tokens: int = 2048,
        **kwargs: Any,
    ) -> Completion:
        for attempt in range(1, self._attempts + 1):
            try:
                response = await self._client.chat.completions.create(
                    model=self._model_name,
                    messages=messages,  # type: ignore[arg-type]
                    temperature=temperature,
                    max_tokens=max_tokens,
                    **kwargs,
                )
            except Exception as e:
                if attempt == self._attempts:
                    raise
                delay = self.backoff_base ** (attempt - 1)
                logger.warning(
                    "%s request failed (attempt %d/%d), retrying in %.0fs: %s",
                    self.provider_name,
                    attempt,
                    self._attempts,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)
                continue

            choice = response.choices[0]
            usage = response.usage
            return Completion(
                text=(choice.message.content or "").strip(),
                provider=self.provider_name,
                model=self._model_name,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                finish_reason=choice.finish_reason,
                attempts=attempt,
            )

        raise RuntimeError("unreachable")  # pragma: no cover

    async def aclose(self) -> None:
        await self._client.close()


class OpenAIProvider(ChatCompletionsProvider):
    provider_name = "openai"


class OpenRouterProvider(ChatCompletionsProvider):
    """OpenRouter, with short aliases for common translation models."""

    provider_name = "openrouter"
    BASE_URL = "https://openrouter.ai/api/v1"

    MODELS = {
        "default": "openai/gpt-4o-mini",
        "fast": "google/gemini-flash-1.5",
        "quality": "openai/gpt-4o",
        "deepseek": "deepseek/deepseek-chat",
    }

    def __init__(self, api_key: str, model: str = "default", base_url: str | None = None, **kwargs: Any):
        super().__init__(
            api_key=api_key,
            model=self.MODELS.get(model, model),
            base_url=base_url or self.BASE_URL,
            **kwargs,
        )
