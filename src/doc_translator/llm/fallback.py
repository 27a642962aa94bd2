"""
Provider chain.

Each request goes to the first provider; when it raises, the next one in the
chain gets the same messages.
"""

from __future__ import annotations

import logging
from typing import Any

from doc_translator.llm.base import Completion, LLMProvider, Message

logger = logging.getLogger(__name__)


class FallbackLLMProvider(LLMProvider):
    """Tries ``providers`` in order until one answers."""

    def __init__(self, *providers: LLMProvider):
        if not providers:
            raise ValueError("FallbackLLMProvider needs at least one provider")
        self._providers = list(providers)
        self._served = [0] * len(providers)
        self._failures = [0] * len(providers)

    @property
    def name(self) -> str:
        return "+".join(p.name for p in self._providers)

    @property
    def model(self) -> str:
        return self._providers[0].model

    @property
    def providers(self) -> list[LLMProvider]:
        return list(self._providers)

    def get_stats(self) -> dict[str, Any]:
        """Per-position counts of answered and failed requests."""
        served = sum(self._served)
        return {
            "served": list(self._served),
            "failures": list(self._failures),
            "fallback_rate": (served - self._served[0]) / served if served else 0.0,
        }

    async def complete(
        self,
        messages: list[Message],
        *,
        temperature: float = 0.2,
        max_tokens: int = 2048,
        **kwargs: Any,
    ) -> Completion:
        errors: list[Exception] = []
        for position, provider in enumerate(self._providers):
            try:
                completion = await provider.complete(
                    messages, temperature=temperature, max_tokens=max_tokens, **kwargs
                )
            except Exception as e:
                self._failures[position] += 1
                errors.append(e)
                logger.warning("Provider %s (%s) failed: %s", provider.name, provider.model, e)
                continue

            self._served[position] += 1
            if position:
                logger.info("Request served by fallback provider %s", provider.name)
            return completion

        if len(errors) > 1:
            raise errors[-1] from errors[0]
        raise errors[0]

    async def aclose(self) -> None:
        for provider in self._providers:
            await provider.aclose()
