"""
Chat-completion backends used by the translation engine.

The engine only ever sends a system prompt plus one user message, so a
provider implements ``complete`` and inherits ``ask``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

Message = dict[str, str]


@dataclass
class Completion:
    """Text returned by one provider call, with its provenance."""

    text: str
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: str | None = None
    attempts: int = 1

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


class LLMProvider(ABC):
    """A named model endpoint."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Recorded on chunks as the machine provider."""
        ...

    @property
    @abstractmethod
    def model(self) -> str:
        ...

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        *,
        temperature: float = 0.2,
        max_tokens: int = 2048,
        **kwargs: Any,
    ) -> Completion:
        """
        Run one chat completion.

        Raises whatever the backend raises once its own retries are spent;
        the engine turns that into a chunk error.
        """
        ...

    async def ask(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.2,
        max_tokens: int = 2048,
    ) -> Completion:
        return await self.complete(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def aclose(self) -> None:
        return None
