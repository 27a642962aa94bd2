"""
Chunk translation engines.

An engine turns one chunk of source HTML into translated HTML with the same
tag structure. ``LLMTranslationEngine`` drives any ``LLMProvider``; the
engine in use is chosen once from configuration and shared through an
``EngineHandle``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from doc_translator.config import TranslationConfig
from doc_translator.errors import (
    ChunkTranslationError,
    EngineInitError,
    StructuralMismatchError,
)
from doc_translator.llm.base import Completion, LLMProvider
from doc_translator.translation import prompts
from doc_translator.translation.markup import (
    SPAN_ID_ATTR,
    count_anchors,
    describe_tag_path,
    has_translatable_text,
    is_leaf,
    labeled_spans,
    parse_json_object,
    restore_anchors,
    rewrap_single_root,
    strip_wrappers,
    tag_sequence,
)

logger = logging.getLogger(__name__)


@dataclass
class EngineResult:
    """Translated chunk plus provenance."""

    html: str
    provider: str
    model: str
    attempts: int = 1
    mode: str = "html"
    input_tokens: int = 0
    output_tokens: int = 0


class TranslationEngine(ABC):
    """Capability interface for chunk translation."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name recorded on translated chunks."""
        ...

    @property
    @abstractmethod
    def model(self) -> str:
        ...

    @abstractmethod
    async def translate_html(
        self,
        html: str,
        source_language: str,
        target_language: str,
    ) -> EngineResult:
        """
        Translate one chunk of HTML.

        Raises:
            StructuralMismatchError: If the output keeps failing validation.
            ChunkTranslationError: If the provider fails.
        """
        ...

    @abstractmethod
    async def translate_segments(
        self,
        segments: list[str],
        source_language: str,
        target_language: str,
    ) -> list[str]:
        """Translate a flat list of text segments, one output per input."""
        ...

    async def aclose(self) -> None:
        return None


class LLMTranslationEngine(TranslationEngine):
    """Translation engine backed by a chat-completion provider."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        temperature: float = 0.2,
        max_tokens: int = 2048,
        structure_attempts: int = 2,
        span_batch_threshold: int = 12,
    ):
        """
        Initialize the engine.

        Args:
            provider: LLM provider used for every request.
            temperature: Sampling temperature.
            max_tokens: Output token limit per request.
            structure_attempts: Tries per chunk before a structural mismatch
                is reported; every try after the first names the element path.
            span_batch_threshold: Chunks with at least this many labeled
                spans are translated as an id -> text map.
        """
        self._provider = provider
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._structure_attempts = max(1, structure_attempts)
        self._span_batch_threshold = span_batch_threshold

    @property
    def name(self) -> str:
        return self._provider.name

    @property
    def model(self) -> str:
        return self._provider.model

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    async def aclose(self) -> None:
        await self._provider.aclose()

    async def _chat(self, system_prompt: str, user_prompt: str) -> Completion:
        try:
            completion = await self._provider.ask(
                system_prompt,
                user_prompt,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except ChunkTranslationError:
            raise
        except Exception as e:
            raise ChunkTranslationError(
                f"Translation provider error: {e}",
                context={"provider": self._provider.name, "model": self._provider.model},
            ) from e
        if completion.truncated:
            logger.warning("%s output hit max_tokens=%d", completion.provider, self._max_tokens)
        return completion

    def _result(self, html: str, **kwargs) -> EngineResult:
        return EngineResult(html=html, provider=self.name, model=self.model, **kwargs)

    async def translate_html(
        self,
        html: str,
        source_language: str,
        target_language: str,
    ) -> EngineResult:
        if not has_translatable_text(html):
            return self._result(html, attempts=0, mode="passthrough")

        soup, spans = labeled_spans(html)
        # Only text-only spans can be rewritten in place
        if len(spans) >= self._span_batch_threshold and all(is_leaf(span) for span in spans):
            keys = [span[SPAN_ID_ATTR] for span in spans]
            texts = [span.get_text() for span in spans]
            translated = await self._translate_texts(texts, source_language, target_language, keys)
            for span, text in zip(spans, translated, strict=True):
                span.string = text
            output = str(soup)
            expected, actual = tag_sequence(html), tag_sequence(output)
            if actual != expected:
                raise StructuralMismatchError(
                    "Span translation changed the chunk structure",
                    expected=expected,
                    actual=actual,
                    context={"mode": "spans", "spans": len(spans)},
                )
            return self._result(output, mode="spans")

        return await self._translate_markup(html, source_language, target_language)

    async def _translate_markup(
        self,
        html: str,
        source_language: str,
        target_language: str,
    ) -> EngineResult:
        expected = tag_sequence(html)
        expected_anchors = count_anchors(html)
        tag_path = describe_tag_path(html)
        system_prompt = prompts.html_system_prompt(source_language, target_language)
        actual: list[str] = []
        input_tokens = output_tokens = 0

        for attempt in range(self._structure_attempts):
            response = await self._chat(
                system_prompt,
                prompts.html_user_prompt(html, tag_path, corrective=attempt > 0),
            )
            input_tokens += response.input_tokens
            output_tokens += response.output_tokens

            output = strip_wrappers(response.text)
            if not output:
                raise ChunkTranslationError("Empty translation output")
            output = rewrap_single_root(html, output)

            actual = tag_sequence(output)
            anchors = count_anchors(output)
            if actual == expected and anchors == expected_anchors:
                return self._result(
                    restore_anchors(html, output),
                    attempts=attempt + 1,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                )
            logger.warning(
                "Structure mismatch on attempt %d/%d: expected %d tags and %d anchors, got %d and %d",
                attempt + 1,
                self._structure_attempts,
                len(expected),
                expected_anchors,
                len(actual),
                anchors,
            )

        raise StructuralMismatchError(
            "Translated chunk does not preserve the source HTML structure",
            expected=expected,
            actual=actual,
            context={
                "tag_path": tag_path,
                "attempts": self._structure_attempts,
                "expected_anchors": expected_anchors,
                "anchors": anchors,
            },
        )

    async def translate_segments(
        self,
        segments: list[str],
        source_language: str,
        target_language: str,
    ) -> list[str]:
        if not segments:
            return []
        return await self._translate_texts(list(segments), source_language, target_language)

    async def _translate_texts(
        self,
        texts: list[str],
        source_language: str,
        target_language: str,
        keys: list[str] | None = None,
    ) -> list[str]:
        """Batch id -> text round trip, falling back to one request per text."""
        if keys is None or len(set(keys)) != len(keys):
            keys = [f"s{i}" for i in range(len(texts))]
        payload = dict(zip(keys, texts, strict=True))

        mapping: dict | None = None
        try:
            response = await self._chat(
                prompts.segments_system_prompt(source_language, target_language),
                prompts.segments_user_prompt(payload),
            )
            mapping = parse_json_object(response.text)
        except ChunkTranslationError as e:
            logger.warning("Batch segment request failed, translating one by one: %s", e)

        if mapping is not None and len(mapping) == len(payload) and all(k in mapping for k in keys):
            return [str(mapping[k]) for k in keys]
        if mapping is not None:
            logger.warning(
                "Batch segment response had %d entries for %d segments, translating one by one",
                len(mapping),
                len(payload),
            )

        system_prompt = prompts.text_system_prompt(source_language, target_language)
        results = []
        for text in texts:
            if not text.strip():
                results.append(text)
                continue
            response = await self._chat(system_prompt, text)
            results.append(strip_wrappers(response.text) or text)
        return results


def create_translation_engine(config: TranslationConfig) -> TranslationEngine:
    """
    Build the configured engine.

    Raises:
        EngineInitError: If the provider cannot be created (unknown type,
            missing API key).
    """
    from doc_translator.llm.factory import provider_from_config

    try:
        provider = provider_from_config(config)
    except ValueError as e:
        raise EngineInitError(
            f"Failed to initialise translation engine: {e}",
            context={"provider": str(config.provider.value)},
        ) from None
    return LLMTranslationEngine(
        provider,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        structure_attempts=config.structure_attempts,
        span_batch_threshold=config.span_batch_threshold,
    )


class EngineHandle:
    """
    Lazily constructed, process-wide translation engine.

    The factory runs at most once even when several coroutines ask for the
    engine at the same time.
    """

    def __init__(self, factory: Callable[[], TranslationEngine]):
        self._factory = factory
        self._engine: TranslationEngine | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: TranslationConfig) -> EngineHandle:
        return cls(lambda: create_translation_engine(config))

    @classmethod
    def of(cls, engine: TranslationEngine) -> EngineHandle:
        handle = cls(lambda: engine)
        handle._engine = engine
        return handle

    @property
    def initialized(self) -> bool:
        return self._engine is not None

    async def get(self) -> TranslationEngine:
        if self._engine is not None:
            return self._engine
        async with self._lock:
            if self._engine is None:
                engine = self._factory()
                logger.info("Translation engine ready: %s (%s)", engine.name, engine.model)
                self._engine = engine
        return self._engine

    async def aclose(self) -> None:
        if self._engine is not None:
            await self._engine.aclose()
            self._engine = None
