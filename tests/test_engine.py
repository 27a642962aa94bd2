"""Tests for the LLM translation engine and markup helpers."""

import json

import pytest
from bs4 import BeautifulSoup
from conftest import ScriptedProvider

from doc_translator.config import TranslationConfig
from doc_translator.errors import ChunkTranslationError, EngineInitError, StructuralMismatchError
from doc_translator.llm import FallbackLLMProvider, create_llm_provider, provider_from_config
from doc_translator.translation import EngineHandle, LLMTranslationEngine
from doc_translator.translation.engine import create_translation_engine
from doc_translator.translation.markup import (
    describe_tag_path,
    has_translatable_text,
    rewrap_single_root,
    strip_wrappers,
)

SOURCE = "<p>Bonjour <b>monde</b></p>"
ANCHOR = '<span class="asset-anchor" data-asset="sha256:abc" data-anchor-id="anchor_1" translate="no"></span>'


def engine_for(*responses):
    provider = ScriptedProvider(list(responses))
    return LLMTranslationEngine(provider), provider


def user_prompt(request):
    return next(m["content"] for m in request if m["role"] == "user")


class TestMarkupHelpers:
    """Tests for the markup repair helpers."""

    def test_strip_fences_and_snippet(self):
        assert strip_wrappers("```html\n<snippet><p>Hi</p></snippet>\n```") == "<p>Hi</p>"

    def test_strip_document_wrapper(self):
        text = "<!DOCTYPE html><html><head></head><body><p>Hi</p></body></html>"
        assert strip_wrappers(text) == "<p>Hi</p>"

    def test_rewrap_dropped_root(self):
        assert rewrap_single_root(SOURCE, "Hello <b>world</b>") == "<p>Hello <b>world</b></p>"

    def test_rewrap_keeps_matching_root(self):
        assert rewrap_single_root(SOURCE, "<p>Hello <b>world</b></p>") == "<p>Hello <b>world</b></p>"

    def test_anchor_only_is_not_translatable(self):
        assert not has_translatable_text(ANCHOR)
        assert has_translatable_text(f"<p>a {ANCHOR}</p>")

    def test_tag_path(self):
        assert describe_tag_path(SOURCE) == "p > b"
        assert describe_tag_path("texte") == "(text only)"


class TestTranslateHtml:
    """Tests for LLMTranslationEngine.translate_html."""

    async def test_matching_structure(self):
        engine, provider = engine_for("<p>Hello <b>world</b></p>")
        result = await engine.translate_html(SOURCE, "fr", "en")

        assert result.html == "<p>Hello <b>world</b></p>"
        assert result.attempts == 1
        assert result.provider == "scripted"
        assert result.model == "scripted-1"
        assert len(provider.requests) == 1
        assert "French" in provider.requests[0][0]["content"]

    async def test_wrappers_removed_and_root_restored(self):
        engine, _ = engine_for("```html\n<snippet>Hello <b>world</b></snippet>\n```")
        result = await engine.translate_html(SOURCE, "fr", "en")
        assert result.html == "<p>Hello <b>world</b></p>"

    async def test_mismatch_retried_once_with_tag_path(self):
        engine, provider = engine_for("<p>Hello world</p>", "<p>Hello <b>world</b></p>")
        result = await engine.translate_html(SOURCE, "fr", "en")

        assert result.attempts == 2
        assert result.html == "<p>Hello <b>world</b></p>"
        assert "IMPORTANT" not in user_prompt(provider.requests[0])
        assert "p > b" in user_prompt(provider.requests[1])

    async def test_mismatch_twice_raises(self):
        engine, provider = engine_for("<p>Hello world</p>", "<div>Hello world</div>")
        with pytest.raises(StructuralMismatchError) as excinfo:
            await engine.translate_html(SOURCE, "fr", "en")

        assert excinfo.value.expected == ["p", "b"]
        assert excinfo.value.actual != ["p", "b"]
        assert excinfo.value.retryable
        assert len(provider.requests) == 2

    async def test_anchor_only_chunk_passes_through(self):
        engine, provider = engine_for()
        result = await engine.translate_html(ANCHOR, "fr", "en")

        assert result.html == ANCHOR
        assert result.mode == "passthrough"
        assert provider.requests == []

    async def test_anchor_attributes_restored(self):
        source = f"<p>Avant {ANCHOR} après</p>"
        mangled = '<p>Before <span class="asset-anchor" data-asset="other"></span> after</p>'
        engine, _ = engine_for(mangled)
        result = await engine.translate_html(source, "fr", "en")

        anchor = BeautifulSoup(result.html, "html.parser").find("span")
        assert anchor["data-asset"] == "sha256:abc"
        assert anchor["data-anchor-id"] == "anchor_1"
        assert "Before" in result.html

    async def test_dropped_anchor_is_a_mismatch(self):
        source = f"<p>Avant {ANCHOR} après</p>"
        stripped = "<p>Before <span></span> after</p>"
        engine, provider = engine_for(stripped, stripped)

        with pytest.raises(StructuralMismatchError):
            await engine.translate_html(source, "fr", "en")
        assert len(provider.requests) == 2

    async def test_dropped_anchor_recovers_on_retry(self):
        source = f"<p>Avant {ANCHOR} après</p>"
        kept = f"<p>Before {ANCHOR} after</p>"
        engine, _ = engine_for("<p>Before <span></span> after</p>", kept)

        result = await engine.translate_html(source, "fr", "en")

        assert result.attempts == 2
        assert ANCHOR in result.html

    async def test_provider_error_becomes_chunk_error(self):
        engine, _ = engine_for(RuntimeError("rate limited"))
        with pytest.raises(ChunkTranslationError, match="rate limited"):
            await engine.translate_html(SOURCE, "fr", "en")

    async def test_empty_output(self):
        engine, _ = engine_for("```\n```")
        with pytest.raises(ChunkTranslationError, match="Empty"):
            await engine.translate_html(SOURCE, "fr", "en")


class TestSpanBatches:
    """Tests for the id -> text span path used for positioned PDF text."""

    @staticmethod
    def page(count: int) -> str:
        spans = "".join(f'<span class="pdf-text" data-span-id="p1-s{i}">mot {i}</span>' for i in range(count))
        return f'<section class="pdf-page">{spans}</section>'

    async def test_batch_mapping(self):
        html = self.page(12)
        mapping = {f"p1-s{i}": f"word {i}" for i in range(12)}
        engine, provider = engine_for(json.dumps(mapping))
        result = await engine.translate_html(html, "fr", "en")

        soup = BeautifulSoup(result.html, "html.parser")
        assert [s.get_text() for s in soup.find_all("span")] == [f"word {i}" for i in range(12)]
        assert result.mode == "spans"
        assert len(provider.requests) == 1

    async def test_incomplete_batch_falls_back_per_span(self):
        html = self.page(12)
        partial = json.dumps({"p1-s0": "word 0"})
        engine, provider = engine_for(partial, *[f"word {i}" for i in range(12)])
        result = await engine.translate_html(html, "fr", "en")

        soup = BeautifulSoup(result.html, "html.parser")
        assert soup.find("span", attrs={"data-span-id": "p1-s11"}).get_text() == "word 11"
        assert len(provider.requests) == 13

    async def test_nested_markup_uses_markup_path(self):
        spans = "".join(f'<span data-span-id="s{i}">mot <b>{i}</b></span>' for i in range(12))
        html = f"<div>{spans}</div>"
        translated = html.replace("mot", "word")
        engine, provider = engine_for(translated)

        result = await engine.translate_html(html, "fr", "en")

        assert result.mode == "html"
        assert len(BeautifulSoup(result.html, "html.parser").find_all("b")) == 12
        assert "word" in result.html
        assert len(provider.requests) == 1

    async def test_below_threshold_uses_markup(self):
        html = self.page(2)
        translated = html.replace("mot", "word")
        engine, _ = engine_for(translated)
        result = await engine.translate_html(html, "fr", "en")
        assert result.mode == "html"
        assert "word 1" in result.html

    async def test_translate_segments(self):
        engine, _ = engine_for('{"s0": "one", "s1": "two"}')
        assert await engine.translate_segments(["un", "deux"], "fr", "en") == ["one", "two"]

    async def test_translate_no_segments(self):
        engine, provider = engine_for()
        assert await engine.translate_segments([], "fr", "en") == []
        assert provider.requests == []


class TestEngineSetup:
    """Tests for engine construction and the lazy handle."""

    def test_missing_api_key(self):
        with pytest.raises(EngineInitError):
            create_translation_engine(TranslationConfig(openai_api_key=""))

    def test_configured_engine(self):
        engine = create_translation_engine(TranslationConfig(openai_api_key="sk-test", model="gpt-4o"))
        assert engine.name == "openai"
        assert engine.model == "gpt-4o"

    async def test_handle_builds_once(self):
        built = []

        def factory():
            engine = LLMTranslationEngine(ScriptedProvider([]))
            built.append(engine)
            return engine

        handle = EngineHandle(factory)
        assert not handle.initialized
        first = await handle.get()
        second = await handle.get()
        assert first is second
        assert len(built) == 1

        await handle.aclose()
        assert not handle.initialized

    async def test_handle_propagates_init_error(self):
        handle = EngineHandle.from_config(TranslationConfig(openai_api_key=""))
        with pytest.raises(EngineInitError):
            await handle.get()


class TestFallbackProvider:
    """Tests for FallbackLLMProvider."""

    async def test_switches_on_failure(self):
        primary = ScriptedProvider([RuntimeError("down")])
        fallback = ScriptedProvider(["<p>Hello <b>world</b></p>"])
        engine = LLMTranslationEngine(FallbackLLMProvider(primary, fallback))

        result = await engine.translate_html(SOURCE, "fr", "en")

        assert result.html == "<p>Hello <b>world</b></p>"
        stats = engine.provider.get_stats()
        assert stats["failures"] == [1, 0]
        assert stats["served"] == [0, 1]
        assert stats["fallback_rate"] == 1.0

    async def test_both_fail(self):
        primary = ScriptedProvider([RuntimeError("down")])
        fallback = ScriptedProvider([RuntimeError("also down")])
        engine = LLMTranslationEngine(FallbackLLMProvider(primary, fallback))
        with pytest.raises(ChunkTranslationError, match="also down"):
            await engine.translate_html(SOURCE, "fr", "en")

    def test_needs_a_provider(self):
        with pytest.raises(ValueError):
            FallbackLLMProvider()


class TestProviderFactory:
    def test_single_provider(self):
        provider = provider_from_config(TranslationConfig(openai_api_key="sk-test", model="gpt-4o"))
        assert provider.name == "openai"
        assert provider.model == "gpt-4o"

    def test_chain_with_fallback(self):
        config = TranslationConfig(
            openai_api_key="sk-test",
            openrouter_api_key="or-test",
            fallback_provider="openrouter",
            fallback_model="quality",
        )
        provider = provider_from_config(config)
        assert isinstance(provider, FallbackLLMProvider)
        assert provider.name == "openai+openrouter"
        assert provider.providers[1].model == "openai/gpt-4o"

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Invalid provider type"):
            create_llm_provider("bedrock", api_key="x")

    def test_missing_fallback_key(self):
        config = TranslationConfig(openai_api_key="sk-test", fallback_provider="openrouter")
        with pytest.raises(ValueError, match="requires an API key"):
            provider_from_config(config)
