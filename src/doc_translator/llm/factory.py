"""
Builds providers from the ``translation`` config section.
"""

from __future__ import annotations

from typing import Any

from doc_translator.config import LLMProvider as LLMProviderType
from doc_translator.config import TranslationConfig
from doc_translator.llm.base import LLMProvider

DEFAULT_MODELS = {
    LLMProviderType.OPENAI: "gpt-4o-mini",
    LLMProviderType.OPENROUTER: "openai/gpt-4o-mini",
}


def _normalize_type(provider_type: LLMProviderType | str) -> LLMProviderType:
    if isinstance(provider_type, LLMProviderType):
        return provider_type
    value = provider_type.lower().replace("_", "-")
    try:
        return LLMProviderType(value)
    except ValueError:
        valid = [p.value for p in LLMProviderType]
        raise ValueError(f"Invalid provider type: {value}. Valid options: {valid}") from None


def get_default_model_for_provider(provider_type: LLMProviderType | str) -> str:
    return DEFAULT_MODELS[_normalize_type(provider_type)]


def create_llm_provider(
    provider_type: LLMProviderType | str,
    *,
    api_key: str | None = None,
    model: str | None = None,
    **kwargs: Any,
) -> LLMProvider:
    """
    Create one provider.

    Args:
        provider_type: ``openai`` or ``openrouter``.
        api_key: API key for the provider.
        model: Model name or OpenRouter alias; the provider default when omitted.
        **kwargs: Passed to the provider (base_url, timeout, max_retries).

    Raises:
        ValueError: If the provider type is unknown or the key is missing.
    """
    provider_type = _normalize_type(provider_type)
    if not api_key:
        raise ValueError(f"{provider_type.value} provider requires an API key")
    model = model or get_default_model_for_provider(provider_type)

    from doc_translator.llm.openai_compat import OpenAIProvider, OpenRouterProvider

    if provider_type == LLMProviderType.OPENAI:
        return OpenAIProvider(api_key=api_key, model=model, **kwargs)
    return OpenRouterProvider(api_key=api_key, model=model, **kwargs)


def _api_key_for(config: TranslationConfig, provider_type: LLMProviderType) -> str:
    if provider_type == LLMProviderType.OPENAI:
        return config.openai_api_key
    return config.openrouter_api_key


def provider_from_config(config: TranslationConfig) -> LLMProvider:
    """
    Build the configured provider, chained with ``fallback_provider`` if set.

    ``base_url`` only applies to the primary provider.
    """
    options = {"timeout": config.timeout_seconds, "max_retries": config.request_retries}

    primary = create_llm_provider(
        config.provider,
        api_key=_api_key_for(config, config.provider),
        model=config.model,
        base_url=config.base_url or None,
        **options,
    )
    if config.fallback_provider is None:
        return primary

    from doc_translator.llm.fallback import FallbackLLMProvider

    fallback = create_llm_provider(
        config.fallback_provider,
        api_key=_api_key_for(config, config.fallback_provider),
        model=config.fallback_model,
        **options,
    )
    return FallbackLLMProvider(primary, fallback)
