"""LLM provider abstraction layer."""

from doc_translator.llm.base import Completion, LLMProvider
from doc_translator.llm.factory import (
    create_llm_provider,
    get_default_model_for_provider,
    provider_from_config,
)
from doc_translator.llm.fallback import FallbackLLMProvider

__all__ = [
    # Base
    "Completion",
    "LLMProvider",
    "FallbackLLMProvider",
    # Factory
    "create_llm_provider",
    "get_default_model_for_provider",
    "provider_from_config",
]
