"""
brain/__init__.py — SRSForge Model Layer
"""

from __future__ import annotations

from typing import Optional

from brain.error_classifier import ErrorCategory, ErrorClassification, classify
from brain.llm_client import BaseLanguageModel, LanguageModel, collect_text
from brain.types import Message, ModelOptions, Provider, Role

__all__ = [
    "LanguageModelFactory",
    "LanguageModel",
    "BaseLanguageModel",
    "collect_text",
    "classify",
    "ErrorCategory",
    "ErrorClassification",
    "Message",
    "ModelOptions",
    "Provider",
    "Role",
]


class LanguageModelFactory:
    """Builds the configured LanguageModel adapter."""

    @staticmethod
    def create(
        provider: str,
        api_key: Optional[str],
        model: str,
        base_url: Optional[str] = None,
    ) -> BaseLanguageModel:
        provider_enum = Provider(provider)
        from brain.openai_client import OpenAIClient
        return OpenAIClient(
            api_key=api_key or "",
            model=model,
            base_url=base_url,
            provider=provider_enum.value,
        )

    @staticmethod
    def from_settings(settings) -> BaseLanguageModel:
        return LanguageModelFactory.create(
            provider=settings.default_llm_provider,
            api_key=settings.llm_api_key,
            model=settings.default_llm_model,
            base_url=settings.llm_base_url,
        )
