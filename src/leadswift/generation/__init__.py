"""Proposal generators."""

from typing import Optional

import httpx

from leadswift.config import GeneratorSettings
from leadswift.errors import ConfigError

from .base import Fallback, Generated, GenerationResult, ProposalGenerator, generate_with_fallback
from .llm import OllamaProposalGenerator, OpenAIProposalGenerator
from .templates import TemplateProposalGenerator, fallback_proposal, follow_up_message, format_email_text


def build_generator(
    settings: GeneratorSettings,
    *,
    http_client: Optional[httpx.Client] = None,
    timeout: float = 60.0,
) -> ProposalGenerator:
    """Instantiate the configured generator."""
    provider = settings.provider.lower()
    if provider in ("", "template", "stub"):
        return TemplateProposalGenerator()
    if provider == "ollama":
        return OllamaProposalGenerator(
            settings.model,
            base_url=settings.base_url,
            temperature=settings.temperature,
            client=http_client,
            timeout=timeout,
        )
    if provider == "openai":
        return OpenAIProposalGenerator(
            settings.model,
            api_key=settings.api_key,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=timeout,
        )
    raise ConfigError(f"Unknown generator provider: {settings.provider}")


__all__ = [
    "Fallback",
    "Generated",
    "GenerationResult",
    "OllamaProposalGenerator",
    "OpenAIProposalGenerator",
    "ProposalGenerator",
    "TemplateProposalGenerator",
    "build_generator",
    "fallback_proposal",
    "follow_up_message",
    "format_email_text",
    "generate_with_fallback",
]
