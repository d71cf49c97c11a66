"""LLM-backed proposal generation. Supports Ollama (local) and OpenAI API."""

import json
import logging
import re
from typing import Any, Optional

import httpx
from openai import OpenAI, OpenAIError

from leadswift.errors import ConfigError, GenerationError
from leadswift.models.opportunity import Opportunity
from leadswift.models.profile import Profile
from leadswift.models.proposal import Proposal

from .base import ProposalGenerator
from .templates import determine_tone

logger = logging.getLogger(__name__)

OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "llama3.2"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

# Description is truncated to keep prompts bounded
_DESCRIPTION_CHARS = 4000


def build_prompt(opportunity: Opportunity, profile: Profile) -> str:
    """Build the proposal prompt."""
    skills = ", ".join(profile.skills[:15]) if profile.skills else "N/A"
    required = ", ".join(opportunity.skills[:15]) if opportunity.skills else "N/A"
    description = (opportunity.description or "")[:_DESCRIPTION_CHARS]
    tone = determine_tone(opportunity)
    return f"""Write a short, {tone} job application email. Reply with ONLY valid JSON:
{{"subject": "...", "content": "...", "key_points": ["..."], "call_to_action": "..."}}

Applicant: name="{profile.full_name or profile.id}", tier={profile.experience_tier.value}, years={profile.years_experience}, skills=[{skills}]
Opportunity: title="{opportunity.title}", organization="{opportunity.organization}", industry="{opportunity.industry}", required=[{required}]
Description: {description}

JSON:"""


def parse_proposal(text: str, tone: str = "professional") -> Proposal:
    """Parse LLM output into a Proposal. Non-JSON text becomes the body."""
    text = (text or "").strip()
    if not text:
        raise GenerationError("Empty response from model")
    match = re.search(r"\{[\s\S]*\}", text)
    raw = match.group(0) if match else text
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return Proposal(
            subject="Professional Application",
            content=text,
            key_points=["Experience", "Skills", "Availability"],
            call_to_action="Looking forward to hearing from you.",
            tone=tone,
        )
    if not isinstance(data, dict) or not data.get("content"):
        raise GenerationError("Model response missing proposal content")
    return Proposal(
        subject=str(data.get("subject") or "Professional Application"),
        content=str(data["content"]),
        key_points=[str(p) for p in data.get("key_points", data.get("keyPoints", [])) or []],
        call_to_action=str(data.get("call_to_action", data.get("callToAction", "")) or ""),
        tone=tone,
    )


class OllamaProposalGenerator(ProposalGenerator):
    """Generate with a local Ollama model over HTTP."""

    name = "ollama"

    def __init__(
        self,
        model: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        temperature: float = 0.7,
        client: Optional[httpx.Client] = None,
        timeout: float = 60.0,
    ):
        self.model = model or DEFAULT_OLLAMA_MODEL
        self.temperature = temperature
        self._url = (base_url or OLLAMA_URL).rstrip("/") + "/api/generate"
        self._client = client or httpx.Client(timeout=timeout)

    def generate(self, opportunity: Opportunity, profile: Profile) -> Proposal:
        prompt = build_prompt(opportunity, profile)
        try:
            resp = self._client.post(
                self._url,
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "stream": False,
                    "options": {"temperature": self.temperature},
                },
            )
            resp.raise_for_status()
            out: dict[str, Any] = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GenerationError(f"Ollama request failed: {e}") from e
        return parse_proposal(out.get("response", ""), determine_tone(opportunity))


class OpenAIProposalGenerator(ProposalGenerator):
    """Generate with the OpenAI chat completions API."""

    name = "openai"

    def __init__(
        self,
        model: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        client: Optional[OpenAI] = None,
        timeout: float = 60.0,
    ):
        if client is None and not api_key:
            raise ConfigError("OpenAI generator requires an API key (OPENAI_API_KEY)")
        self.model = model or DEFAULT_OPENAI_MODEL
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or OpenAI(api_key=api_key, timeout=timeout)

    def generate(self, opportunity: Opportunity, profile: Profile) -> Proposal:
        prompt = build_prompt(opportunity, profile)
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as e:
            raise GenerationError(f"OpenAI request failed: {e}") from e
        text = response.choices[0].message.content or ""
        return parse_proposal(text, determine_tone(opportunity))
