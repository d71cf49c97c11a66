"""Pytest fixtures for leadswift tests."""

from typing import Callable

import pytest

from leadswift.clock import ManualClock
from leadswift.config import EngineConfig
from leadswift.engine import AutomationEngine
from leadswift.errors import GenerationError
from leadswift.generation import ProposalGenerator
from leadswift.models.opportunity import ContactInfo, Opportunity
from leadswift.models.profile import Profile
from leadswift.models.proposal import Proposal
from leadswift.transport import DryRunTransport, EmailTransport, SendResult


class StubGenerator(ProposalGenerator):
    """Returns a fixed proposal and counts calls."""

    name = "stub"

    def __init__(self) -> None:
        self.calls = 0

    def generate(self, opportunity: Opportunity, profile: Profile) -> Proposal:
        self.calls += 1
        return Proposal(
            subject=f"Application for {opportunity.title}",
            content=f"Hello {opportunity.organization}, I am {profile.full_name}.",
            key_points=["Relevant experience"],
            call_to_action="Let's talk",
            tone="professional",
        )


class FailingGenerator(ProposalGenerator):
    name = "failing"

    def __init__(self) -> None:
        self.calls = 0

    def generate(self, opportunity: Opportunity, profile: Profile) -> Proposal:
        self.calls += 1
        raise GenerationError("model unavailable")


class FailingTransport(EmailTransport):
    """Every send is rejected by the provider."""

    provider = "failing"

    def __init__(self) -> None:
        self.attempts = 0

    def send(self, recipient: str, subject: str, body: str, tracking_id: str) -> SendResult:
        self.attempts += 1
        return SendResult(success=False, error="provider error: HTTP 503")


@pytest.fixture
def clock() -> ManualClock:
    """Manual clock at 2024-01-01 12:00 UTC (inside default working hours)."""
    return ManualClock()


@pytest.fixture
def profile() -> Profile:
    """Senior fintech developer profile."""
    return Profile(
        id="profile-1",
        full_name="Ada Lovelace",
        email="ada@example.com",
        skills=["Python", "React", "PostgreSQL", "AWS"],
        industries=["Fintech"],
        experience_tier="senior",
        years_experience=8,
    )


@pytest.fixture
def make_opportunity() -> Callable[..., Opportunity]:
    """Factory for opportunities that score 90 against the sample profile by default."""

    def _make(**kwargs) -> Opportunity:
        defaults = {
            "id": "opp-1",
            "title": "Senior Python Developer",
            "organization": "Acme Payments",
            "industry": "Fintech",
            "description": "Build payment APIs.",
            "skills": ["Python", "PostgreSQL"],
            "urgency": "high",
            "contact": ContactInfo(email="hiring@acme.example", contact_person="Grace"),
        }
        defaults.update(kwargs)
        return Opportunity(**defaults)

    return _make


@pytest.fixture
def opportunity(make_opportunity: Callable[..., Opportunity]) -> Opportunity:
    return make_opportunity()


@pytest.fixture
def stub_generator() -> StubGenerator:
    return StubGenerator()


@pytest.fixture
def failing_generator() -> FailingGenerator:
    return FailingGenerator()


@pytest.fixture
def transport() -> DryRunTransport:
    """Transport that records sent messages."""
    return DryRunTransport()


@pytest.fixture
def failing_transport() -> FailingTransport:
    return FailingTransport()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(max_daily_applications=5)


@pytest.fixture
def engine(
    engine_config: EngineConfig,
    clock: ManualClock,
    stub_generator: StubGenerator,
    transport: DryRunTransport,
) -> AutomationEngine:
    """Engine on an in-memory store with a manual clock, stub generator and dry-run transport."""
    eng = AutomationEngine(engine_config, clock=clock, generator=stub_generator, transport=transport)
    yield eng
    eng.close()
