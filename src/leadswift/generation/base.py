"""Proposal generator interface and the explicit generated/fallback result."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Union

from leadswift.errors import GenerationError
from leadswift.models.opportunity import Opportunity
from leadswift.models.profile import Profile
from leadswift.models.proposal import Proposal

logger = logging.getLogger(__name__)


class ProposalGenerator(ABC):
    """Produces a proposal for an (opportunity, profile) pair."""

    name: str = ""

    @abstractmethod
    def generate(self, opportunity: Opportunity, profile: Profile) -> Proposal:
        """Return a proposal or raise GenerationError."""
        pass


@dataclass(frozen=True)
class Generated:
    """The generator produced the proposal."""

    proposal: Proposal
    generator: str


@dataclass(frozen=True)
class Fallback:
    """The generator failed; the template proposal is used instead."""

    proposal: Proposal
    error: str


GenerationResult = Union[Generated, Fallback]


def generate_with_fallback(
    generate: Callable[[], Proposal],
    fallback: Callable[[], Proposal],
    *,
    generator_name: str,
    allow_fallback: bool = True,
) -> GenerationResult:
    """
    Run `generate`; on GenerationError return Fallback(fallback()) when allowed,
    otherwise re-raise.
    """
    try:
        return Generated(proposal=generate(), generator=generator_name)
    except GenerationError as e:
        if not allow_fallback:
            raise
        logger.warning("Generator %s failed, using fallback proposal: %s", generator_name, e)
        return Fallback(proposal=fallback(), error=str(e))
