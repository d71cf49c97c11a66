"""Deterministic proposal, follow-up and email body templates."""

from leadswift.matching import split_skills
from leadswift.models.opportunity import Opportunity, Urgency
from leadswift.models.profile import Profile
from leadswift.models.proposal import Proposal

from .base import ProposalGenerator


def fallback_proposal() -> Proposal:
    """Generic proposal used when the generator is unavailable."""
    return Proposal(
        subject="Experienced Professional Ready to Deliver Results",
        content=(
            "I am excited to apply for this opportunity and believe my experience aligns "
            "well with your requirements. I would love to discuss how I can contribute to "
            "your project's success."
        ),
        key_points=["Relevant experience", "Proven track record", "Available to start immediately"],
        call_to_action=(
            "I'd be happy to discuss this opportunity further. "
            "When would be a good time for a brief call?"
        ),
    )


def determine_tone(opportunity: Opportunity) -> str:
    """technical for tech roles, enthusiastic for urgent ones, else professional."""
    if "tech" in opportunity.industry.lower() or "developer" in opportunity.title.lower():
        return "technical"
    if opportunity.urgency == Urgency.HIGH:
        return "enthusiastic"
    return "professional"


class TemplateProposalGenerator(ProposalGenerator):
    """Fills a fixed template from the opportunity and profile. Never fails."""

    name = "template"

    def generate(self, opportunity: Opportunity, profile: Profile) -> Proposal:
        matched, _ = split_skills(opportunity.skills, profile.skills)
        org = opportunity.organization or "your team"
        greeting = (
            f"Dear {opportunity.contact.contact_person},"
            if opportunity.contact.contact_person
            else "Hello,"
        )
        lines = [
            greeting,
            "",
            f"I came across the {opportunity.title} opportunity at {org} and would like to apply.",
        ]
        if profile.years_experience:
            lines.append(
                f"I bring {profile.years_experience} years of {profile.experience_tier.value}-level experience"
                + (f" in {opportunity.industry}." if opportunity.industry else ".")
            )
        if matched:
            lines.append(f"My background covers {', '.join(matched)}, which you list as requirements.")
        if profile.bio:
            lines.append(profile.bio)
        key_points = [f"Hands-on with {s}" for s in matched[:3]] or ["Relevant experience"]
        return Proposal(
            subject=f"Application: {opportunity.title}",
            content="\n".join(lines),
            key_points=key_points,
            call_to_action="Would you be available for a short call this week?",
            tone=determine_tone(opportunity),
        )


_FOLLOW_UP_BODIES = {
    "no_response": (
        "I wanted to follow up on the proposal I sent regarding {title}. "
        "I'm still very interested and available to discuss further."
    ),
    "opened_no_reply": (
        "I noticed you had a chance to look at my proposal for {title}. "
        "Is there anything I can clarify about my approach or availability?"
    ),
    "final_follow_up": (
        "This is my last note about {title}. If the position is still open I'd be glad "
        "to help; otherwise, best of luck with the project."
    ),
}


def follow_up_message(condition: str, opportunity: Opportunity, profile: Profile) -> str:
    """Plain-text body for a follow-up of the given condition."""
    template = _FOLLOW_UP_BODIES.get(condition, _FOLLOW_UP_BODIES["no_response"])
    greeting = (
        f"Hi {opportunity.contact.contact_person},"
        if opportunity.contact.contact_person
        else "Hello,"
    )
    body = template.format(title=opportunity.title)
    return f"{greeting}\n\n{body}\n\nWould you be available for a brief call this week?\n\n{_signature(profile)}"


def format_email_text(proposal: Proposal, profile: Profile) -> str:
    """Plain-text email body for a proposal."""
    parts = [proposal.content.strip()]
    if proposal.key_points:
        parts.append("\n".join(f"- {p}" for p in proposal.key_points))
    if proposal.call_to_action:
        parts.append(proposal.call_to_action)
    parts.append(_signature(profile))
    return "\n\n".join(parts)


def _signature(profile: Profile) -> str:
    lines = ["Best regards,", profile.full_name or profile.id]
    if profile.email:
        lines.append(profile.email)
    if profile.phone:
        lines.append(profile.phone)
    return "\n".join(lines)
