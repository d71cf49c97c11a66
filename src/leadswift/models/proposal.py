"""Proposal content produced by a generator."""

from pydantic import BaseModel, Field


class Proposal(BaseModel):
    """Subject and body of an outbound proposal email."""

    subject: str
    content: str
    key_points: list[str] = Field(default_factory=list)
    call_to_action: str = ""
    tone: str = "professional"

    @property
    def estimated_read_minutes(self) -> int:
        words = len(self.content.split())
        return max(1, -(-words // 200))
