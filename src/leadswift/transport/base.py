"""Abstract email transport and the in-process dry-run transport."""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class SendResult(BaseModel):
    """Outcome of one send attempt."""

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailTransport(ABC):
    """
    Standard interface for outbound email providers.
    Delivery events (opens, clicks, replies) arrive later, keyed by tracking_id.
    """

    provider: str = ""

    @abstractmethod
    def send(self, recipient: str, subject: str, body: str, tracking_id: str) -> SendResult:
        """Send one message. Provider failures come back as success=False."""
        pass

    def close(self) -> None:
        """Release network resources, if any."""


@dataclass
class SentMessage:
    recipient: str
    subject: str
    body: str
    tracking_id: str
    message_id: str


class DryRunTransport(EmailTransport):
    """
    Records messages instead of sending them.
    Used when no provider is configured, for simulations and in tests.
    """

    provider = "dry_run"

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def send(self, recipient: str, subject: str, body: str, tracking_id: str) -> SendResult:
        with self._lock:
            message_id = f"dryrun-{next(self._ids)}"
            self.sent.append(SentMessage(recipient, subject, body, tracking_id, message_id))
        logger.info("Dry run: would send %r to %s (%s)", subject, recipient, tracking_id)
        return SendResult(success=True, message_id=message_id)
