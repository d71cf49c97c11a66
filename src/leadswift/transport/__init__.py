"""Outbound email transports."""

from typing import Optional

import httpx

from leadswift.config import EmailSettings

from .base import DryRunTransport, EmailTransport, SendResult, SentMessage
from .http import HttpEmailTransport


def build_transport(
    settings: EmailSettings,
    *,
    client: Optional[httpx.Client] = None,
    timeout: float = 30.0,
) -> EmailTransport:
    """Instantiate the configured transport; dry_run needs no credentials."""
    if settings.provider.lower() in ("", "dry_run", "none"):
        return DryRunTransport()
    return HttpEmailTransport(
        settings.provider,
        settings.api_key,
        settings.from_email,
        settings.from_name,
        base_url=settings.base_url,
        client=client,
        timeout=timeout,
    )


__all__ = [
    "DryRunTransport",
    "EmailTransport",
    "HttpEmailTransport",
    "SendResult",
    "SentMessage",
    "build_transport",
]
