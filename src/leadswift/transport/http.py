"""HTTP email providers: SendGrid, Resend and Postmark over httpx."""

import logging
import uuid
from typing import Optional

import httpx

from leadswift.errors import ConfigError

from .base import EmailTransport, SendResult

logger = logging.getLogger(__name__)


class HttpEmailTransport(EmailTransport):
    """
    Sends through a provider's REST API.
    The tracking id travels as provider metadata so webhooks can map events back.
    """

    ENDPOINTS = {
        "sendgrid": "https://api.sendgrid.com/v3/mail/send",
        "resend": "https://api.resend.com/emails",
        "postmark": "https://api.postmarkapp.com/email",
    }

    def __init__(
        self,
        provider: str,
        api_key: Optional[str],
        from_email: str,
        from_name: str = "",
        *,
        base_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        provider = provider.lower()
        if provider not in self.ENDPOINTS:
            raise ConfigError(
                f"Unknown email provider: {provider}. Available: {list(self.ENDPOINTS.keys())}"
            )
        if not api_key:
            raise ConfigError(f"Email provider {provider} requires an API key")
        self.provider = provider
        self._api_key = api_key
        self._from_email = from_email
        self._from_name = from_name
        self._url = base_url or self.ENDPOINTS[provider]
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def _sender(self) -> str:
        return f"{self._from_name} <{self._from_email}>" if self._from_name else self._from_email

    def _headers(self) -> dict[str, str]:
        if self.provider == "postmark":
            return {
                "X-Postmark-Server-Token": self._api_key,
                "Accept": "application/json",
            }
        return {"Authorization": f"Bearer {self._api_key}"}

    def _payload(self, recipient: str, subject: str, body: str, tracking_id: str) -> dict:
        if self.provider == "sendgrid":
            return {
                "personalizations": [
                    {
                        "to": [{"email": recipient}],
                        "subject": subject,
                        "custom_args": {"tracking_id": tracking_id},
                    }
                ],
                "from": {"email": self._from_email, "name": self._from_name},
                "content": [{"type": "text/plain", "value": body}],
                "tracking_settings": {
                    "click_tracking": {"enable": True},
                    "open_tracking": {"enable": True},
                },
            }
        if self.provider == "resend":
            return {
                "from": self._sender,
                "to": [recipient],
                "subject": subject,
                "text": body,
                "tags": [{"name": "tracking_id", "value": tracking_id}],
            }
        return {
            "From": self._sender,
            "To": recipient,
            "Subject": subject,
            "TextBody": body,
            "TrackOpens": True,
            "Metadata": {"tracking_id": tracking_id},
        }

    def _message_id(self, response: httpx.Response) -> str:
        if self.provider == "sendgrid":
            return response.headers.get("x-message-id") or uuid.uuid4().hex
        try:
            data = response.json()
        except ValueError:
            return uuid.uuid4().hex
        key = "id" if self.provider == "resend" else "MessageID"
        return str(data.get(key) or uuid.uuid4().hex)

    def send(self, recipient: str, subject: str, body: str, tracking_id: str) -> SendResult:
        payload = self._payload(recipient, subject, body, tracking_id)
        try:
            resp = self._client.post(self._url, json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            msg = f"{self.provider} error: HTTP {e.response.status_code}"
            logger.warning("Send to %s failed: %s", recipient, msg)
            return SendResult(success=False, error=msg)
        except httpx.HTTPError as e:
            msg = f"{self.provider} error: {e}"
            logger.warning("Send to %s failed: %s", recipient, msg)
            return SendResult(success=False, error=msg)
        message_id = self._message_id(resp)
        logger.info("Sent %r to %s via %s (%s)", subject, recipient, self.provider, message_id)
        return SendResult(success=True, message_id=message_id)

    def close(self) -> None:
        self._client.close()
