"""Outbound SMS (OpenPhone) and email (Resend) gateway."""
from __future__ import annotations

from typing import List, Optional, Protocol

import httpx

from loadcover.core.config import Settings, get_settings
from loadcover.core.logging import logger


class MessagingError(Exception):
    """Raised when a provider request fails."""


class MessagingGateway(Protocol):
    async def send_sms(self, to: str, body: str) -> bool: ...

    async def send_email(self, to: str, subject: str, html: str) -> bool: ...


class HttpMessagingGateway:
    """Provider client; failures are logged and reported as ``False``, never raised."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    async def _post(self, url: str, headers: dict, payload: dict) -> dict:
        async with httpx.AsyncClient(timeout=self.settings.messaging_timeout_seconds) as client:
            response = await client.post(url, headers=headers, json=payload)
        if response.status_code >= 400:
            raise MessagingError(f"Request to {url} failed ({response.status_code}): {response.text[:400]}")
        try:
            return response.json()
        except ValueError:
            return {}

    async def send_sms(self, to: str, body: str) -> bool:
        if not to:
            return False
        if not self.settings.sms_configured():
            logger.info("SMS not configured, skipping send", to=to)
            return False
        payload = {"content": body, "from": self.settings.openphone_from_number, "to": [to]}
        headers = {"Authorization": self.settings.openphone_api_key}
        try:
            await self._post(f"{self.settings.openphone_base_url.rstrip('/')}/messages", headers, payload)
        except (MessagingError, httpx.HTTPError) as exc:
            logger.error("SMS send failed", to=to, error=str(exc))
            return False
        return True

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        return await self.send_bulk_email([to], subject, html)

    async def send_bulk_email(self, recipients: List[str], subject: str, html: str) -> bool:
        recipients = [r for r in recipients if r]
        if not recipients:
            return False
        if not self.settings.email_configured():
            logger.info("Email not configured, skipping send", to=recipients, subject=subject)
            return False
        payload = {
            "from": self.settings.email_from,
            "to": recipients,
            "subject": subject,
            "html": html,
        }
        headers = {"Authorization": f"Bearer {self.settings.resend_api_key}"}
        try:
            await self._post(f"{self.settings.resend_base_url.rstrip('/')}/emails", headers, payload)
        except (MessagingError, httpx.HTTPError) as exc:
            logger.error("Email send failed", to=recipients, subject=subject, error=str(exc))
            return False
        return True
