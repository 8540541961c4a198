"""Outbound delivery channels."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

RESEND_ENDPOINT = "https://api.resend.com/emails"


class DeliveryResult(BaseModel):
    success: bool
    error: Optional[str] = None


class EmailAdapter(Protocol):
    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        """Send a plain-text email."""


class SmsAdapter(Protocol):
    async def send(self, to: str, body: str) -> DeliveryResult:
        """Send a text message."""


def _mask(address: str, keep: int = 10) -> str:
    return address[:keep] + "..." if len(address) > keep else address


class ResendEmailAdapter:
    """Email delivery through the Resend HTTP API."""

    def __init__(
        self,
        api_key: Optional[str],
        sender: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._timeout = timeout
        self._client = client

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        if not self._api_key:
            logger.warning("Email not configured (RESEND_API_KEY missing); skipping send")
            return DeliveryResult(success=False, error="Email not configured")
        if not to or "@" not in to:
            logger.warning(f"Invalid recipient email {_mask(to or '')}; skipping send")
            return DeliveryResult(success=False, error="Invalid recipient email")

        payload = {"from": self._sender, "to": [to], "subject": subject, "text": body}
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            if self._client is not None:
                response = await self._client.post(
                    RESEND_ENDPOINT, json=payload, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(
                        RESEND_ENDPOINT, json=payload, headers=headers
                    )
        except httpx.HTTPError as exc:
            logger.error(f"Resend request to {_mask(to)} failed: {exc}")
            return DeliveryResult(success=False, error=str(exc) or type(exc).__name__)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            error = data.get("message") or f"Resend returned HTTP {response.status_code}"
            logger.error(f"Resend send to {_mask(to)} failed: {error}")
            return DeliveryResult(success=False, error=error)
        if not data.get("id"):
            return DeliveryResult(success=False, error="No id returned from Resend")
        return DeliveryResult(success=True)


class UnconfiguredSmsAdapter:
    """Placeholder used until an SMS provider is wired in."""

    async def send(self, to: str, body: str) -> DeliveryResult:
        logger.warning(f"SMS not configured; skipping send to {_mask(to, 5)}")
        return DeliveryResult(success=False, error="SMS not configured")
