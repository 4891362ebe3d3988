"""LinkedIn Conversions API forwarder. Only conversion events are sent."""

from __future__ import annotations

import logging
import math
from typing import Any

from healthtrack.events import EventType
from healthtrack.http import HTTPResponse
from healthtrack.http import TransportError
from healthtrack.platforms.base import Attempt
from healthtrack.platforms.base import CredentialCheck
from healthtrack.platforms.base import ForwardEvent
from healthtrack.platforms.base import PlatformForwarder
from healthtrack.platforms.base import SendResult

logger = logging.getLogger(__name__)

LINKEDIN_CONVERSIONS_ENDPOINT = "https://api.linkedin.com/rest/conversionEvents"
LINKEDIN_IDENTITY_ENDPOINT = "https://api.linkedin.com/v2/me"
LINKEDIN_VERSION = "202401"


def conversion_value(properties: dict[str, Any]) -> dict[str, str] | None:
    raw = properties.get("conversion_value")
    if raw is None or isinstance(raw, bool):
        return None
    try:
        amount = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(amount):
        return None
    currency = properties.get("currency")
    return {
        "currencyCode": currency if isinstance(currency, str) and currency else "USD",
        "amount": f"{amount:.2f}",
    }


class LinkedInForwarder(PlatformForwarder):
    platform = "linkedin"
    display_name = "LinkedIn"
    required_credentials = ("conversion_id", "access_token")

    def map_event(self, event: ForwardEvent) -> dict[str, Any]:
        mapped: dict[str, Any] = {
            "conversion": f"urn:li:lyndaConversion:{self.credentials['conversion_id']}",
            "conversionHappenedAt": int(event.happened_at.timestamp() * 1000),
            "eventId": self.event_id(event),
            "user": {
                "userIds": [
                    {
                        "idType": "ACXIOM_ID",
                        "idValue": self.hashed_session_id(event.session_id),
                    }
                ]
            },
        }
        value = conversion_value(event.properties)
        if value is not None:
            mapped["conversionValue"] = value
        return mapped

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials['access_token']}",
            "LinkedIn-Version": LINKEDIN_VERSION,
            "X-Restli-Protocol-Version": "2.0.0",
        }

    async def _send(self, events: list[ForwardEvent]) -> SendResult:
        conversions = [e for e in events if e.event_type == EventType.conversion.value]
        if not conversions:
            return SendResult(success=True, event_count=0)
        elements = [self.map_event(event) for event in conversions]
        return await self._deliver(
            "POST",
            LINKEDIN_CONVERSIONS_ENDPOINT,
            payload={"elements": elements},
            headers=self._headers(),
            interpret=lambda response: _interpret(response, len(elements)),
        )

    async def validate_credentials(self) -> CredentialCheck:
        if not self.is_configured():
            return CredentialCheck(valid=False, message="LinkedIn not configured")
        try:
            response = await self._transport.request(
                "GET",
                LINKEDIN_IDENTITY_ENDPOINT,
                headers={"Authorization": f"Bearer {self.credentials['access_token']}"},
                timeout_seconds=self.config.timeout_seconds,
            )
        except TransportError as exc:
            return CredentialCheck(valid=False, message=str(exc))
        if response.ok:
            return CredentialCheck(valid=True, message="Credentials validated successfully")
        if response.status == 401:
            return CredentialCheck(valid=False, message="Invalid or expired access token")
        return CredentialCheck(valid=False, message=f"LinkedIn returned status {response.status}")


def _interpret(response: HTTPResponse, event_count: int) -> Attempt:
    if response.ok:
        return Attempt(SendResult(success=True, event_count=event_count))
    data = response.json()
    message = f"LinkedIn returned status {response.status}"
    if isinstance(data, dict):
        errors = data.get("errors") or []
        if errors and isinstance(errors[0], dict) and errors[0].get("message"):
            message = errors[0]["message"]
        elif data.get("message"):
            message = data["message"]
    return Attempt(SendResult(success=False, errors=[message]), retryable=response.status >= 500)
