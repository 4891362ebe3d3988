"""TikTok Events API forwarder."""

from __future__ import annotations

import logging
from typing import Any

from healthtrack.events import EventType
from healthtrack.events import utc_timestamp
from healthtrack.http import HTTPResponse
from healthtrack.platforms.base import Attempt
from healthtrack.platforms.base import CredentialCheck
from healthtrack.platforms.base import ForwardEvent
from healthtrack.platforms.base import PlatformForwarder
from healthtrack.platforms.base import SendResult

logger = logging.getLogger(__name__)

TIKTOK_TRACK_ENDPOINT = "https://business-api.tiktok.com/open_api/v1.3/pixel/track/"
VALIDATION_TEST_CODE = "TEST"
RETRYABLE_ERROR_CODES = frozenset({40100, 50000})

_CONVERSION_NAMES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("purchase", "order", "payment"), "CompletePayment"),
    (("lead", "form", "submit"), "SubmitForm"),
    (("signup", "register"), "CompleteRegistration"),
    (("contact",), "Contact"),
    (("schedule", "appointment"), "SubmitForm"),
)
_PROPERTY_KEYS = (
    ("conversion_value", "value", (int, float)),
    ("currency", "currency", (str,)),
    ("content_name", "content_name", (str,)),
    ("content_category", "content_category", (str,)),
)


def map_event_name(event: ForwardEvent) -> str:
    if event.event_type == EventType.conversion.value:
        name = event.event_name.lower()
        for needles, mapped in _CONVERSION_NAMES:
            if any(needle in name for needle in needles):
                return mapped
        return "SubmitForm"
    if event.event_type == EventType.custom_event.value:
        return "ViewContent"
    return "PageView"


def map_properties(properties: dict[str, Any]) -> dict[str, Any]:
    mapped: dict[str, Any] = {}
    for source, target, types in _PROPERTY_KEYS:
        value = properties.get(source)
        if isinstance(value, types) and not isinstance(value, bool):
            mapped[target] = value
    return mapped


class TikTokForwarder(PlatformForwarder):
    platform = "tiktok"
    display_name = "TikTok Events API"
    required_credentials = ("pixel_code", "access_token")

    def map_event(self, event: ForwardEvent) -> dict[str, Any]:
        context: dict[str, Any] = {"page": {"url": event.page_url, "referrer": event.referrer}}
        if event.user_agent:
            context["user_agent"] = event.user_agent
        if event.ip_address:
            context["ip"] = event.ip_address
        mapped: dict[str, Any] = {
            "event": map_event_name(event),
            "event_id": self.event_id(event),
            "timestamp": event.timestamp,
            "context": context,
            "user": {"external_id": self.hashed_session_id(event.session_id)},
        }
        if event.event_type == EventType.conversion.value and event.properties:
            mapped["properties"] = map_properties(event.properties)
        return mapped

    async def _send(self, events: list[ForwardEvent], *, test_event_code: str | None = None) -> SendResult:
        pixel_code = self.credentials["pixel_code"]
        payload: dict[str, Any] = {
            "pixel_code": pixel_code,
            "event_source": "web",
            "event_source_id": pixel_code,
            "data": [self.map_event(event) for event in events],
        }
        code = test_event_code or self.credentials.get("test_event_code")
        if code:
            payload["test_event_code"] = code
        return await self._deliver(
            "POST",
            TIKTOK_TRACK_ENDPOINT,
            payload=payload,
            headers={"Access-Token": self.credentials["access_token"]},
            interpret=lambda response: _interpret(response, len(events)),
        )

    async def validate_credentials(self) -> CredentialCheck:
        if not self.is_configured():
            return CredentialCheck(valid=False, message="TikTok Events API not configured")
        probe = ForwardEvent(
            event_type=EventType.page_view,
            event_name="PageView",
            session_id=f"test_session_{utc_timestamp()}",
            page_url="https://example.com/test",
            timestamp=utc_timestamp(),
        )
        result = await self._send([probe], test_event_code=VALIDATION_TEST_CODE)
        if result.success:
            return CredentialCheck(valid=True, message="Credentials validated successfully")
        return CredentialCheck(
            valid=False,
            message=result.errors[0] if result.errors else "Validation failed",
        )


def _interpret(response: HTTPResponse, event_count: int) -> Attempt:
    data = response.json()
    if not isinstance(data, dict):
        return Attempt(
            SendResult(success=False, errors=[f"TikTok returned status {response.status}"]),
            retryable=response.status >= 500,
        )
    code = data.get("code")
    if code != 0:
        return Attempt(
            SendResult(success=False, errors=[f"TikTok error {code}: {data.get('message', '')}"]),
            retryable=code in RETRYABLE_ERROR_CODES,
        )
    return Attempt(
        SendResult(success=True, event_count=event_count, trace_id=data.get("request_id"))
    )
