"""Meta Conversions API forwarder.

No advanced-matching fields are ever sent: the only user datum is the salted
SHA-256 of the session id.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from healthtrack.events import EventType
from healthtrack.events import utc_timestamp
from healthtrack.http import HTTPResponse
from healthtrack.platforms.base import Attempt
from healthtrack.platforms.base import CredentialCheck
from healthtrack.platforms.base import ForwardEvent
from healthtrack.platforms.base import PlatformForwarder
from healthtrack.platforms.base import SendResult

logger = logging.getLogger(__name__)

META_API_VERSION = "v18.0"
META_GRAPH_URL = "https://graph.facebook.com"
VALIDATION_TEST_CODE = "TEST_VALIDATION"

# Rate limiting (17 user, 4 application, 613 call-rate).
RETRYABLE_ERROR_CODES = frozenset({4, 17, 613})

_CONVERSION_NAMES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("purchase", "order"), "Purchase"),
    (("lead", "form", "submit"), "Lead"),
    (("signup", "register"), "CompleteRegistration"),
    (("contact",), "Contact"),
    (("schedule", "appointment"), "Schedule"),
)


def map_event_name(event: ForwardEvent) -> str:
    if event.event_type == EventType.conversion.value:
        name = event.event_name.lower()
        for needles, mapped in _CONVERSION_NAMES:
            if any(needle in name for needle in needles):
                return mapped
        return "Lead"
    if event.event_type == EventType.custom_event.value:
        return "ViewContent"
    return "PageView"


def map_custom_data(properties: dict[str, Any]) -> dict[str, Any]:
    custom: dict[str, Any] = {}
    value = properties.get("conversion_value")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        custom["value"] = value
    currency = properties.get("currency")
    if isinstance(currency, str):
        custom["currency"] = currency
    elif custom.get("value"):
        custom["currency"] = "USD"
    for key in ("content_name", "content_category"):
        if isinstance(properties.get(key), str):
            custom[key] = properties[key]
    return custom


class MetaForwarder(PlatformForwarder):
    platform = "meta"
    display_name = "Meta CAPI"
    required_credentials = ("pixel_id", "access_token")

    def map_event(self, event: ForwardEvent) -> dict[str, Any]:
        mapped: dict[str, Any] = {
            "event_name": map_event_name(event),
            "event_time": int(event.happened_at.timestamp()),
            "event_id": self.event_id(event),
            "event_source_url": event.page_url,
            "action_source": "website",
            "user_data": {"external_id": self.hashed_session_id(event.session_id)},
        }
        if event.event_type == EventType.conversion.value:
            mapped["custom_data"] = map_custom_data(event.properties)
        return mapped

    def _endpoint(self) -> str:
        pixel_id = quote(self.credentials["pixel_id"], safe="")
        token = quote(self.credentials["access_token"], safe="")
        return f"{META_GRAPH_URL}/{META_API_VERSION}/{pixel_id}/events?access_token={token}"

    async def _send(self, events: list[ForwardEvent], *, test_event_code: str | None = None) -> SendResult:
        payload: dict[str, Any] = {"data": [self.map_event(event) for event in events]}
        code = test_event_code or self.credentials.get("test_event_code")
        if code:
            payload["test_event_code"] = code
        return await self._deliver(
            "POST",
            self._endpoint(),
            payload=payload,
            interpret=lambda response: _interpret(response, len(events)),
        )

    async def validate_credentials(self) -> CredentialCheck:
        if not self.is_configured():
            return CredentialCheck(valid=False, message="Meta CAPI not configured")
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
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        message = f"{error.get('type', 'Error')}: {error.get('message', '')}"
        return Attempt(
            SendResult(success=False, errors=[message], trace_id=error.get("fbtrace_id")),
            retryable=error.get("code") in RETRYABLE_ERROR_CODES,
        )
    if not response.ok:
        return Attempt(
            SendResult(success=False, errors=[f"Meta returned status {response.status}"]),
            retryable=response.status >= 500,
        )
    body = data if isinstance(data, dict) else {}
    return Attempt(
        SendResult(
            success=True,
            event_count=body.get("events_received") or event_count,
            trace_id=body.get("fbtrace_id"),
        )
    )
