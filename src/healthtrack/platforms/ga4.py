"""Google Analytics 4 Measurement Protocol forwarder."""

from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlencode

from healthtrack.events import EventType
from healthtrack.http import HTTPResponse
from healthtrack.http import TransportError
from healthtrack.platforms.base import Attempt
from healthtrack.platforms.base import CredentialCheck
from healthtrack.platforms.base import ForwardEvent
from healthtrack.platforms.base import PlatformForwarder
from healthtrack.platforms.base import SendResult

logger = logging.getLogger(__name__)

GA4_COLLECT_ENDPOINT = "https://www.google-analytics.com/mp/collect"
GA4_DEBUG_ENDPOINT = "https://www.google-analytics.com/debug/mp/collect"

MAX_NAME_LENGTH = 40
MAX_PARAM_VALUE_LENGTH = 100
_INTERNAL_PARAMS = frozenset({"conversion_value", "currency"})
_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9_]")
_LEADING_DIGITS = re.compile(r"^[0-9]+")


def sanitize_param_name(name: str) -> str:
    return _INVALID_NAME_CHARS.sub("_", name.lower())[:MAX_NAME_LENGTH]


def sanitize_event_name(name: str) -> str:
    """Lower-case ``[a-z0-9_]``, no leading digits, at most 40 chars."""
    sanitized = _LEADING_DIGITS.sub("", _INVALID_NAME_CHARS.sub("_", name.lower()))
    return sanitized[:MAX_NAME_LENGTH] or "custom_event"


def filter_params(properties: dict[str, Any] | None) -> dict[str, str | int | float | bool]:
    """Keep scalar properties only, with GA4-safe names and truncated strings."""
    filtered: dict[str, str | int | float | bool] = {}
    for key, value in (properties or {}).items():
        if key in _INTERNAL_PARAMS or value is None:
            continue
        if isinstance(value, str):
            filtered[sanitize_param_name(key)] = value[:MAX_PARAM_VALUE_LENGTH]
        elif isinstance(value, (bool, int, float)):
            filtered[sanitize_param_name(key)] = value
    return filtered


class GA4Forwarder(PlatformForwarder):
    platform = "ga4"
    display_name = "GA4"
    required_credentials = ("measurement_id", "api_secret")

    def map_event(self, event: ForwardEvent) -> dict[str, Any]:
        properties = event.properties
        if event.event_type == EventType.page_view.value:
            params: dict[str, Any] = {
                "page_location": event.page_url,
                "page_referrer": event.referrer,
                "page_title": str(properties.get("page_title") or ""),
            }
            params.update(filter_params(properties))
            return {"name": "page_view", "params": params}
        if event.event_type == EventType.conversion.value:
            params = {
                "value": properties.get("conversion_value") or 0,
                "currency": properties.get("currency") or "USD",
            }
            params.update(filter_params(properties))
            return {"name": event.event_name or "conversion", "params": params}
        return {
            "name": sanitize_event_name(event.event_name),
            "params": filter_params(properties),
        }

    def _endpoint(self, *, debug: bool) -> str:
        base = GA4_DEBUG_ENDPOINT if debug else GA4_COLLECT_ENDPOINT
        query = urlencode(
            {
                "measurement_id": self.credentials["measurement_id"],
                "api_secret": self.credentials["api_secret"],
            }
        )
        return f"{base}?{query}"

    async def _send(self, events: list[ForwardEvent]) -> SendResult:
        # One Measurement Protocol request per client id.
        by_client: dict[str, list[int]] = {}
        for index, event in enumerate(events):
            client_id = self.hashed_session_id(event.session_id)
            by_client.setdefault(client_id, []).append(index)

        total = 0
        errors: list[str] = []
        delivered: set[int] = set()
        for client_id, indices in by_client.items():
            payload = {
                "client_id": client_id,
                "events": [self.map_event(events[i]) for i in indices],
                "non_personalized_ads": True,
            }
            result = await self._deliver(
                "POST",
                self._endpoint(debug=False),
                payload=payload,
                interpret=lambda response, count=len(indices): _interpret(response, count),
            )
            total += result.event_count
            errors.extend(result.errors)
            if result.success:
                delivered.update(indices)
        return SendResult(success=not errors, event_count=total, errors=errors, delivered=delivered)

    async def validate_credentials(self) -> CredentialCheck:
        if not self.is_configured():
            return CredentialCheck(valid=False, message="GA4 not configured")
        payload = {
            "client_id": "test_client_id",
            "events": [{"name": "test_event", "params": {"test_param": "validation"}}],
        }
        try:
            response = await self._transport.request(
                "POST",
                self._endpoint(debug=True),
                json_body=payload,
                timeout_seconds=self.config.timeout_seconds,
            )
        except TransportError as exc:
            return CredentialCheck(valid=False, message=str(exc))
        data = response.json()
        if not isinstance(data, dict):
            return CredentialCheck(valid=False, message=f"GA4 returned status {response.status}")
        messages = data.get("validationMessages") or []
        if messages:
            return CredentialCheck(
                valid=False,
                message="; ".join(
                    str(m.get("description", m)) if isinstance(m, dict) else str(m)
                    for m in messages
                ),
            )
        return CredentialCheck(valid=True, message="Credentials validated successfully")


def _interpret(response: HTTPResponse, event_count: int) -> Attempt:
    if response.ok:
        return Attempt(SendResult(success=True, event_count=event_count))
    return Attempt(
        SendResult(success=False, errors=[f"GA4 returned status {response.status}"]),
        retryable=response.status >= 500,
    )
