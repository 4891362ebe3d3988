"""Pydantic models for the SDK -> ingestion wire format.

These models define the batch contract the SDK produces and the ingestion
endpoint validates. Field names match the JSON keys on the wire; the batch
API key travels as ``apiKey``.
"""

from __future__ import annotations

from datetime import datetime
from datetime import timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from healthtrack.consent.state import ConsentState

MAX_EVENTS_PER_BATCH = 100
MAX_NAME_LENGTH = 255
MAX_URL_LENGTH = 2048


class EventType(str, Enum):
    """Kinds of tracked user action."""

    page_view = "page_view"
    custom_event = "custom_event"
    conversion = "conversion"


def utc_timestamp() -> str:
    """Return the current instant as an ISO-8601 string with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TrackingEvent(BaseModel):
    """One observed user action, already scrubbed on the client."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    event_type: EventType
    event_name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)
    properties: dict[str, Any] | None = None
    timestamp: str
    anonymized_session_id: str = Field(min_length=1, max_length=255)
    page_url: str = Field(max_length=MAX_URL_LENGTH)
    referrer: str = Field(max_length=MAX_URL_LENGTH)
    sdk_version: str = Field(max_length=50)
    phi_scrubbed: list[str] | None = None

    @field_validator("timestamp")
    @classmethod
    def _iso_timestamp(cls, value: str) -> str:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValueError("timestamp must be an ISO-8601 datetime") from exc
        if parsed.tzinfo is None:
            raise ValueError("timestamp must include a UTC offset")
        return value

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the JSON body, omitting absent optional fields."""
        return self.model_dump(mode="json", exclude_none=True)


class EventBatch(BaseModel):
    """A flushed batch: API key, 1..100 events and the consent at flush time."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(alias="apiKey", min_length=1)
    events: list[TrackingEvent] = Field(
        min_length=1,
        max_length=MAX_EVENTS_PER_BATCH,
    )
    consent: ConsentState | None = None

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "apiKey": self.api_key,
            "events": [event.to_wire() for event in self.events],
        }
        if self.consent is not None:
            body["consent"] = self.consent.model_dump()
        return body
