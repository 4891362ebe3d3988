"""Persistence models for the ingestion side."""

from __future__ import annotations

import uuid
from datetime import datetime
from datetime import timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from healthtrack.consent.state import ConsentState


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EventStatus(str, Enum):
    pending = "pending"
    forwarded = "forwarded"
    failed = "failed"


class StoredEvent(BaseModel):
    """An accepted event after server-side re-scrubbing."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    org_id: str
    event_type: str
    event_name: str
    properties: dict[str, Any] = Field(default_factory=dict)
    session_id: str
    page_url: str = ""
    referrer: str = ""
    sdk_version: str = ""
    scrubbed_fields: list[str] = Field(default_factory=list)
    consent_state: ConsentState = Field(default_factory=ConsentState)
    status: EventStatus = EventStatus.pending
    platforms_sent: list[str] = Field(default_factory=list)
    error_message: str | None = None
    created_at: str = Field(description="Client-side event timestamp (ISO-8601).")
    received_at: datetime = Field(default_factory=_now)
    user_agent: str | None = None
    ip_address: str | None = Field(default=None, description="Anonymized client IP.")


class ApiKeyRecord(BaseModel):
    """An organization's ingestion key; the raw key is never stored."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    org_id: str
    key_hash: str
    key_prefix: str = ""
    name: str = "default"
    created_at: datetime = Field(default_factory=_now)
    last_used_at: datetime | None = None
    revoked_at: datetime | None = None


class Organization(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    hash_salt: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        description="Per-organization salt for pseudonymous identifiers sent to platforms.",
    )
    created_at: datetime = Field(default_factory=_now)


class PlatformConfig(BaseModel):
    """Credentials for one destination platform of one organization."""

    org_id: str
    platform: str
    credentials: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    last_sync_at: datetime | None = None
