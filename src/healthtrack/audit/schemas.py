"""Audit record types.

Audit payloads carry counts, platform names, field paths and anonymized
network data only; raw event properties never enter the audit trail.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


class AuditEventType(str, Enum):
    EVENTS_RECEIVED = "EVENTS_RECEIVED"
    EVENTS_REJECTED = "EVENTS_REJECTED"
    EVENTS_FORWARDED = "EVENTS_FORWARDED"
    CREDENTIALS_VALIDATED = "CREDENTIALS_VALIDATED"


class AuditEvent(BaseModel):
    """One compliance-relevant action, scoped to an organization."""

    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the action happened.",
    )
    event_type: AuditEventType
    org_id: str | None = Field(
        default=None,
        description="Owning organization; None when the caller was never authenticated.",
    )
    payload: dict[str, Any] = Field(default_factory=dict)
