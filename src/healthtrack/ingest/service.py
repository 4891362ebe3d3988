"""Ingestion: validate, authenticate, re-scrub, persist and audit event batches.

``IngestionService.ingest`` is transport-agnostic: it takes the raw request
body plus the client's network metadata and returns an ``IngestOutcome``
with the status code, JSON body and headers to send back.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from typing import Any

from pydantic import ValidationError

from healthtrack.audit import AuditEventType
from healthtrack.audit import AuditLogger
from healthtrack.auth import authenticate_api_key
from healthtrack.auth import hash_api_key
from healthtrack.auth import key_fingerprint
from healthtrack.config import IngestionConfig
from healthtrack.consent.state import ConsentState
from healthtrack.events import EventBatch
from healthtrack.events import TrackingEvent
from healthtrack.ingest.schemas import StoredEvent
from healthtrack.ingest.store import EventStore
from healthtrack.ingest.store import StorageError
from healthtrack.observability import increment_counter
from healthtrack.observability import timed
from healthtrack.phi.classifier import PHIClassifier
from healthtrack.phi.classifier import SERVER_PROFILE
from healthtrack.phi.identifiers import anonymize_ip

logger = logging.getLogger(__name__)

CORS_HEADERS: dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Max-Age": "86400",
}


@dataclass
class IngestOutcome:
    status_code: int
    body: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=lambda: dict(CORS_HEADERS))


def _error(status_code: int, message: str, **extra: Any) -> IngestOutcome:
    return IngestOutcome(status_code=status_code, body={"error": message, **extra})


def validation_details(exc: ValidationError) -> list[dict[str, str]]:
    """Flatten pydantic errors into ``{path, message}`` pairs."""
    return [
        {
            "path": ".".join(str(part) for part in err.get("loc", ())),
            "message": str(err.get("msg", "Invalid value")),
        }
        for err in exc.errors()
    ]


def first_forwarded_ip(forwarded_for: str | None, real_ip: str | None = None) -> str | None:
    """Client IP from ``X-Forwarded-For`` (first hop) or ``X-Real-IP``."""
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return real_ip.strip() if real_ip and real_ip.strip() else None


def usage_period(at: datetime | None = None) -> str:
    return (at or datetime.now(timezone.utc)).strftime("%Y%m")


class IngestionService:
    """Accept SDK batches into the event store."""

    def __init__(
        self,
        store: EventStore,
        *,
        config: IngestionConfig | None = None,
        audit: AuditLogger | None = None,
        classifier: PHIClassifier | None = None,
    ) -> None:
        self.store = store
        self.config = config or IngestionConfig()
        self.audit = audit
        self.classifier = classifier or PHIClassifier(SERVER_PROFILE)

    @staticmethod
    def preflight() -> IngestOutcome:
        return IngestOutcome(status_code=204)

    async def ingest(
        self,
        body: bytes | str,
        *,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> IngestOutcome:
        with timed("ingest.events") as outcome:
            try:
                result = await self._ingest(body, client_ip=client_ip, user_agent=user_agent)
            except Exception:
                logger.exception("Unexpected error in events endpoint")
                result = _error(500, "Internal server error")
            outcome["ok"] = result.status_code < 500
        increment_counter(f"ingest.status.{result.status_code}")
        return result

    async def _ingest(
        self,
        body: bytes | str,
        *,
        client_ip: str | None,
        user_agent: str | None,
    ) -> IngestOutcome:
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return _error(400, "Invalid JSON body")

        try:
            batch = EventBatch.model_validate(payload)
        except ValidationError as exc:
            details = validation_details(exc)
            await self._audit_rejected(None, "validation", details=details[:10])
            return _error(400, "Validation failed", details=details)

        key_hash = hash_api_key(batch.api_key)
        count, reset_in = await self.store.hit_rate_limit(key_hash, self.config.rate_window_seconds)
        if count > self.config.rate_limit:
            logger.warning("Rate limit exceeded (key_fp=%s)", key_hash[:12])
            await self._audit_rejected(None, "rate_limited", key_fp=key_hash[:12])
            outcome = _error(429, "Rate limit exceeded", retryAfter=reset_in)
            outcome.headers.update(
                {
                    "Retry-After": str(reset_in),
                    "X-RateLimit-Limit": str(self.config.rate_limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(int(datetime.now(timezone.utc).timestamp()) + reset_in),
                }
            )
            return outcome

        auth = await authenticate_api_key(self.store, batch.api_key)
        record = auth.record
        if not auth.ok or record is None:
            await self._audit_rejected(
                record.org_id if record else None,
                "unauthorized",
                key_fp=key_fingerprint(batch.api_key),
            )
            return _error(401, auth.error or "Invalid API key")

        anonymized_ip = anonymize_ip(client_ip) if client_ip else None
        consent = batch.consent or ConsentState()
        stored = [
            self._to_stored(event, record.org_id, consent, user_agent, anonymized_ip)
            for event in batch.events
        ]

        try:
            await self.store.store_events(stored)
        except StorageError:
            logger.exception("Error inserting events for org %s", record.org_id)
            return _error(500, "Failed to store events")

        await self.store.increment_usage(record.org_id, len(stored), usage_period())
        event_ids = [event.id for event in stored]
        increment_counter("ingest.events_accepted", len(stored))
        if self.audit is not None:
            await self.audit.record(
                AuditEventType.EVENTS_RECEIVED,
                org_id=record.org_id,
                count=len(stored),
                event_ids=event_ids,
                sdk_version=batch.events[0].sdk_version,
                ip=anonymized_ip,
                user_agent=user_agent,
                scrubbed_fields=sum(len(event.scrubbed_fields) for event in stored),
            )
        logger.info("Accepted %d events for org %s", len(stored), record.org_id)

        outcome = IngestOutcome(
            status_code=202,
            body={"success": True, "eventIds": event_ids, "received": len(stored)},
        )
        outcome.headers.update(
            {
                "X-RateLimit-Limit": str(self.config.rate_limit),
                "X-RateLimit-Remaining": str(max(self.config.rate_limit - count, 0)),
            }
        )
        return outcome

    def _to_stored(
        self,
        event: TrackingEvent,
        org_id: str,
        consent: ConsentState,
        user_agent: str | None,
        ip_address: str | None,
    ) -> StoredEvent:
        """Re-scrub one event with the server profile; the client is not trusted."""
        scrubbed = self.classifier.scrub(event.properties or {})
        fields = list(dict.fromkeys([*(event.phi_scrubbed or []), *scrubbed.scrubbed_fields]))
        if scrubbed.has_phi:
            logger.debug("Server re-scrub redacted %d fields", len(scrubbed.scrubbed_fields))
        return StoredEvent(
            org_id=org_id,
            event_type=event.event_type,
            event_name=event.event_name,
            properties=scrubbed.data,
            session_id=event.anonymized_session_id,
            page_url=self.classifier.scrub_url(event.page_url).url,
            referrer=self.classifier.scrub_referrer(event.referrer),
            sdk_version=event.sdk_version,
            scrubbed_fields=fields,
            consent_state=consent,
            created_at=event.timestamp,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    async def _audit_rejected(self, org_id: str | None, reason: str, **payload: Any) -> None:
        if self.audit is None:
            return
        await self.audit.record(
            AuditEventType.EVENTS_REJECTED,
            org_id=org_id,
            reason=reason,
            **payload,
        )
