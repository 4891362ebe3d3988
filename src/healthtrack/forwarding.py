"""Forwarding job: move pending stored events out to configured platforms.

Each platform is gated by its consent category. GA4 is analytics; Meta,
TikTok and LinkedIn are marketing. An event with no eligible platform is
still marked forwarded so it leaves the queue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field

from healthtrack.audit import AuditEventType
from healthtrack.audit import AuditLogger
from healthtrack.config import ForwarderConfig
from healthtrack.consent.state import ConsentState
from healthtrack.http import HTTPTransport
from healthtrack.ingest.schemas import EventStatus
from healthtrack.ingest.schemas import StoredEvent
from healthtrack.ingest.store import EventStore
from healthtrack.platforms import FORWARDERS
from healthtrack.platforms import ForwardEvent
from healthtrack.platforms import SendResult
from healthtrack.platforms import build_forwarder

logger = logging.getLogger(__name__)

PLATFORM_CATEGORIES: dict[str, str] = {
    "ga4": "analytics",
    "meta": "marketing",
    "tiktok": "marketing",
    "linkedin": "marketing",
}


def platform_allowed(platform: str, consent: ConsentState) -> bool:
    category = PLATFORM_CATEGORIES.get(platform)
    if category == "analytics":
        return consent.analytics
    if category == "marketing":
        return consent.marketing
    return False


def to_forward_event(event: StoredEvent) -> ForwardEvent:
    return ForwardEvent(
        event_type=event.event_type,
        event_name=event.event_name,
        properties=event.properties,
        session_id=event.session_id,
        page_url=event.page_url,
        referrer=event.referrer,
        timestamp=event.created_at,
        user_agent=event.user_agent,
        ip_address=event.ip_address,
    )


@dataclass
class ForwardingReport:
    """Summary of one ``run_once`` pass."""

    org_id: str
    processed: int = 0
    forwarded: int = 0
    failed: int = 0
    platforms: dict[str, int] = field(default_factory=dict)
    errors: dict[str, list[str]] = field(default_factory=dict)


class ForwardingJob:
    def __init__(
        self,
        store: EventStore,
        *,
        config: ForwarderConfig | None = None,
        transport: HTTPTransport | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.store = store
        self.config = config or ForwarderConfig()
        self.transport = transport
        self.audit = audit

    async def run_once(self, org_id: str, limit: int = 100) -> ForwardingReport:
        """Forward up to *limit* pending events for *org_id*."""
        report = ForwardingReport(org_id=org_id)
        events = await self.store.pop_pending(org_id, limit)
        if not events:
            return report
        report.processed = len(events)

        org = await self.store.get_organization(org_id)
        salt = org.hash_salt if org is not None else ""
        if org is None:
            logger.warning("Organization %s not found, forwarding with empty salt", org_id)

        configs = [
            cfg
            for cfg in await self.store.get_platform_configs(org_id)
            if cfg.enabled and cfg.platform in FORWARDERS
        ]
        sent_to: dict[str, list[str]] = {event.id: [] for event in events}
        errors_for: dict[str, list[str]] = {event.id: [] for event in events}

        for cfg in configs:
            eligible = [e for e in events if platform_allowed(cfg.platform, e.consent_state)]
            if not eligible:
                continue
            forwarder = build_forwarder(
                cfg.platform,
                cfg.credentials,
                salt=salt,
                config=self.config,
                transport=self.transport,
            )
            try:
                result = await forwarder.send_events([to_forward_event(e) for e in eligible])
            except Exception as exc:
                logger.exception("Unexpected error forwarding to %s", cfg.platform)
                result = SendResult(success=False, errors=[f"{type(exc).__name__}: {exc}"])
            for index, event in enumerate(eligible):
                if result.event_delivered(index):
                    sent_to[event.id].append(cfg.platform)
                else:
                    errors_for[event.id].extend(
                        f"{cfg.platform}: {err}" for err in result.errors or ["delivery failed"]
                    )
            if result.event_count:
                report.platforms[cfg.platform] = result.event_count
            if not result.success:
                report.errors[cfg.platform] = list(result.errors)
            if self.audit is not None:
                await self.audit.record(
                    AuditEventType.EVENTS_FORWARDED,
                    org_id=org_id,
                    platform=cfg.platform,
                    success=result.success,
                    count=result.event_count,
                    errors=result.errors,
                )

        for event in events:
            failed = bool(errors_for[event.id])
            updated = event.model_copy(
                update={
                    "status": EventStatus.failed if failed else EventStatus.forwarded,
                    "platforms_sent": sent_to[event.id],
                    "error_message": "; ".join(errors_for[event.id]) or None,
                }
            )
            await self.store.update_event(updated)
            if failed:
                report.failed += 1
            else:
                report.forwarded += 1

        logger.info(
            "Forwarding pass org=%s processed=%d forwarded=%d failed=%d",
            org_id,
            report.processed,
            report.forwarded,
            report.failed,
        )
        return report
