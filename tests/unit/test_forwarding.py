"""Unit tests for the forwarding job."""

from __future__ import annotations

import hashlib
import json
from http.client import IncompleteRead
from pathlib import Path

import pytest

from healthtrack.audit import AuditEventType
from healthtrack.audit import AuditLogger
from healthtrack.config import AuditConfig
from healthtrack.config import ForwarderConfig
from healthtrack.consent import ConsentState
from healthtrack.forwarding import ForwardingJob
from healthtrack.forwarding import platform_allowed
from healthtrack.forwarding import to_forward_event
from healthtrack.http import HTTPResponse
from healthtrack.ingest import PlatformConfig
from healthtrack.ingest import StoredEvent

_FAST = ForwarderConfig(max_retries=2, retry_delay_seconds=0, timeout_seconds=1)


class _RoutingHTTP:
    """Answers by host; records every request."""

    def __init__(self, routes: dict[str, HTTPResponse]) -> None:
        self.routes = routes
        self.calls: list[dict] = []

    async def request(self, method, url, *, json_body=None, headers=None, timeout_seconds=None):
        self.calls.append({"url": url, "json": json_body})
        for host, response in self.routes.items():
            if host in url:
                return response
        return HTTPResponse(404, "")

    def calls_to(self, host: str) -> list[dict]:
        return [call for call in self.calls if host in call["url"]]


_OK_ROUTES = {
    "google-analytics.com": HTTPResponse(204, ""),
    "graph.facebook.com": HTTPResponse(200, json.dumps({"events_received": 1})),
}


def _stored(
    org_id: str,
    name: str,
    consent: ConsentState | None = None,
    session_id: str = "sess-1",
) -> StoredEvent:
    return StoredEvent(
        org_id=org_id,
        event_type="conversion",
        event_name=name,
        properties={"conversion_value": 20},
        session_id=session_id,
        page_url="https://clinic.example.com/thanks",
        created_at="2026-03-01T12:00:00.000Z",
        consent_state=consent or ConsentState(),
    )


@pytest.fixture()
def audit(tmp_path: Path) -> AuditLogger:
    return AuditLogger(AuditConfig(file_path=str(tmp_path / "audit.jsonl")))


@pytest.fixture()
async def org(store, org_with_key):
    org, _, _ = org_with_key
    await store.save_platform_config(
        PlatformConfig(
            org_id=org.id,
            platform="ga4",
            credentials={"measurement_id": "G-1", "api_secret": "s"},
        )
    )
    await store.save_platform_config(
        PlatformConfig(
            org_id=org.id,
            platform="meta",
            credentials={"pixel_id": "1", "access_token": "t"},
        )
    )
    return org


class TestConsentGate:
    def test_categories(self):
        analytics_only = ConsentState(analytics=True, marketing=False)
        assert platform_allowed("ga4", analytics_only)
        assert not platform_allowed("meta", analytics_only)
        assert not platform_allowed("google_ads", ConsentState())

    def test_to_forward_event(self):
        event = _stored("o", "booked")
        forwarded = to_forward_event(event)
        assert forwarded.session_id == "sess-1"
        assert forwarded.timestamp == "2026-03-01T12:00:00.000Z"
        assert forwarded.event_type == "conversion"


class TestForwardingJob:
    async def test_empty_queue(self, store, org):
        job = ForwardingJob(store, config=_FAST, transport=_RoutingHTTP(_OK_ROUTES))
        report = await job.run_once(org.id)
        assert report.processed == 0

    async def test_forwards_to_each_enabled_platform(self, store, org, audit):
        http = _RoutingHTTP(_OK_ROUTES)
        event = _stored(org.id, "booked")
        await store.store_events([event])
        job = ForwardingJob(store, config=_FAST, transport=http, audit=audit)

        report = await job.run_once(org.id)
        assert report.processed == 1
        assert report.forwarded == 1
        assert report.platforms == {"ga4": 1, "meta": 1}
        updated = store.events[event.id]
        assert updated.status == "forwarded"
        assert sorted(updated.platforms_sent) == ["ga4", "meta"]
        assert store.pending[org.id] == []

        audited = await audit.read_events(event_type=AuditEventType.EVENTS_FORWARDED)
        assert {e.payload["platform"] for e in audited} == {"ga4", "meta"}

    async def test_uses_org_salt(self, store, org):
        http = _RoutingHTTP(_OK_ROUTES)
        await store.store_events([_stored(org.id, "booked")])
        await ForwardingJob(store, config=_FAST, transport=http).run_once(org.id)
        meta_body = http.calls_to("graph.facebook.com")[0]["json"]
        expected = hashlib.sha256(f"{org.hash_salt}sess-1".encode()).hexdigest()
        assert meta_body["data"][0]["user_data"]["external_id"] == expected

    async def test_marketing_denied_skips_ad_platforms(self, store, org):
        http = _RoutingHTTP(_OK_ROUTES)
        event = _stored(org.id, "booked", ConsentState(analytics=True, marketing=False))
        await store.store_events([event])
        report = await ForwardingJob(store, config=_FAST, transport=http).run_once(org.id)
        assert report.platforms == {"ga4": 1}
        assert http.calls_to("graph.facebook.com") == []
        assert store.events[event.id].platforms_sent == ["ga4"]

    async def test_platform_failure_marks_event_failed(self, store, org):
        routes = dict(_OK_ROUTES)
        routes["graph.facebook.com"] = HTTPResponse(
            400, json.dumps({"error": {"type": "OAuthException", "message": "bad", "code": 190}})
        )
        http = _RoutingHTTP(routes)
        event = _stored(org.id, "booked")
        await store.store_events([event])
        report = await ForwardingJob(store, config=_FAST, transport=http).run_once(org.id)

        assert report.failed == 1
        assert report.errors == {"meta": ["OAuthException: bad"]}
        updated = store.events[event.id]
        assert updated.status == "failed"
        assert updated.platforms_sent == ["ga4"]
        assert updated.error_message == "meta: OAuthException: bad"

    async def test_disabled_and_credential_only_platforms_are_skipped(self, store, org_with_key):
        org, _, _ = org_with_key
        await store.save_platform_config(
            PlatformConfig(org_id=org.id, platform="ga4", enabled=False)
        )
        await store.save_platform_config(
            PlatformConfig(org_id=org.id, platform="google_ads", credentials={"customer_id": "1"})
        )
        http = _RoutingHTTP(_OK_ROUTES)
        event = _stored(org.id, "booked")
        await store.store_events([event])
        report = await ForwardingJob(store, config=_FAST, transport=http).run_once(org.id)
        assert http.calls == []
        assert report.forwarded == 1
        assert store.events[event.id].platforms_sent == []

    async def test_respects_limit(self, store, org):
        http = _RoutingHTTP(_OK_ROUTES)
        await store.store_events([_stored(org.id, f"e{i}") for i in range(3)])
        report = await ForwardingJob(store, config=_FAST, transport=http).run_once(org.id, limit=2)
        assert report.processed == 2
        assert len(store.pending[org.id]) == 1

    async def test_unexpected_transport_error_marks_events_failed(
        self, store, org_with_key, http_transport_factory
    ):
        org, _, _ = org_with_key
        await store.save_platform_config(
            PlatformConfig(
                org_id=org.id,
                platform="ga4",
                credentials={"measurement_id": "G-1", "api_secret": "s"},
            )
        )
        event = _stored(org.id, "booked")
        await store.store_events([event])
        transport = http_transport_factory(IncompleteRead(b""))

        report = await ForwardingJob(store, config=_FAST, transport=transport).run_once(org.id)
        assert report.failed == 1
        assert report.errors["ga4"][0].startswith("IncompleteRead")
        updated = store.events[event.id]
        assert updated.status == "failed"
        assert updated.error_message.startswith("ga4: IncompleteRead")
        assert store.pending[org.id] == []

    async def test_partial_ga4_delivery_only_fails_undelivered_events(
        self, store, org_with_key, http_transport_factory
    ):
        org, _, _ = org_with_key
        await store.save_platform_config(
            PlatformConfig(
                org_id=org.id,
                platform="ga4",
                credentials={"measurement_id": "G-1", "api_secret": "s"},
            )
        )
        delivered = _stored(org.id, "booked")
        rejected = _stored(org.id, "booked", session_id="sess-2")
        await store.store_events([delivered, rejected])
        transport = http_transport_factory(HTTPResponse(204, ""), HTTPResponse(400, ""))

        report = await ForwardingJob(store, config=_FAST, transport=transport).run_once(org.id)
        assert report.forwarded == 1
        assert report.failed == 1
        assert report.platforms == {"ga4": 1}
        assert store.events[delivered.id].status == "forwarded"
        assert store.events[delivered.id].platforms_sent == ["ga4"]
        assert store.events[rejected.id].status == "failed"
        assert store.events[rejected.id].error_message == "ga4: GA4 returned status 400"
