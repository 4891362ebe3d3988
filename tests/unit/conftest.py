"""Unit test fixtures: in-memory store, scripted HTTP transports, SDK pages."""

from __future__ import annotations

import time
from collections.abc import Sequence
from datetime import datetime

import pytest

from healthtrack.auth import generate_api_key
from healthtrack.http import HTTPResponse
from healthtrack.http import TransportError
from healthtrack.ingest.schemas import ApiKeyRecord
from healthtrack.ingest.schemas import EventStatus
from healthtrack.ingest.schemas import Organization
from healthtrack.ingest.schemas import PlatformConfig
from healthtrack.ingest.schemas import StoredEvent
from healthtrack.ingest.store import StorageError
from healthtrack.observability import reset_metrics
from healthtrack.page import PageContext


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class InMemoryEventStore:
    """Dict-backed ``EventStore`` for tests."""

    def __init__(self) -> None:
        self.api_keys: dict[str, ApiKeyRecord] = {}
        self.orgs: dict[str, Organization] = {}
        self.events: dict[str, StoredEvent] = {}
        self.pending: dict[str, list[str]] = {}
        self.platforms: dict[str, dict[str, PlatformConfig]] = {}
        self.rate_counts: dict[tuple[str, int], int] = {}
        self.usage: dict[tuple[str, str], int] = {}
        self.fail_writes = False
        self.closed = False

    async def get_api_key(self, key_hash: str) -> ApiKeyRecord | None:
        return self.api_keys.get(key_hash)

    async def save_api_key(self, record: ApiKeyRecord) -> None:
        self.api_keys[record.key_hash] = record

    async def touch_api_key(self, key_hash: str, used_at: datetime) -> None:
        record = self.api_keys.get(key_hash)
        if record is not None:
            self.api_keys[key_hash] = record.model_copy(update={"last_used_at": used_at})

    async def get_organization(self, org_id: str) -> Organization | None:
        return self.orgs.get(org_id)

    async def save_organization(self, org: Organization) -> None:
        self.orgs[org.id] = org

    async def hit_rate_limit(self, subject: str, window_seconds: int) -> tuple[int, int]:
        window = int(time.time() // window_seconds)
        key = (subject, window)
        self.rate_counts[key] = self.rate_counts.get(key, 0) + 1
        return self.rate_counts[key], window_seconds

    async def store_events(self, events: Sequence[StoredEvent]) -> None:
        if self.fail_writes:
            raise StorageError("write rejected")
        for event in events:
            self.events[event.id] = event
            if event.status == EventStatus.pending:
                self.pending.setdefault(event.org_id, []).append(event.id)

    async def get_event(self, event_id: str) -> StoredEvent | None:
        return self.events.get(event_id)

    async def pop_pending(self, org_id: str, limit: int) -> list[StoredEvent]:
        queue = self.pending.get(org_id, [])
        taken, self.pending[org_id] = queue[:limit], queue[limit:]
        return [self.events[event_id] for event_id in taken if event_id in self.events]

    async def update_event(self, event: StoredEvent) -> None:
        self.events[event.id] = event

    async def get_platform_configs(self, org_id: str) -> list[PlatformConfig]:
        return sorted(self.platforms.get(org_id, {}).values(), key=lambda cfg: cfg.platform)

    async def save_platform_config(self, config: PlatformConfig) -> None:
        self.platforms.setdefault(config.org_id, {})[config.platform] = config

    async def increment_usage(self, org_id: str, count: int, period: str) -> int:
        key = (org_id, period)
        self.usage[key] = self.usage.get(key, 0) + count
        return self.usage[key]

    async def get_usage(self, org_id: str, period: str) -> int:
        return self.usage.get((org_id, period), 0)

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class ScriptedHTTPTransport:
    """Replays queued responses (or exceptions) and records every request.

    When the script runs out, the last entry repeats.
    """

    def __init__(self, *responses: HTTPResponse | Exception) -> None:
        self.script: list[HTTPResponse | Exception] = list(responses) or [HTTPResponse(200, "{}")]
        self.calls: list[dict] = []

    async def request(self, method, url, *, json_body=None, headers=None, timeout_seconds=None):
        self.calls.append(
            {"method": method, "url": url, "json": json_body, "headers": dict(headers or {})}
        )
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, Exception):
            raise step
        return step


class RecordingEventTransport:
    """SDK transport double: records batches, answers with ``succeed``."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.batches: list[dict] = []
        self.beacons: list[dict] = []

    async def send_batch(self, url: str, batch: dict) -> bool:
        self.batches.append({"url": url, "body": batch})
        return self.succeed

    def send_beacon(self, url: str, batch: dict) -> bool:
        self.beacons.append({"url": url, "body": batch})
        return True

    def events_sent(self) -> list[dict]:
        return [event for batch in self.batches for event in batch["body"]["events"]]

    def clear(self) -> None:
        self.batches.clear()
        self.beacons.clear()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture()
async def org_with_key(store):
    """Seed one organization with a live API key; yield ``(org, api_key, record)``."""
    org = Organization(name="Clinic", hash_salt="salt-123")
    await store.save_organization(org)
    api_key, key_hash, prefix = generate_api_key()
    record = ApiKeyRecord(org_id=org.id, key_hash=key_hash, key_prefix=prefix)
    await store.save_api_key(record)
    return org, api_key, record


@pytest.fixture()
def event_transport() -> RecordingEventTransport:
    return RecordingEventTransport()


@pytest.fixture()
def page() -> PageContext:
    return PageContext(
        url="https://clinic.example.com/services?utm_source=news",
        referrer="https://www.google.com/search?q=clinic",
    )


@pytest.fixture()
def http_transport_factory():
    return ScriptedHTTPTransport


@pytest.fixture()
def network_error() -> TransportError:
    return TransportError("network error: connection refused")


@pytest.fixture()
async def mcp_client(store, tmp_path):
    """Yield a FastMCP Client wired to the server over an in-memory store."""
    from fastmcp import Client

    from healthtrack.config import AuditConfig
    from healthtrack.server import configure
    from healthtrack.server import mcp
    from healthtrack.server import shutdown

    await configure(
        store=store,
        audit_config=AuditConfig(file_path=str(tmp_path / "audit.jsonl")),
    )
    async with Client(mcp) as client:
        yield client
    await shutdown()
