"""Integration fixtures: a Redis-backed store emptied around every test."""

from __future__ import annotations

import pytest

from healthtrack.ingest import RedisEventStore


@pytest.fixture()
async def redis_store(redis_client):
    store = RedisEventStore(redis_client, event_ttl=3600)
    await store.clear()
    yield store
    await store.clear()
