"""Event sink and credential source.

Redis layout (all keys under ``healthtrack:``):

- ``apikey:{sha256}``          ApiKeyRecord JSON
- ``org:{id}``                 Organization JSON
- ``org:{id}:pending``         list of event ids awaiting forwarding (FIFO)
- ``event:{id}``               StoredEvent JSON
- ``platform:{org_id}``        hash platform -> PlatformConfig JSON
- ``ratelimit:{subject}:{n}``  fixed-window request counter
- ``usage:{org_id}:{YYYYMM}``  accepted-event counter per month
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import RedisError  # type: ignore[import-untyped]

from healthtrack.ingest.schemas import ApiKeyRecord
from healthtrack.ingest.schemas import EventStatus
from healthtrack.ingest.schemas import Organization
from healthtrack.ingest.schemas import PlatformConfig
from healthtrack.ingest.schemas import StoredEvent

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefixes
# ---------------------------------------------------------------------------

_PREFIX = "healthtrack"
_APIKEY_KEY = f"{_PREFIX}:apikey"
_ORG_KEY = f"{_PREFIX}:org"
_EVENT_KEY = f"{_PREFIX}:event"
_PLATFORM_KEY = f"{_PREFIX}:platform"
_RATELIMIT_KEY = f"{_PREFIX}:ratelimit"
_USAGE_KEY = f"{_PREFIX}:usage"


class StorageError(Exception):
    """The backing store rejected or failed an operation."""


class EventStore(Protocol):
    async def get_api_key(self, key_hash: str) -> ApiKeyRecord | None: ...

    async def save_api_key(self, record: ApiKeyRecord) -> None: ...

    async def touch_api_key(self, key_hash: str, used_at: datetime) -> None: ...

    async def get_organization(self, org_id: str) -> Organization | None: ...

    async def save_organization(self, org: Organization) -> None: ...

    async def hit_rate_limit(self, subject: str, window_seconds: int) -> tuple[int, int]:
        """Count one request; return ``(count_in_window, seconds_until_reset)``."""
        ...

    async def store_events(self, events: Sequence[StoredEvent]) -> None: ...

    async def get_event(self, event_id: str) -> StoredEvent | None: ...

    async def pop_pending(self, org_id: str, limit: int) -> list[StoredEvent]: ...

    async def update_event(self, event: StoredEvent) -> None: ...

    async def get_platform_configs(self, org_id: str) -> list[PlatformConfig]: ...

    async def save_platform_config(self, config: PlatformConfig) -> None: ...

    async def increment_usage(self, org_id: str, count: int, period: str) -> int: ...

    async def get_usage(self, org_id: str, period: str) -> int: ...

    async def close(self) -> None: ...


class RedisEventStore:
    """``EventStore`` on Redis. Event records expire after *event_ttl* seconds."""

    def __init__(self, redis: Redis, *, event_ttl: int = 30 * 24 * 3600) -> None:
        self._redis = redis
        self._event_ttl = event_ttl

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> RedisEventStore:
        return cls(Redis.from_url(redis_url), **kwargs)

    # -- API keys --

    async def get_api_key(self, key_hash: str) -> ApiKeyRecord | None:
        data = await self._redis.get(f"{_APIKEY_KEY}:{key_hash}")
        if data is None:
            return None
        return ApiKeyRecord.model_validate_json(data)

    async def save_api_key(self, record: ApiKeyRecord) -> None:
        await self._redis.set(f"{_APIKEY_KEY}:{record.key_hash}", record.model_dump_json())

    async def touch_api_key(self, key_hash: str, used_at: datetime) -> None:
        record = await self.get_api_key(key_hash)
        if record is None:
            return
        updated = record.model_copy(update={"last_used_at": used_at})
        await self.save_api_key(updated)

    # -- organizations --

    async def get_organization(self, org_id: str) -> Organization | None:
        data = await self._redis.get(f"{_ORG_KEY}:{org_id}")
        if data is None:
            return None
        return Organization.model_validate_json(data)

    async def save_organization(self, org: Organization) -> None:
        await self._redis.set(f"{_ORG_KEY}:{org.id}", org.model_dump_json())

    # -- rate limiting --

    async def hit_rate_limit(self, subject: str, window_seconds: int) -> tuple[int, int]:
        now = time.time()
        window = int(now // window_seconds)
        key = f"{_RATELIMIT_KEY}:{subject}:{window}"
        pipe = self._redis.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds, nx=True)
        count, _ = await pipe.execute()
        reset_in = max(int((window + 1) * window_seconds - now), 1)
        return int(count), reset_in

    # -- events --

    async def store_events(self, events: Sequence[StoredEvent]) -> None:
        if not events:
            return
        pipe = self._redis.pipeline(transaction=True)
        for event in events:
            pipe.set(f"{_EVENT_KEY}:{event.id}", event.model_dump_json(), ex=self._event_ttl)
            if event.status == EventStatus.pending:
                pipe.rpush(f"{_ORG_KEY}:{event.org_id}:pending", event.id)
        try:
            await pipe.execute()
        except RedisError as exc:
            raise StorageError(f"failed to store {len(events)} events") from exc

    async def get_event(self, event_id: str) -> StoredEvent | None:
        data = await self._redis.get(f"{_EVENT_KEY}:{event_id}")
        if data is None:
            return None
        return StoredEvent.model_validate_json(data)

    async def pop_pending(self, org_id: str, limit: int) -> list[StoredEvent]:
        """Atomically take up to *limit* pending events, oldest first."""
        key = f"{_ORG_KEY}:{org_id}:pending"
        pipe = self._redis.pipeline(transaction=True)
        pipe.lrange(key, 0, limit - 1)
        pipe.ltrim(key, limit, -1)
        ids, _ = await pipe.execute()
        if not ids:
            return []

        fetch = self._redis.pipeline()
        for raw_id in ids:
            event_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            fetch.get(f"{_EVENT_KEY}:{event_id}")
        results = await fetch.execute()

        events: list[StoredEvent] = []
        for raw_id, data in zip(ids, results):
            if data is None:
                logger.warning("Pending event %r expired before forwarding", raw_id)
                continue
            events.append(StoredEvent.model_validate_json(data))
        return events

    async def update_event(self, event: StoredEvent) -> None:
        await self._redis.set(
            f"{_EVENT_KEY}:{event.id}",
            event.model_dump_json(),
            ex=self._event_ttl,
        )

    # -- platform configs --

    async def get_platform_configs(self, org_id: str) -> list[PlatformConfig]:
        raw = await self._redis.hgetall(f"{_PLATFORM_KEY}:{org_id}")
        configs = [PlatformConfig.model_validate_json(value) for value in raw.values()]
        return sorted(configs, key=lambda cfg: cfg.platform)

    async def save_platform_config(self, config: PlatformConfig) -> None:
        await self._redis.hset(
            f"{_PLATFORM_KEY}:{config.org_id}",
            config.platform,
            config.model_dump_json(),
        )

    # -- usage --

    async def increment_usage(self, org_id: str, count: int, period: str) -> int:
        return int(await self._redis.incrby(f"{_USAGE_KEY}:{org_id}:{period}", count))

    async def get_usage(self, org_id: str, period: str) -> int:
        value = await self._redis.get(f"{_USAGE_KEY}:{org_id}:{period}")
        return int(value) if value is not None else 0

    # -- lifecycle --

    async def clear(self) -> None:
        """Delete every ``healthtrack:*`` key (test helper)."""
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{_PREFIX}:*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                await self._redis.delete(*batch)
                batch = []
        if batch:
            await self._redis.delete(*batch)

    async def close(self) -> None:
        await self._redis.aclose()
