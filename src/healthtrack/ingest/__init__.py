"""Ingestion endpoint core: models, storage and the request service."""

from healthtrack.ingest.schemas import ApiKeyRecord
from healthtrack.ingest.schemas import EventStatus
from healthtrack.ingest.schemas import Organization
from healthtrack.ingest.schemas import PlatformConfig
from healthtrack.ingest.schemas import StoredEvent
from healthtrack.ingest.service import CORS_HEADERS
from healthtrack.ingest.service import IngestionService
from healthtrack.ingest.service import IngestOutcome
from healthtrack.ingest.store import EventStore
from healthtrack.ingest.store import RedisEventStore
from healthtrack.ingest.store import StorageError

__all__ = [
    "ApiKeyRecord",
    "CORS_HEADERS",
    "EventStatus",
    "EventStore",
    "IngestOutcome",
    "IngestionService",
    "Organization",
    "PlatformConfig",
    "RedisEventStore",
    "StorageError",
    "StoredEvent",
]
