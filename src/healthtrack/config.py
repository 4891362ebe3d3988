"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No YAML parsing — just plain defaults that can be overridden at
construction time.
"""

from __future__ import annotations

from dataclasses import dataclass

SDK_VERSION = "1.0.0"
DEFAULT_SERVER_URL = "/api/v1/events"

_OVERFLOW_POLICIES = {"drop_oldest", "drop_newest"}


@dataclass(frozen=True)
class SDKConfig:
    """Client pipeline settings supplied to ``HealthTrack.init``."""

    api_key: str
    server_url: str = DEFAULT_SERVER_URL
    debug: bool = False
    batch_size: int = 10
    batch_interval_ms: int = 5000
    # server rejects batches above 100 events
    max_batch_events: int = 100
    max_queue_size: int = 1000
    overflow_policy: str = "drop_oldest"
    request_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.batch_interval_ms < 1:
            raise ValueError("batch_interval_ms must be >= 1")
        if not 1 <= self.max_batch_events <= 100:
            raise ValueError("max_batch_events must be between 1 and 100")
        if self.max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        if self.overflow_policy not in _OVERFLOW_POLICIES:
            raise ValueError(
                f"overflow_policy must be one of: {', '.join(sorted(_OVERFLOW_POLICIES))}"
            )


@dataclass(frozen=True)
class IngestionConfig:
    """Limits applied by the ingestion endpoint."""

    max_batch_events: int = 100
    rate_limit: int = 1000
    rate_window_seconds: int = 60
    redis_url: str = "redis://localhost:6379"

    def __post_init__(self) -> None:
        if self.rate_limit < 1:
            raise ValueError("rate_limit must be >= 1")
        if self.rate_window_seconds < 1:
            raise ValueError("rate_window_seconds must be >= 1")


@dataclass(frozen=True)
class ForwarderConfig:
    """Retry and timeout policy shared by all platform forwarders."""

    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "healthtrack_audit.jsonl"
    enabled: bool = True
