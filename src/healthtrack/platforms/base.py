"""Shared forwarder contract, result types and the retry loop."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from abc import ABC
from abc import abstractmethod
from collections.abc import Callable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from healthtrack.config import ForwarderConfig
from healthtrack.events import EventType
from healthtrack.http import HTTPResponse
from healthtrack.http import HTTPTransport
from healthtrack.http import TransportError
from healthtrack.observability import timed

logger = logging.getLogger(__name__)


class ForwardEvent(BaseModel):
    """A stored, server-scrubbed event as handed to a forwarder."""

    model_config = ConfigDict(use_enum_values=True)

    event_type: EventType
    event_name: str
    properties: dict[str, Any] = Field(default_factory=dict)
    session_id: str
    page_url: str = ""
    referrer: str = ""
    timestamp: str
    user_agent: str | None = None
    ip_address: str | None = None

    @property
    def happened_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)


@dataclass
class SendResult:
    success: bool
    event_count: int = 0
    errors: list[str] = field(default_factory=list)
    trace_id: str | None = None
    # Positions of delivered events when a send can partially succeed.
    delivered: set[int] | None = None

    def event_delivered(self, index: int) -> bool:
        if self.delivered is None:
            return self.success
        return index in self.delivered


@dataclass(frozen=True)
class CredentialCheck:
    valid: bool
    message: str


@dataclass(frozen=True)
class Attempt:
    """How the forwarder reads one HTTP response."""

    result: SendResult
    retryable: bool = False


class PlatformForwarder(ABC):
    """Base for ad/analytics destinations.

    Subclasses declare their credential keys and translate events; this
    class owns configuration state, the bounded exponential-backoff retry
    loop and the deduplication and pseudonymization helpers.
    """

    platform: str = ""
    display_name: str = ""
    required_credentials: tuple[str, ...] = ()

    def __init__(
        self,
        credentials: Mapping[str, str] | None = None,
        *,
        salt: str = "",
        config: ForwarderConfig | None = None,
        transport: HTTPTransport | None = None,
    ) -> None:
        self.config = config or ForwarderConfig()
        self.salt = salt
        self._transport = transport or HTTPTransport(timeout_seconds=self.config.timeout_seconds)
        self.credentials: dict[str, str] = {}
        if credentials:
            self.configure(credentials)

    def configure(self, credentials: Mapping[str, str]) -> None:
        self.credentials = {key: str(value) for key, value in credentials.items() if value}

    def is_configured(self) -> bool:
        return all(self.credentials.get(key) for key in self.required_credentials)

    def not_configured(self) -> SendResult:
        return SendResult(success=False, errors=[f"{self.display_name} not configured"])

    # ---- Contract ----

    async def send_events(self, events: list[ForwardEvent]) -> SendResult:
        if not self.is_configured():
            return self.not_configured()
        with timed(f"forward.{self.platform}") as outcome:
            result = await self._send(events)
            outcome["ok"] = result.success
        if result.success:
            logger.info("Forwarded %d events to %s", result.event_count, self.platform)
        else:
            logger.warning("Forwarding to %s failed: %s", self.platform, "; ".join(result.errors))
        return result

    @abstractmethod
    async def _send(self, events: list[ForwardEvent]) -> SendResult: ...

    @abstractmethod
    async def validate_credentials(self) -> CredentialCheck: ...

    # ---- Helpers ----

    @staticmethod
    def event_id(event: ForwardEvent) -> str:
        """Deterministic id so the destination can deduplicate redeliveries."""
        raw = f"{event.session_id}_{event.event_type}_{event.event_name}_{event.timestamp}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]

    def hashed_session_id(self, session_id: str) -> str:
        return hashlib.sha256((self.salt + session_id.lower()).encode("utf-8")).hexdigest()

    async def _deliver(
        self,
        method: str,
        url: str,
        *,
        payload: Any = None,
        headers: dict[str, str] | None = None,
        interpret: Callable[[HTTPResponse], Attempt],
    ) -> SendResult:
        """Send with up to ``max_retries`` attempts.

        Network failures are always retryable; *interpret* decides for HTTP
        responses. The delay before attempt ``n + 1`` is
        ``retry_delay_seconds * 2 ** (n - 1)``.
        """
        max_attempts = max(self.config.max_retries, 1)
        attempt = 1
        while True:
            try:
                response = await self._transport.request(
                    method,
                    url,
                    json_body=payload,
                    headers=headers,
                    timeout_seconds=self.config.timeout_seconds,
                )
            except TransportError as exc:
                outcome = Attempt(SendResult(success=False, errors=[str(exc)]), retryable=True)
            else:
                outcome = interpret(response)

            if not outcome.retryable or attempt >= max_attempts:
                return outcome.result
            delay = self.config.retry_delay_seconds * 2 ** (attempt - 1)
            logger.debug(
                "Retrying %s request attempt=%d delay=%.2fs",
                self.platform,
                attempt + 1,
                delay,
            )
            await asyncio.sleep(delay)
            attempt += 1
