"""Client event pipeline.

``HealthTrack`` is one explicit pipeline instance per page: it owns the
session identity, the consent manager, the PHI classifier, the pending and
ready queues and the periodic flush timer. Tracking calls are synchronous
and never raise; delivery happens on the running asyncio loop.

Queue discipline:
- events created while every consent category is denied go to ``pending``
- everything else goes to ``ready``
- a consent grant moves ``pending`` onto the tail of ``ready``
- a failed flush prepends its snapshot back onto ``ready``
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import urljoin
from urllib.parse import urlsplit
from urllib.parse import urlunsplit

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from healthtrack.config import SDK_VERSION
from healthtrack.config import SDKConfig
from healthtrack.consent.adapters import CMPAdapter
from healthtrack.consent.manager import ConsentManager
from healthtrack.consent.state import ConsentState
from healthtrack.events import MAX_NAME_LENGTH
from healthtrack.events import MAX_URL_LENGTH
from healthtrack.events import EventBatch
from healthtrack.events import EventType
from healthtrack.events import TrackingEvent
from healthtrack.events import utc_timestamp
from healthtrack.observability import timed
from healthtrack.page import PageContext
from healthtrack.phi.classifier import CLIENT_PROFILE
from healthtrack.phi.classifier import PHIClassifier
from healthtrack.phi.identifiers import client_hash
from healthtrack.phi.identifiers import generate_session_id
from healthtrack.phi.sensitive_pages import PageAction
from healthtrack.phi.sensitive_pages import SensitivePagePattern
from healthtrack.phi.sensitive_pages import SensitivePageMatcher
from healthtrack.phi.sensitive_pages import default_healthcare_patterns
from healthtrack.sdk.transport import EventTransport

logger = logging.getLogger(__name__)

SDK_LOGGER_NAME = "healthtrack"
USER_ID_KEY = "ht_user_id"
SESSION_ID_KEY = "ht_session_id"
UNLOAD_EVENTS = ("beforeunload", "pagehide")


class HealthTrack:
    """HIPAA-aware tracking pipeline bound to one ``PageContext``."""

    def __init__(
        self,
        page: PageContext | None = None,
        *,
        transport: EventTransport | None = None,
    ) -> None:
        self.page = page or PageContext()
        self.consent = ConsentManager(self.page)
        self.classifier = PHIClassifier(CLIENT_PROFILE)
        self.sensitive_pages = SensitivePageMatcher()
        self._transport = transport
        self._config: SDKConfig | None = None
        self._server_url = ""
        self._session_id = ""
        self._ready: list[TrackingEvent] = []
        self._pending: list[TrackingEvent] = []
        self._timer: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[None]] = set()

    # ---- Lifecycle ----

    @property
    def initialized(self) -> bool:
        return self._config is not None

    @property
    def config(self) -> SDKConfig | None:
        return self._config

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def ready_queue(self) -> tuple[TrackingEvent, ...]:
        return tuple(self._ready)

    @property
    def pending_queue(self) -> tuple[TrackingEvent, ...]:
        return tuple(self._pending)

    def init(self, config: SDKConfig) -> None:
        """Initialize once. A second call is a no-op that only logs a warning.

        ``config.debug`` sets the level of the ``healthtrack`` package logger,
        so it applies process-wide and the most recent ``init`` wins.
        """
        if self._config is not None:
            logger.warning("HealthTrack already initialized")
            return
        if not config.api_key:
            logger.error("API key is required")
            return

        logging.getLogger(SDK_LOGGER_NAME).setLevel(
            logging.DEBUG if config.debug else logging.WARNING
        )
        self._config = config
        self._server_url = urljoin(self.page.url, config.server_url)
        if self._transport is None:
            self._transport = EventTransport(timeout_seconds=config.request_timeout_seconds)

        self.consent.detect()
        self.consent.on_consent_change(self._on_consent_change)
        self._session_id = self._resolve_session_id()

        self._start_timer()
        for event_name in UNLOAD_EVENTS:
            self.page.add_event_listener(event_name, self._on_unload)

        self.track_page_view()
        logger.info("HealthTrack initialized")

    def stop(self) -> None:
        """Cancel the batch timer. Queued events stay queued."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def drain(self) -> None:
        """Wait for every size-triggered flush scheduled so far."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight))

    # ---- Sensitive pages ----

    def configure_sensitive_pages(self, patterns: list[SensitivePagePattern]) -> None:
        self.sensitive_pages.configure(patterns)
        logger.info("Sensitive page patterns configured count=%d", len(self.sensitive_pages))

    def add_sensitive_page_pattern(self, pattern: Any, action: PageAction | str = PageAction.strip) -> None:
        self.sensitive_pages.add(pattern, action)
        logger.info("Sensitive page pattern added action=%s", PageAction(action).value)

    def load_default_healthcare_patterns(self) -> None:
        self.configure_sensitive_pages(default_healthcare_patterns())

    # ---- Tracking ----

    def track_page_view(self, properties: dict[str, Any] | None = None) -> None:
        if not self._check_initialized():
            return
        match = self.sensitive_pages.match(self.page.url)
        if match.is_sensitive and match.action is PageAction.block:
            logger.info("Page view blocked, sensitive page")
            return
        self._queue(EventType.page_view, "page_view", properties)

    def track_event(self, event_name: str, properties: dict[str, Any] | None = None) -> None:
        if not self._check_initialized():
            return
        self._queue(EventType.custom_event, event_name, properties)

    def track_conversion(
        self,
        conversion_name: str,
        value: float | None = None,
        properties: dict[str, Any] | None = None,
    ) -> None:
        if not self._check_initialized():
            return
        merged = dict(properties or {})
        if value is not None:
            merged["conversion_value"] = value
        self._queue(EventType.conversion, conversion_name, merged)

    def identify(self, user_id: str) -> None:
        """Replace the session id with a pseudonymous hash of *user_id*."""
        if not self._check_initialized():
            return
        hashed = client_hash(user_id)
        self._session_id = hashed
        if self.page.session_storage is not None:
            self.page.session_storage[USER_ID_KEY] = hashed
        logger.info("User identified hashed_id=%s...", hashed[:8])

    def create_event(
        self,
        event_type: EventType | str,
        event_name: str,
        properties: dict[str, Any] | None = None,
    ) -> TrackingEvent:
        """Build a scrubbed event stamped with the current session and page."""
        scrubbed_properties: dict[str, Any] = {}
        scrubbed_fields: list[str] = []
        if properties:
            result = self.classifier.scrub(properties)
            scrubbed_properties = result.data
            scrubbed_fields = result.scrubbed_fields

        page_url = self.classifier.scrub_url(self.page.url).url
        referrer = self.classifier.scrub_url(self.page.referrer).url
        if self.sensitive_pages.match(self.page.url).is_sensitive:
            page_url = self.classifier.strip_click_ids(page_url)
            referrer = self.classifier.strip_click_ids(referrer)

        return TrackingEvent(
            event_type=EventType(event_type),
            event_name=event_name[:MAX_NAME_LENGTH],
            properties=scrubbed_properties,
            timestamp=utc_timestamp(),
            anonymized_session_id=self._session_id,
            page_url=fit_url(page_url),
            referrer=fit_url(referrer),
            sdk_version=SDK_VERSION,
            phi_scrubbed=scrubbed_fields or None,
        )

    # ---- Consent ----

    def set_consent(
        self,
        analytics: bool | None = None,
        marketing: bool | None = None,
    ) -> None:
        """Manual override; a grant releases pending events and flushes."""
        consent = self.consent.set_consent(analytics=analytics, marketing=marketing)
        logger.info(
            "Consent updated analytics=%s marketing=%s",
            consent.analytics,
            consent.marketing,
        )
        if (analytics or marketing) and self.initialized:
            self._release_pending()
            self._schedule_flush()

    def get_consent(self) -> ConsentState:
        return self.consent.get_consent()

    def register_cmp_adapter(self, adapter: CMPAdapter) -> None:
        self.consent.register_adapter(adapter)
        logger.info("Custom CMP adapter registered name=%s", adapter.name)

    # ---- Delivery ----

    async def flush(self) -> None:
        """Send the ready queue now; failures are re-queued, never raised."""
        if not self._ready or self._config is None or self._transport is None:
            return
        snapshot = self._ready
        self._ready = []
        chunk_size = self._config.max_batch_events
        chunks = [snapshot[i : i + chunk_size] for i in range(0, len(snapshot), chunk_size)]
        consent = self.consent.get_consent()

        for index, chunk in enumerate(chunks):
            body = self._batch_body(chunk, consent)
            if body is None:
                continue
            with timed("sdk.flush") as outcome:
                try:
                    delivered = await self._transport.send_batch(self._server_url, body)
                except Exception:
                    logger.exception("Unexpected error sending events")
                    delivered = False
                outcome["ok"] = delivered
            if not delivered:
                unsent = [event for rest in chunks[index:] for event in rest]
                self._ready = unsent + self._ready
                self._enforce_ceiling(self._ready)
                logger.warning("Re-queued %d events after failed delivery", len(unsent))
                return
            logger.info("Events sent successfully count=%d", len(chunk))

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, flush deferred")
            return
        task = loop.create_task(self.flush())
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    def _start_timer(self) -> None:
        if self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, batch timer not started")
            return
        self._timer = loop.create_task(self._timer_loop())

    async def _timer_loop(self) -> None:
        assert self._config is not None
        interval = self._config.batch_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            await self.flush()

    def _on_unload(self) -> None:
        if not self._ready or self._config is None or self._transport is None:
            return
        events = self._ready
        self._ready = []
        consent = self.consent.get_consent()
        chunk_size = self._config.max_batch_events
        for start in range(0, len(events), chunk_size):
            body = self._batch_body(events[start : start + chunk_size], consent)
            if body is not None:
                self._transport.send_beacon(self._server_url, body)
        logger.info("Events sent via beacon count=%d", len(events))

    def _batch_body(self, events: list[TrackingEvent], consent: ConsentState) -> dict[str, Any] | None:
        """Serialize a batch, dropping events that cannot be encoded as JSON."""
        assert self._config is not None
        sendable = [event for event in events if _serializable(event)]
        if not sendable:
            return None
        batch = EventBatch(api_key=self._config.api_key, events=sendable, consent=consent)
        return batch.to_wire()

    # ---- Internals ----

    def _check_initialized(self) -> bool:
        if self._config is None:
            logger.warning("HealthTrack not initialized. Call init() first.")
            return False
        return True

    def _queue(self, event_type: EventType, event_name: str, properties: dict[str, Any] | None) -> None:
        try:
            event = self.create_event(event_type, event_name, properties)
        except ValidationError as exc:
            logger.warning("Dropping invalid %s event: %s", EventType(event_type).value, exc)
            return
        if not _serializable(event):
            return

        if not self.consent.has_any_consent():
            self._pending.append(event)
            self._enforce_ceiling(self._pending)
            logger.info("Event queued pending consent name=%s", event.event_name)
            return

        self._ready.append(event)
        self._enforce_ceiling(self._ready)
        logger.info("Event queued type=%s name=%s", event.event_type, event.event_name)
        self._flush_if_full()

    def _flush_if_full(self) -> None:
        assert self._config is not None
        if len(self._ready) >= self._config.batch_size:
            self._schedule_flush()

    def _release_pending(self) -> None:
        if not self._pending:
            return
        logger.info("Flushing pending events count=%d", len(self._pending))
        self._ready.extend(self._pending)
        self._pending = []
        self._enforce_ceiling(self._ready)

    def _on_consent_change(self, consent: ConsentState) -> None:
        logger.info(
            "Consent changed analytics=%s marketing=%s",
            consent.analytics,
            consent.marketing,
        )
        if consent.any_granted:
            self._release_pending()
            self._flush_if_full()

    def _enforce_ceiling(self, queue: list[TrackingEvent]) -> None:
        assert self._config is not None
        overflow = len(queue) - self._config.max_queue_size
        if overflow <= 0:
            return
        if self._config.overflow_policy == "drop_oldest":
            del queue[:overflow]
        else:
            del queue[-overflow:]
        logger.warning(
            "Event queue full, dropped %d events policy=%s",
            overflow,
            self._config.overflow_policy,
        )

    def _resolve_session_id(self) -> str:
        storage = self.page.session_storage
        if storage is None:
            return generate_session_id()
        stored = storage.get(USER_ID_KEY) or storage.get(SESSION_ID_KEY)
        if stored:
            return stored
        session_id = generate_session_id()
        storage[SESSION_ID_KEY] = session_id
        return session_id


def fit_url(url: str) -> str:
    """Shorten *url* to the wire limit: drop query and fragment, then truncate."""
    if len(url) <= MAX_URL_LENGTH:
        return url
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))[:MAX_URL_LENGTH]


def _serializable(event: TrackingEvent) -> bool:
    try:
        event.to_wire()
    except PydanticSerializationError as exc:
        logger.warning("Dropping unserializable event name=%s: %s", event.event_name, exc)
        return False
    return True


def expose(sdk: HealthTrack, name: str = "HealthTrack") -> HealthTrack:
    """Attach *sdk* to its page's global namespace under *name*."""
    sdk.page.globals[name] = sdk
    return sdk
