"""Delivery of event batches from the SDK to the ingestion endpoint."""

from __future__ import annotations

import logging
import threading
from typing import Any

from healthtrack.http import HTTPTransport
from healthtrack.http import TransportError

logger = logging.getLogger(__name__)


class EventTransport:
    """POST batches as JSON; ``send_beacon`` is fire-and-forget for page unload."""

    def __init__(self, *, timeout_seconds: float = 10.0, http: HTTPTransport | None = None) -> None:
        self._http = http or HTTPTransport(timeout_seconds=timeout_seconds)

    async def send_batch(self, url: str, batch: dict[str, Any]) -> bool:
        """Deliver *batch*; ``True`` only for a 2xx response."""
        try:
            response = await self._http.request("POST", url, json_body=batch)
        except TransportError as exc:
            logger.warning("Error sending events: %s", exc)
            return False
        except ValueError as exc:
            logger.warning("Cannot send events to %r: %s", url, exc)
            return False
        if not response.ok:
            logger.warning("Failed to send events status=%s", response.status)
            return False
        return True

    def send_beacon(self, url: str, batch: dict[str, Any]) -> bool:
        """Queue *batch* for background delivery and return immediately.

        The outcome is never reported back; the worker thread is a daemon so
        it cannot hold the process open.
        """
        worker = threading.Thread(
            target=self._beacon_worker,
            args=(url, batch),
            name="healthtrack-beacon",
            daemon=True,
        )
        try:
            worker.start()
        except RuntimeError as exc:
            logger.warning("Beacon failed, events may be lost: %s", exc)
            return False
        return True

    def _beacon_worker(self, url: str, batch: dict[str, Any]) -> None:
        try:
            response = self._http.request_sync("POST", url, json_body=batch)
        except (TransportError, ValueError) as exc:
            logger.debug("Beacon delivery failed: %s", exc)
            return
        logger.debug("Beacon delivered status=%s", response.status)
