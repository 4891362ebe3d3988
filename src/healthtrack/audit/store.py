"""Append-only JSONL audit trail."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from healthtrack.audit.schemas import AuditEvent
from healthtrack.audit.schemas import AuditEventType
from healthtrack.config import AuditConfig

logger = logging.getLogger(__name__)


class AuditLogger:
    """Writes one JSON line per ``AuditEvent``.

    File IO runs in a worker thread; an ``asyncio.Lock`` keeps lines from
    interleaving when several requests audit at once.
    """

    def __init__(self, config: AuditConfig | None = None) -> None:
        self.config = config or AuditConfig()
        self._lock = asyncio.Lock()

    async def log(self, event: AuditEvent) -> None:
        if not self.config.enabled:
            return
        line = event.model_dump_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(partial(_append_line, self.config.file_path, line))

    async def record(
        self,
        event_type: AuditEventType,
        *,
        org_id: str | None = None,
        **payload: Any,
    ) -> AuditEvent:
        """Build and log an event in one call."""
        event = AuditEvent(event_type=event_type, org_id=org_id, payload=payload)
        await self.log(event)
        return event

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        org_id: str | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[AuditEvent]:
        """Read the trail back, oldest first, keeping the last *limit* matches."""
        path = Path(self.config.file_path)
        if not path.exists():
            return []
        async with self._lock:
            raw = await asyncio.to_thread(path.read_text)

        matched: list[AuditEvent] = []
        for line_no, line in enumerate(raw.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                event = AuditEvent.model_validate_json(line)
            except ValidationError:
                logger.warning("Skipping malformed audit line %d in %s", line_no, path)
                continue
            if event_type is not None and event.event_type != event_type:
                continue
            if org_id is not None and event.org_id != org_id:
                continue
            if since is not None and event.timestamp < since:
                continue
            matched.append(event)
        if limit is not None:
            matched = matched[-limit:] if limit > 0 else []
        return matched


def _append_line(path: str, line: str) -> None:
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(line)
