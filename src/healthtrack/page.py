"""The embedding page the SDK runs in.

``PageContext`` stands in for the browser globals the SDK reads: location,
referrer, cookies, named globals set by consent platforms, per-tab session
storage and page-level events (``pagehide``, ``CookiebotOnAccept``...).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from collections.abc import MutableMapping
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from urllib.parse import unquote

logger = logging.getLogger(__name__)

PageListener = Callable[[], None]


class DataLayer(list):
    """Event-layer array (``dataLayer``) whose ``push`` can be observed."""

    def __init__(self, items=()) -> None:
        super().__init__(items)
        self._observers: list[Callable[[tuple[Any, ...]], None]] = []

    def push(self, *items: Any) -> int:
        self.extend(items)
        for observer in list(self._observers):
            observer(items)
        return len(self)

    def observe(self, callback: Callable[[tuple[Any, ...]], None]) -> None:
        self._observers.append(callback)


@dataclass
class PageContext:
    """Browser-like environment for one page load.

    ``session_storage`` is ``None`` when storage is unavailable (private
    browsing, sandboxed frames); the SDK then keeps identifiers in memory.
    """

    url: str = ""
    referrer: str = ""
    cookies: str = ""
    globals: dict[str, Any] = field(default_factory=dict)
    session_storage: MutableMapping[str, str] | None = field(default_factory=dict)
    _listeners: dict[str, list[PageListener]] = field(
        default_factory=dict, init=False, repr=False
    )

    def add_event_listener(self, event_name: str, listener: PageListener) -> None:
        self._listeners.setdefault(event_name, []).append(listener)

    def dispatch_event(self, event_name: str) -> None:
        """Invoke every listener for *event_name*; one failing listener does not stop the rest."""
        for listener in list(self._listeners.get(event_name, [])):
            try:
                listener()
            except Exception:
                logger.exception("Page listener for %s failed", event_name)

    def listener_count(self, event_name: str) -> int:
        return len(self._listeners.get(event_name, []))

    def get_cookie(self, name: str) -> str | None:
        """Return the URL-decoded value of cookie *name*, or ``None``."""
        for chunk in self.cookies.split(";"):
            key, sep, value = chunk.strip().partition("=")
            if sep and key == name:
                return unquote(value)
        return None
