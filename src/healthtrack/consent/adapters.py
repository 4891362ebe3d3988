"""Consent-management platform (CMP) adapters.

Each adapter translates one platform's consent signals into a
``ConsentState`` and wires itself into that platform's native update
mechanism. Adapters are plain objects satisfying ``CMPAdapter``; the manager
probes them in order and activates the first one present on the page.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from collections.abc import Mapping
from typing import Any
from typing import Protocol
from typing import runtime_checkable
from urllib.parse import parse_qs

from healthtrack.consent.state import ConsentState
from healthtrack.page import DataLayer
from healthtrack.page import PageContext

logger = logging.getLogger(__name__)

ConsentCallback = Callable[[ConsentState], None]


@runtime_checkable
class CMPAdapter(Protocol):
    """Contract shared by built-in and host-registered adapters."""

    name: str

    def is_present(self) -> bool: ...

    def get_consent(self) -> ConsentState: ...

    def on_consent_change(self, callback: ConsentCallback) -> None: ...


def _lookup(obj: Any, key: str) -> Any:
    """Read *key* from a mapping or attribute-bearing global."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


class _CallbackFanout:
    def __init__(self) -> None:
        self._callbacks: list[ConsentCallback] = []

    def add(self, callback: ConsentCallback) -> None:
        self._callbacks.append(callback)

    def emit(self, consent: ConsentState) -> None:
        for callback in list(self._callbacks):
            callback(consent)


# ---------------------------------------------------------------------------
# Google Consent Mode v2
# ---------------------------------------------------------------------------


class GoogleConsentModeAdapter:
    """Reads ``["consent", "default"|"update", {...}]`` commands from ``dataLayer``.

    Later commands override earlier ones key by key, in array order.
    ``analytics_storage`` maps to analytics; ``ad_storage`` or
    ``ad_user_data`` maps to marketing.
    """

    name = "Google Consent Mode v2"

    def __init__(self, page: PageContext) -> None:
        self._page = page
        self._fanout = _CallbackFanout()
        self._hooked = False

    def is_present(self) -> bool:
        return isinstance(self._page.globals.get("dataLayer"), list)

    def get_consent(self) -> ConsentState:
        state = self._google_state()
        return ConsentState(
            analytics=state.get("analytics_storage") == "granted",
            marketing=(
                state.get("ad_storage") == "granted"
                or state.get("ad_user_data") == "granted"
            ),
        )

    def on_consent_change(self, callback: ConsentCallback) -> None:
        self._fanout.add(callback)
        if self._hooked:
            return
        layer = self._page.globals.get("dataLayer")
        if not isinstance(layer, list):
            return
        if not isinstance(layer, DataLayer):
            layer = DataLayer(layer)
            self._page.globals["dataLayer"] = layer
        layer.observe(self._on_push)
        self._hooked = True

    def _on_push(self, items: tuple[Any, ...]) -> None:
        if any(_is_consent_command(item, ("update",)) for item in items):
            self._fanout.emit(self.get_consent())

    def _google_state(self) -> dict[str, Any]:
        layer = self._page.globals.get("dataLayer")
        state: dict[str, Any] = {}
        if not isinstance(layer, list):
            return state
        for item in layer:
            if _is_consent_command(item, ("default", "update")):
                state.update(item[2])
        return state


def _is_consent_command(item: Any, commands: tuple[str, ...]) -> bool:
    return (
        isinstance(item, (list, tuple))
        and len(item) >= 3
        and item[0] == "consent"
        and item[1] in commands
        and isinstance(item[2], Mapping)
    )


# ---------------------------------------------------------------------------
# OneTrust
# ---------------------------------------------------------------------------

ONETRUST_ANALYTICS_GROUP = "C0002"
ONETRUST_MARKETING_GROUP = "C0004"


class OneTrustAdapter:
    """Reads active OneTrust groups from ``OptanonActiveGroups`` or the consent cookie.

    C0002 is the performance/analytics category, C0004 targeting/advertising.
    """

    name = "OneTrust"

    def __init__(self, page: PageContext) -> None:
        self._page = page
        self._fanout = _CallbackFanout()
        self._hooked = False

    def is_present(self) -> bool:
        return bool(
            self._page.globals.get("OneTrust")
            or self._page.globals.get("OptanonActiveGroups")
            or self._cookie_groups()
        )

    def get_consent(self) -> ConsentState:
        groups = self._active_groups()
        return ConsentState(
            analytics=ONETRUST_ANALYTICS_GROUP in groups,
            marketing=ONETRUST_MARKETING_GROUP in groups,
        )

    def on_consent_change(self, callback: ConsentCallback) -> None:
        self._fanout.add(callback)
        if self._hooked:
            return
        subscribe = _lookup(self._page.globals.get("OneTrust"), "OnConsentChanged")
        if callable(subscribe):
            subscribe(lambda *_: self._fanout.emit(self.get_consent()))
            self._hooked = True

    def _active_groups(self) -> set[str]:
        raw = self._page.globals.get("OptanonActiveGroups")
        if isinstance(raw, str) and raw:
            return _parse_groups(raw)
        return _parse_groups(self._cookie_groups() or "")

    def _cookie_groups(self) -> str | None:
        cookie = self._page.get_cookie("OptanonConsent")
        if not cookie:
            return None
        values = parse_qs(cookie).get("groups")
        return values[0] if values else None


def _parse_groups(raw: str) -> set[str]:
    """Parse ``,C0001,C0002,`` or cookie-style ``C0001:1,C0002:0`` into granted ids."""
    granted: set[str] = set()
    for token in raw.split(","):
        group, sep, flag = token.strip().partition(":")
        if not group:
            continue
        if sep and flag != "1":
            continue
        granted.add(group)
    return granted


# ---------------------------------------------------------------------------
# Cookiebot
# ---------------------------------------------------------------------------


class CookiebotAdapter:
    """Reads ``Cookiebot.consent`` (or ``CookieConsent``) booleans; absent means denied."""

    name = "Cookiebot"

    def __init__(self, page: PageContext) -> None:
        self._page = page
        self._fanout = _CallbackFanout()
        self._hooked = False

    def is_present(self) -> bool:
        return bool(
            self._page.globals.get("Cookiebot") or self._page.globals.get("CookieConsent")
        )

    def get_consent(self) -> ConsentState:
        consent = _lookup(self._page.globals.get("Cookiebot"), "consent")
        if consent is None:
            consent = self._page.globals.get("CookieConsent")
        return ConsentState(
            analytics=bool(_lookup(consent, "statistics") or False),
            marketing=bool(_lookup(consent, "marketing") or False),
        )

    def on_consent_change(self, callback: ConsentCallback) -> None:
        self._fanout.add(callback)
        if self._hooked:
            return
        for event_name in ("CookiebotOnAccept", "CookiebotOnDecline"):
            self._page.add_event_listener(event_name, self._emit_current)
        self._hooked = True

    def _emit_current(self) -> None:
        self._fanout.emit(self.get_consent())


def builtin_adapters(page: PageContext) -> list[CMPAdapter]:
    """Built-in adapters in probe order."""
    return [
        GoogleConsentModeAdapter(page),
        OneTrustAdapter(page),
        CookiebotAdapter(page),
    ]
