"""Consent manager: one authority for the current consent state.

Precedence is fixed: a manual ``set_consent`` call beats a detected CMP,
which beats the permissive default. Once a manual override exists, CMP
notifications are ignored for the lifetime of the manager.
"""

from __future__ import annotations

import logging
from enum import Enum

from healthtrack.consent.adapters import CMPAdapter
from healthtrack.consent.adapters import ConsentCallback
from healthtrack.consent.adapters import builtin_adapters
from healthtrack.consent.state import ConsentState
from healthtrack.page import PageContext

logger = logging.getLogger(__name__)


class ConsentAuthority(str, Enum):
    """Which source currently decides the reported consent."""

    manual = "manual"
    cmp = "cmp"
    default = "default"


class ConsentManager:
    """Resolve consent from a manual override, a detected CMP or the default."""

    def __init__(self, page: PageContext | None = None) -> None:
        self._page = page or PageContext()
        self._adapters: list[CMPAdapter] = builtin_adapters(self._page)
        self._active: CMPAdapter | None = None
        self._manual: ConsentState | None = None
        self._callbacks: list[ConsentCallback] = []

    @property
    def authority(self) -> ConsentAuthority:
        if self._manual is not None:
            return ConsentAuthority.manual
        if self._active is not None:
            return ConsentAuthority.cmp
        return ConsentAuthority.default

    @property
    def active_adapter(self) -> CMPAdapter | None:
        return self._active

    def register_adapter(self, adapter: CMPAdapter) -> None:
        """Register a host-supplied adapter ahead of the built-ins."""
        self._adapters.insert(0, adapter)
        logger.debug("Registered CMP adapter: %s", adapter.name)

    def detect(self) -> CMPAdapter | None:
        """Activate the first present adapter and subscribe to its changes."""
        for adapter in self._adapters:
            try:
                present = adapter.is_present()
            except Exception:
                logger.exception("CMP adapter %s presence check failed", adapter.name)
                continue
            if present:
                self._active = adapter
                logger.info("Detected CMP: %s", adapter.name)
                adapter.on_consent_change(self._on_cmp_change)
                return adapter
        logger.debug("No CMP detected, using default consent")
        return None

    def set_consent(
        self,
        analytics: bool | None = None,
        marketing: bool | None = None,
    ) -> ConsentState:
        """Install a permanent manual override; omitted categories are granted."""
        self._manual = ConsentState(
            analytics=True if analytics is None else analytics,
            marketing=True if marketing is None else marketing,
        )
        logger.debug(
            "Manual consent set analytics=%s marketing=%s",
            self._manual.analytics,
            self._manual.marketing,
        )
        self._notify(self._manual)
        return self._manual

    def get_consent(self) -> ConsentState:
        if self._manual is not None:
            return self._manual
        if self._active is not None:
            try:
                return self._active.get_consent()
            except Exception:
                logger.exception("CMP adapter %s failed to report consent", self._active.name)
                return ConsentState(analytics=False, marketing=False)
        return ConsentState()

    def on_consent_change(self, callback: ConsentCallback) -> None:
        self._callbacks.append(callback)

    def has_any_consent(self) -> bool:
        return self.get_consent().any_granted

    def has_analytics_consent(self) -> bool:
        return self.get_consent().analytics

    def has_marketing_consent(self) -> bool:
        return self.get_consent().marketing

    def _on_cmp_change(self, consent: ConsentState) -> None:
        if self._manual is not None:
            logger.debug("Ignoring CMP consent change, manual override in effect")
            return
        self._notify(consent)

    def _notify(self, consent: ConsentState) -> None:
        for callback in list(self._callbacks):
            try:
                callback(consent)
            except Exception:
                logger.exception("Consent change callback failed")
