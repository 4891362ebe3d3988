"""Sensitive page patterns: block or aggressively strip tracking on matching URLs."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class PageAction(str, Enum):
    block = "block"
    strip = "strip"


@dataclass(frozen=True)
class SensitivePagePattern:
    """A URL pattern and the action applied when it matches.

    String patterns compile case-insensitively.
    """

    pattern: str | re.Pattern[str]
    action: PageAction = PageAction.strip

    def compiled(self) -> re.Pattern[str]:
        if isinstance(self.pattern, re.Pattern):
            return self.pattern
        return re.compile(self.pattern, re.IGNORECASE)


@dataclass(frozen=True)
class SensitivePageMatch:
    is_sensitive: bool
    action: PageAction | None = None


_NOT_SENSITIVE = SensitivePageMatch(is_sensitive=False)


class SensitivePageMatcher:
    """Ordered pattern list; the first matching pattern decides."""

    def __init__(self, patterns: list[SensitivePagePattern] | None = None) -> None:
        self._entries: list[tuple[re.Pattern[str], PageAction]] = []
        if patterns:
            self.configure(patterns)

    def __len__(self) -> int:
        return len(self._entries)

    def configure(self, patterns: list[SensitivePagePattern]) -> None:
        """Replace the pattern list."""
        entries = []
        for item in patterns:
            compiled = _compile(item)
            if compiled is not None:
                entries.append((compiled, PageAction(item.action)))
        self._entries = entries

    def add(self, pattern: str | re.Pattern[str], action: PageAction | str = PageAction.strip) -> None:
        compiled = _compile(SensitivePagePattern(pattern, PageAction(action)))
        if compiled is not None:
            self._entries.append((compiled, PageAction(action)))

    def match(self, url: str) -> SensitivePageMatch:
        for regex, action in self._entries:
            if regex.search(url):
                return SensitivePageMatch(is_sensitive=True, action=action)
        return _NOT_SENSITIVE


def _compile(item: SensitivePagePattern) -> re.Pattern[str] | None:
    try:
        return item.compiled()
    except re.error as exc:
        logger.warning("Ignoring invalid sensitive page pattern %r: %s", item.pattern, exc)
        return None


def default_healthcare_patterns() -> list[SensitivePagePattern]:
    """Patterns covering common healthcare pages that must not be tracked."""
    block = PageAction.block
    strip = PageAction.strip
    return [
        SensitivePagePattern(re.compile(r"intake[-_]?form", re.IGNORECASE), block),
        SensitivePagePattern(re.compile(r"appointment", re.IGNORECASE), strip),
        SensitivePagePattern(re.compile(r"patient[-_]?portal", re.IGNORECASE), block),
        SensitivePagePattern(re.compile(r"medical[-_]?record", re.IGNORECASE), block),
        SensitivePagePattern(re.compile(r"prescription", re.IGNORECASE), block),
        SensitivePagePattern(re.compile(r"health[-_]?history", re.IGNORECASE), block),
        SensitivePagePattern(re.compile(r"symptom", re.IGNORECASE), strip),
        SensitivePagePattern(re.compile(r"diagnosis", re.IGNORECASE), block),
        SensitivePagePattern(re.compile(r"treatment", re.IGNORECASE), strip),
        SensitivePagePattern(re.compile(r"insurance", re.IGNORECASE), strip),
        SensitivePagePattern(re.compile(r"billing", re.IGNORECASE), strip),
        SensitivePagePattern(re.compile(r"contact[-_]?us", re.IGNORECASE), strip),
    ]
