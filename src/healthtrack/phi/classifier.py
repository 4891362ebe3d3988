"""PHI classifier — field-name and value-pattern detection plus scrubbing.

One classifier serves both deployment sites. A ``ClassifierProfile`` selects
the capability set: the browser-side SDK matches field names greedily by
substring and replaces a whole value on any hit, while the server matches
field names exactly, also looks for card numbers, and replaces only the
matched substrings with typed sentinels.

Nothing in this module raises on malformed input. URL parse failures fail
open: the original string is returned and a debug record is emitted.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from urllib.parse import parse_qsl
from urllib.parse import urlencode
from urllib.parse import urlsplit
from urllib.parse import urlunsplit

from healthtrack.phi.patterns import CLICK_ID_PARAMS
from healthtrack.phi.patterns import CLIENT_FIELD_NAMES
from healthtrack.phi.patterns import CLIENT_URL_PARAMS
from healthtrack.phi.patterns import EXTENDED_CLICK_ID_PARAMS
from healthtrack.phi.patterns import PATTERN_PRIORITY
from healthtrack.phi.patterns import PHIKind
from healthtrack.phi.patterns import REDACTED
from healthtrack.phi.patterns import SERVER_FIELD_NAMES
from healthtrack.phi.patterns import SERVER_URL_PARAMS
from healthtrack.phi.patterns import TYPED_SENTINELS

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassifierProfile:
    """Capability set for one deployment site."""

    name: str
    field_names: frozenset[str]
    field_name_match: str  # "substring" | "exact"
    url_params: frozenset[str]
    click_id_params: frozenset[str]
    detect_credit_cards: bool
    partial_redaction: bool


CLIENT_PROFILE = ClassifierProfile(
    name="client",
    field_names=frozenset(CLIENT_FIELD_NAMES),
    field_name_match="substring",
    url_params=CLIENT_URL_PARAMS,
    click_id_params=CLICK_ID_PARAMS,
    detect_credit_cards=False,
    partial_redaction=False,
)

SERVER_PROFILE = ClassifierProfile(
    name="server",
    field_names=SERVER_FIELD_NAMES,
    field_name_match="exact",
    url_params=SERVER_URL_PARAMS,
    click_id_params=EXTENDED_CLICK_ID_PARAMS,
    detect_credit_cards=True,
    partial_redaction=True,
)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PHIMatch:
    """Outcome of classifying a single value."""

    has_phi: bool
    kind: PHIKind | None = None


_NO_MATCH = PHIMatch(has_phi=False)


@dataclass
class ScrubResult:
    """Redacted copy of a structure and the field paths that were redacted."""

    data: dict[str, Any]
    scrubbed_fields: list[str] = field(default_factory=list)

    @property
    def has_phi(self) -> bool:
        return bool(self.scrubbed_fields)


@dataclass(frozen=True)
class UrlScrubResult:
    url: str
    removed_params: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class PHIClassifier:
    """Detect and redact PHI in values, field names, structures and URLs."""

    def __init__(self, profile: ClassifierProfile = SERVER_PROFILE) -> None:
        self.profile = profile
        self._patterns = tuple(
            (kind, pattern)
            for kind, pattern in PATTERN_PRIORITY
            if kind is not PHIKind.credit_card or profile.detect_credit_cards
        )

    # -- values --

    def detect_value(self, value: object) -> PHIMatch:
        """Return the highest-priority PHI kind found in *value*.

        Non-string values never match.
        """
        if not isinstance(value, str):
            return _NO_MATCH
        for kind, pattern in self._patterns:
            if pattern.search(value):
                return PHIMatch(has_phi=True, kind=kind)
        return _NO_MATCH

    def redact_value(self, value: str) -> tuple[str, list[PHIKind]]:
        """Redact *value*, returning the new string and every kind found.

        With partial redaction each pattern is applied in priority order to
        the progressively redacted string, so a later pattern never sees
        digits an earlier one already consumed.
        """
        if not self.profile.partial_redaction:
            match = self.detect_value(value)
            if match.kind is None:
                return value, []
            return REDACTED, [match.kind]

        kinds: list[PHIKind] = []
        redacted = value
        for kind, pattern in self._patterns:
            redacted, count = pattern.subn(TYPED_SENTINELS[kind], redacted)
            if count:
                kinds.append(kind)
        return redacted, kinds

    # -- field names --

    def is_phi_field_name(self, field_name: str) -> bool:
        lowered = field_name.lower()
        if self.profile.field_name_match == "exact":
            return lowered in self.profile.field_names
        return any(name in lowered for name in self.profile.field_names)

    # -- structures --

    def scrub(self, data: Mapping[str, Any]) -> ScrubResult:
        """Return a redacted copy of *data* and the redacted field paths.

        Objects are walked depth-first. A PHI field name short-circuits value
        inspection and the whole value becomes the sentinel.
        """
        fields: list[str] = []
        scrubbed = self._scrub_mapping(data, "", fields)
        return ScrubResult(data=scrubbed, scrubbed_fields=fields)

    def _scrub_mapping(
        self,
        data: Mapping[str, Any],
        path: str,
        fields: list[str],
    ) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, value in data.items():
            key_str = str(key)
            field_path = f"{path}.{key_str}" if path else key_str
            if self.is_phi_field_name(key_str):
                fields.append(field_path)
                logger.debug("PHI field detected: %s", field_path)
                result[key] = REDACTED
                continue
            result[key] = self._scrub_value(value, field_path, fields)
        return result

    def _scrub_value(self, value: Any, path: str, fields: list[str]) -> Any:
        if isinstance(value, str):
            redacted, kinds = self.redact_value(value)
            for kind in kinds:
                fields.append(f"{path} ({kind.value})")
                logger.debug("PHI pattern detected in %s: %s", path, kind.value)
            return redacted
        if isinstance(value, Mapping):
            return self._scrub_mapping(value, path, fields)
        if isinstance(value, (list, tuple)):
            return [
                self._scrub_value(item, f"{path}[{index}]", fields)
                for index, item in enumerate(value)
            ]
        return value

    # -- URLs --

    def scrub_url(self, url: str) -> UrlScrubResult:
        """Remove sensitive and PHI-bearing query parameters from *url*."""
        if not url:
            return UrlScrubResult(url="")
        parts = _split_absolute(url)
        if parts is None:
            logger.debug("URL scrub skipped, unparseable URL")
            return UrlScrubResult(url=url)

        params = parse_qsl(parts.query, keep_blank_values=True)
        kept: list[tuple[str, str]] = []
        removed: list[str] = []
        for key, value in params:
            if key.lower() in self.profile.url_params:
                removed.append(key)
                continue
            if self.detect_value(value).has_phi:
                logger.debug("PHI detected in URL param: %s", key)
                removed.append(key)
                continue
            kept.append((key, value))

        if not removed:
            return UrlScrubResult(url=url)
        rebuilt = urlunsplit(parts._replace(query=urlencode(kept)))
        return UrlScrubResult(url=rebuilt, removed_params=tuple(dict.fromkeys(removed)))

    def strip_click_ids(self, url: str) -> str:
        """Remove only ad-attribution click identifiers from *url*."""
        if not url:
            return ""
        parts = _split_absolute(url)
        if parts is None:
            logger.debug("Click-id strip skipped, unparseable URL")
            return url
        params = parse_qsl(parts.query, keep_blank_values=True)
        kept = [(k, v) for k, v in params if k.lower() not in self.profile.click_id_params]
        if len(kept) == len(params):
            return url
        return urlunsplit(parts._replace(query=urlencode(kept)))

    def scrub_referrer(self, referrer: str) -> str:
        """Reduce *referrer* to scheme, host and path; drop all parameters."""
        if not referrer:
            return ""
        parts = _split_absolute(referrer)
        if parts is None:
            return ""
        return f"{parts.scheme}://{parts.netloc}{parts.path or '/'}"


def _split_absolute(url: str):
    """Split an absolute URL, or return ``None`` when it cannot be parsed."""
    try:
        parts = urlsplit(url)
        # Accessing the port validates the netloc.
        _ = parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return parts
