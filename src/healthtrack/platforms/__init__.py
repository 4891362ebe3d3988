"""Server-side forwarders to ad and analytics platforms."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

from healthtrack.config import ForwarderConfig
from healthtrack.http import HTTPTransport
from healthtrack.platforms.base import CredentialCheck
from healthtrack.platforms.base import ForwardEvent
from healthtrack.platforms.base import PlatformForwarder
from healthtrack.platforms.base import SendResult
from healthtrack.platforms.ga4 import GA4Forwarder
from healthtrack.platforms.linkedin import LinkedInForwarder
from healthtrack.platforms.meta import MetaForwarder
from healthtrack.platforms.tiktok import TikTokForwarder

logger = logging.getLogger(__name__)

FORWARDERS: dict[str, type[PlatformForwarder]] = {
    "ga4": GA4Forwarder,
    "meta": MetaForwarder,
    "tiktok": TikTokForwarder,
    "linkedin": LinkedInForwarder,
}
# Platforms configured in an organization but with no server-side forwarder.
CREDENTIAL_ONLY_PLATFORMS = frozenset({"google_ads"})
SUPPORTED_PLATFORMS = frozenset(FORWARDERS) | CREDENTIAL_ONLY_PLATFORMS

_REQUIRED_MESSAGES = {
    "ga4": "Measurement ID and API Secret are required",
    "meta": "Pixel ID and Access Token are required",
    "tiktok": "Pixel Code and Access Token are required",
    "linkedin": "Conversion ID and Access Token are required",
}
_GOOGLE_ADS_CUSTOMER_ID = re.compile(r"^\d{10}$")


def build_forwarder(
    platform: str,
    credentials: Mapping[str, str] | None = None,
    *,
    salt: str = "",
    config: ForwarderConfig | None = None,
    transport: HTTPTransport | None = None,
) -> PlatformForwarder:
    """Instantiate the forwarder for *platform*; ``ValueError`` if unknown."""
    try:
        forwarder_cls = FORWARDERS[platform]
    except KeyError:
        raise ValueError(f"Unknown platform: {platform}") from None
    return forwarder_cls(credentials, salt=salt, config=config, transport=transport)


async def check_platform_credentials(
    platform: str,
    credentials: Mapping[str, str],
    *,
    config: ForwarderConfig | None = None,
    transport: HTTPTransport | None = None,
) -> CredentialCheck:
    """Check required fields and formats locally, then probe the platform."""
    if platform == "google_ads":
        return _check_google_ads(credentials)
    if platform not in FORWARDERS:
        return CredentialCheck(valid=False, message="Unknown platform")

    forwarder = build_forwarder(platform, credentials, config=config, transport=transport)
    if not forwarder.is_configured():
        return CredentialCheck(valid=False, message=_REQUIRED_MESSAGES[platform])
    if platform == "ga4" and not forwarder.credentials["measurement_id"].startswith("G-"):
        return CredentialCheck(valid=False, message="Measurement ID must start with G-")

    check = await forwarder.validate_credentials()
    logger.info("Credential check platform=%s valid=%s", platform, check.valid)
    return check


def _check_google_ads(credentials: Mapping[str, str]) -> CredentialCheck:
    # No OAuth flow here, so only the customer id format can be checked.
    customer_id = credentials.get("customer_id") or ""
    if not customer_id:
        return CredentialCheck(valid=False, message="Customer ID is required")
    if not _GOOGLE_ADS_CUSTOMER_ID.match(customer_id.replace("-", "")):
        return CredentialCheck(
            valid=False,
            message="Customer ID must be 10 digits (XXX-XXX-XXXX)",
        )
    return CredentialCheck(
        valid=True,
        message="Customer ID format valid. OAuth connection required to complete setup.",
    )


__all__ = [
    "CREDENTIAL_ONLY_PLATFORMS",
    "CredentialCheck",
    "FORWARDERS",
    "ForwardEvent",
    "GA4Forwarder",
    "LinkedInForwarder",
    "MetaForwarder",
    "PlatformForwarder",
    "SUPPORTED_PLATFORMS",
    "SendResult",
    "TikTokForwarder",
    "build_forwarder",
    "check_platform_credentials",
]
