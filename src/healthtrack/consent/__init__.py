"""Consent resolution across manual overrides and consent-management platforms."""

from healthtrack.consent.adapters import CMPAdapter
from healthtrack.consent.adapters import CookiebotAdapter
from healthtrack.consent.adapters import GoogleConsentModeAdapter
from healthtrack.consent.adapters import OneTrustAdapter
from healthtrack.consent.manager import ConsentAuthority
from healthtrack.consent.manager import ConsentManager
from healthtrack.consent.state import DENIED
from healthtrack.consent.state import GRANTED
from healthtrack.consent.state import ConsentState

__all__ = [
    "CMPAdapter",
    "ConsentAuthority",
    "ConsentManager",
    "ConsentState",
    "CookiebotAdapter",
    "DENIED",
    "GRANTED",
    "GoogleConsentModeAdapter",
    "OneTrustAdapter",
]
