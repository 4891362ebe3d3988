"""PHI domain — classification, scrubbing, identifiers and sensitive pages."""

from healthtrack.phi.classifier import CLIENT_PROFILE
from healthtrack.phi.classifier import ClassifierProfile
from healthtrack.phi.classifier import PHIClassifier
from healthtrack.phi.classifier import PHIMatch
from healthtrack.phi.classifier import SERVER_PROFILE
from healthtrack.phi.classifier import ScrubResult
from healthtrack.phi.classifier import UrlScrubResult
from healthtrack.phi.identifiers import anonymize_ip
from healthtrack.phi.identifiers import client_hash
from healthtrack.phi.identifiers import generate_session_id
from healthtrack.phi.identifiers import hash_identifier
from healthtrack.phi.patterns import PHIKind
from healthtrack.phi.patterns import REDACTED
from healthtrack.phi.sensitive_pages import PageAction
from healthtrack.phi.sensitive_pages import SensitivePageMatch
from healthtrack.phi.sensitive_pages import SensitivePageMatcher
from healthtrack.phi.sensitive_pages import SensitivePagePattern
from healthtrack.phi.sensitive_pages import default_healthcare_patterns

__all__ = [
    "CLIENT_PROFILE",
    "ClassifierProfile",
    "PHIClassifier",
    "PHIKind",
    "PHIMatch",
    "PageAction",
    "REDACTED",
    "SERVER_PROFILE",
    "ScrubResult",
    "SensitivePageMatch",
    "SensitivePageMatcher",
    "SensitivePagePattern",
    "UrlScrubResult",
    "anonymize_ip",
    "client_hash",
    "default_healthcare_patterns",
    "generate_session_id",
    "hash_identifier",
]
