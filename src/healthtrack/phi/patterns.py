"""PHI pattern tables and vocabularies.

Value patterns are evaluated in ``PATTERN_PRIORITY`` order so that
overlapping shapes (card numbers vs. phone digits, SSN vs. phone) resolve
deterministically.
"""

from __future__ import annotations

import re
from enum import Enum


class PHIKind(str, Enum):
    """Kinds of PHI recognised by value pattern."""

    credit_card = "credit_card"
    email = "email"
    ssn = "ssn"
    phone = "phone"
    dob = "dob"


# ---------------------------------------------------------------------------
# Value patterns
# ---------------------------------------------------------------------------

CREDIT_CARD_RE = re.compile(
    r"\b(?:4[0-9]{12}(?:[0-9]{3})?|5[1-5][0-9]{14}|3[47][0-9]{13}"
    r"|6(?:011|5[0-9]{2})[0-9]{12})\b"
)
EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
# Separators are mandatory: an undelimited 9-digit run falls through to PHONE_RE.
SSN_RE = re.compile(r"\b\d{3}[-\s]\d{2}[-\s]\d{4}\b")
PHONE_RE = re.compile(
    r"(?:\+?1[-.\s]?)?(?:\(?[2-9]\d{2}\)?[-.\s]?)?\d{3}[-.\s]?\d{4}"
)
DOB_RE = re.compile(
    r"\b(?:0?[1-9]|1[0-2])[-/](?:0?[1-9]|[12]\d|3[01])[-/](?:19|20)\d{2}\b"
)

PATTERN_PRIORITY: tuple[tuple[PHIKind, re.Pattern[str]], ...] = (
    (PHIKind.credit_card, CREDIT_CARD_RE),
    (PHIKind.email, EMAIL_RE),
    (PHIKind.ssn, SSN_RE),
    (PHIKind.phone, PHONE_RE),
    (PHIKind.dob, DOB_RE),
)

REDACTED = "[REDACTED]"

TYPED_SENTINELS: dict[PHIKind, str] = {
    PHIKind.credit_card: "[CC_REDACTED]",
    PHIKind.email: "[EMAIL_REDACTED]",
    PHIKind.ssn: "[SSN_REDACTED]",
    PHIKind.phone: "[PHONE_REDACTED]",
    PHIKind.dob: "[DOB_REDACTED]",
}

# ---------------------------------------------------------------------------
# Field-name vocabularies (lower-cased)
# ---------------------------------------------------------------------------

# Matched by substring: greedy on purpose ("username" hits "name").
CLIENT_FIELD_NAMES: tuple[str, ...] = (
    "email",
    "e-mail",
    "mail",
    "phone",
    "telephone",
    "tel",
    "mobile",
    "cell",
    "name",
    "firstname",
    "first_name",
    "lastname",
    "last_name",
    "fullname",
    "full_name",
    "patientname",
    "patient_name",
    "patient",
    "ssn",
    "socialsecurity",
    "social_security",
    "dob",
    "dateofbirth",
    "date_of_birth",
    "birthdate",
    "birth_date",
    "birthday",
    "address",
    "street",
    "city",
    "state",
    "zip",
    "zipcode",
    "zip_code",
    "postalcode",
    "postal_code",
    "medicalrecord",
    "medical_record",
    "mrn",
    "diagnosis",
    "condition",
    "treatment",
    "prescription",
    "insurance",
    "insuranceid",
    "insurance_id",
    "memberid",
    "member_id",
    "policynumber",
    "policy_number",
)

# Matched exactly against the lower-cased field name.
SERVER_FIELD_NAMES: frozenset[str] = frozenset(
    {
        # Identity
        "email",
        "e-mail",
        "mail",
        "name",
        "firstname",
        "first_name",
        "lastname",
        "last_name",
        "fullname",
        "full_name",
        "patient",
        "patientname",
        "patient_name",
        "username",
        "user_name",
        # Contact
        "phone",
        "telephone",
        "tel",
        "mobile",
        "cell",
        "fax",
        # Location
        "address",
        "street",
        "city",
        "state",
        "zip",
        "zipcode",
        "zip_code",
        "postalcode",
        "postal_code",
        # Government IDs
        "ssn",
        "socialsecurity",
        "social_security",
        "ssn_last4",
        "driverslicense",
        "drivers_license",
        "passport",
        # Dates
        "dob",
        "dateofbirth",
        "date_of_birth",
        "birthdate",
        "birth_date",
        "birthday",
        # Medical
        "medicalrecord",
        "medical_record",
        "mrn",
        "diagnosis",
        "condition",
        "treatment",
        "prescription",
        "medication",
        "allergy",
        "symptoms",
        # Insurance
        "insurance",
        "insuranceid",
        "insurance_id",
        "memberid",
        "member_id",
        "policynumber",
        "policy_number",
        "groupnumber",
        "group_number",
        # Financial
        "creditcard",
        "credit_card",
        "cardnumber",
        "card_number",
        "accountnumber",
        "account_number",
        "routingnumber",
        "routing_number",
    }
)

# ---------------------------------------------------------------------------
# URL parameters (lower-cased)
# ---------------------------------------------------------------------------

CLICK_ID_PARAMS: frozenset[str] = frozenset(
    {"gclid", "fbclid", "msclkid", "ttclid", "li_fat_id", "wbraid", "gbraid"}
)
EXTENDED_CLICK_ID_PARAMS: frozenset[str] = CLICK_ID_PARAMS | {
    "dclid",
    "twclid",
    "igshid",
}

CLIENT_URL_PARAMS: frozenset[str] = CLICK_ID_PARAMS | {
    "email",
    "name",
    "phone",
    "patient",
    "ssn",
    "dob",
    "firstname",
    "lastname",
    "first_name",
    "last_name",
}
SERVER_URL_PARAMS: frozenset[str] = (
    EXTENDED_CLICK_ID_PARAMS | CLIENT_URL_PARAMS | {"address", "zip", "zipcode"}
)
