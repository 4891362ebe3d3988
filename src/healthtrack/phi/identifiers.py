"""Identifier pseudonymization: session ids, hashing and IP anonymization."""

from __future__ import annotations

import hashlib
import ipaddress
import secrets


def generate_session_id() -> str:
    """Return a fresh random session token (16 bytes, 32 hex chars)."""
    return secrets.token_hex(16)


def hash_identifier(identifier: str, salt: str) -> str:
    """One-way SHA-256 of ``salt + identifier``.

    Deterministic for a given salt, so events from the same visitor
    deduplicate across platforms; different organization salts never
    correlate.
    """
    return hashlib.sha256((salt + identifier).encode("utf-8")).hexdigest()


def client_hash(value: str) -> str:
    """Rolling 31-multiplier hash used by the browser SDK for ``identify``.

    Pseudonymization only, not a security boundary. Kept bit-compatible with
    identifiers already issued (32-bit signed wrap, absolute value in hex).
    """
    acc = 0
    for char in value:
        code_units = char.encode("utf-16-le")
        for i in range(0, len(code_units), 2):
            unit = int.from_bytes(code_units[i : i + 2], "little")
            acc = (acc * 31 + unit) & 0xFFFFFFFF
    if acc >= 0x80000000:
        acc -= 0x100000000
    return f"user_{abs(acc):x}"


def anonymize_ip(ip: str) -> str:
    """Zero the host portion of an IP address.

    IPv4 keeps the first three octets; IPv6 keeps the first 48 bits (three
    groups). Anything that is not an IP address is returned unchanged.
    """
    if not ip:
        return ""
    candidate = ip.strip()
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return ip
    if isinstance(address, ipaddress.IPv4Address):
        octets = candidate.split(".")
        return f"{octets[0]}.{octets[1]}.{octets[2]}.0"
    return ":".join(_expand_ipv6(candidate.split("%")[0])[:3]) + "::"


def _expand_ipv6(ip: str) -> list[str]:
    """Split *ip* into eight groups, filling a ``::`` gap with zero groups."""
    if "::" not in ip:
        return ip.split(":")
    left, _, right = ip.partition("::")
    left_parts = left.split(":") if left else []
    right_parts = right.split(":") if right else []
    missing = 8 - len(left_parts) - len(right_parts)
    return left_parts + ["0000"] * missing + right_parts
