"""API key handling for ingestion and bearer auth for the MCP admin surface."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone
from typing import TYPE_CHECKING

from fastmcp.server.auth import AccessToken
from fastmcp.server.auth import TokenVerifier

if TYPE_CHECKING:
    from healthtrack.ingest.schemas import ApiKeyRecord
    from healthtrack.ingest.store import EventStore

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "ht_live_"
DEFAULT_MCP_SCOPES = ["healthtrack:admin"]


# ---------------------------------------------------------------------------
# Ingestion API keys
# ---------------------------------------------------------------------------


def hash_api_key(api_key: str) -> str:
    """SHA-256 hex digest; only the hash is ever stored."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def key_fingerprint(api_key: str) -> str:
    return hash_api_key(api_key)[:12]


def generate_api_key() -> tuple[str, str, str]:
    """Return ``(api_key, key_hash, key_prefix)`` for a fresh live key."""
    api_key = f"{API_KEY_PREFIX}{secrets.token_hex(24)}"
    return api_key, hash_api_key(api_key), api_key[: len(API_KEY_PREFIX) + 4]


@dataclass(frozen=True)
class AuthResult:
    """Outcome of an API key lookup; ``error`` is client-facing."""

    record: ApiKeyRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None and self.error is None


async def authenticate_api_key(store: EventStore, api_key: str) -> AuthResult:
    """Look up *api_key* by hash; revoked keys are rejected."""
    record = await store.get_api_key(hash_api_key(api_key))
    if record is None:
        logger.debug("Unknown API key (key_fp=%s)", key_fingerprint(api_key))
        return AuthResult(error="Invalid API key")
    if record.revoked_at is not None:
        logger.info("Revoked API key used (key_id=%s)", record.id)
        return AuthResult(record=record, error="API key has been revoked")
    await store.touch_api_key(record.key_hash, datetime.now(timezone.utc))
    return AuthResult(record=record)


# ---------------------------------------------------------------------------
# MCP bearer auth
# ---------------------------------------------------------------------------


class APIKeyVerifier(TokenVerifier):
    """Static bearer-token verifier for the MCP admin tools."""

    def __init__(
        self,
        api_key: str,
        *,
        scopes: list[str] | None = None,
        claims: Mapping[str, object] | None = None,
    ) -> None:
        normalized = api_key.strip()
        if not normalized:
            raise ValueError("api_key must be a non-empty, non-whitespace string")
        super().__init__()
        self._api_key = normalized
        self._scopes = scopes[:] if scopes else list(DEFAULT_MCP_SCOPES)
        self._claims = dict(claims or {})

    async def verify_token(self, token: str) -> AccessToken | None:
        if hmac.compare_digest(token, self._api_key):
            return AccessToken(
                token=token,
                client_id="healthtrack-admin",
                scopes=self._scopes,
                expires_at=None,
                claims=self._claims,
            )
        logger.debug(
            "Invalid MCP auth token provided (token_len=%d, token_fp=%s)",
            len(token),
            key_fingerprint(token),
        )
        return None


def get_mcp_auth_key() -> str | None:
    """Read ``HEALTHTRACK_MCP_AUTH_KEY``; blank counts as unset."""
    token = os.getenv("HEALTHTRACK_MCP_AUTH_KEY")
    if token is None:
        return None
    return token.strip() or None


def get_mcp_auth_scopes() -> list[str]:
    raw = os.getenv("HEALTHTRACK_MCP_AUTH_SCOPES", "")
    parsed = [scope.strip() for scope in raw.split(",") if scope.strip()]
    return parsed or list(DEFAULT_MCP_SCOPES)


def create_mcp_auth() -> APIKeyVerifier | None:
    api_key = get_mcp_auth_key()
    if api_key is None:
        return None
    return APIKeyVerifier(api_key, scopes=get_mcp_auth_scopes())
