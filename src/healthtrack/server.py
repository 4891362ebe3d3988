"""HealthTrack server: the ingestion HTTP endpoint plus MCP admin tools.

The SDK posts batches to ``POST /api/v1/events`` (a custom route on the
FastMCP app). Operators use the MCP tools to ingest test batches, scrub
sample payloads, check platform credentials and run forwarding passes.
Call ``configure(redis_url=...)`` before serving.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

from fastmcp import FastMCP
from redis.asyncio import Redis  # type: ignore[import-untyped]
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.responses import Response

from healthtrack.audit import AuditEventType
from healthtrack.audit import AuditLogger
from healthtrack.auth import create_mcp_auth
from healthtrack.config import AuditConfig
from healthtrack.config import ForwarderConfig
from healthtrack.config import IngestionConfig
from healthtrack.forwarding import ForwardingJob
from healthtrack.http import HTTPTransport
from healthtrack.ingest import CORS_HEADERS
from healthtrack.ingest import EventStore
from healthtrack.ingest import IngestionService
from healthtrack.ingest import IngestOutcome
from healthtrack.ingest import RedisEventStore
from healthtrack.ingest.service import first_forwarded_ip
from healthtrack.observability import counter_snapshot
from healthtrack.observability import latency_metrics_snapshot
from healthtrack.phi import CLIENT_PROFILE
from healthtrack.phi import PHIClassifier
from healthtrack.phi import SERVER_PROFILE
from healthtrack.platforms import check_platform_credentials

logger = logging.getLogger(__name__)

mcp = FastMCP("HealthTrack", auth=create_mcp_auth())

# ---------------------------------------------------------------------------
# Backend instances (set via configure())
# ---------------------------------------------------------------------------

_store: EventStore | None = None
_service: IngestionService | None = None
_forwarding: ForwardingJob | None = None
_audit_logger: AuditLogger | None = None


def get_redis_url() -> str:
    return os.getenv("HEALTHTRACK_REDIS_URL", IngestionConfig().redis_url)


async def configure(
    redis_url: str | None = None,
    *,
    store: EventStore | None = None,
    ingestion_config: IngestionConfig | None = None,
    forwarder_config: ForwarderConfig | None = None,
    audit_config: AuditConfig | None = None,
    transport: HTTPTransport | None = None,
) -> None:
    """Initialize the store, ingestion service and forwarding job.

    An explicit *store* wins over *redis_url*; tests inject in-memory stores.
    """
    global _store, _service, _forwarding, _audit_logger
    if _store is not None and _store is not store:
        try:
            await _store.close()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass

    ingestion = ingestion_config or IngestionConfig()
    if store is None:
        store = RedisEventStore(Redis.from_url(redis_url or ingestion.redis_url))
    _store = store
    _audit_logger = AuditLogger(audit_config or AuditConfig())
    _service = IngestionService(store, config=ingestion, audit=_audit_logger)
    _forwarding = ForwardingJob(
        store,
        config=forwarder_config,
        transport=transport,
        audit=_audit_logger,
    )


async def shutdown() -> None:
    global _store, _service, _forwarding, _audit_logger
    if _store is not None:
        await _store.close()
    _store = None
    _service = None
    _forwarding = None
    _audit_logger = None


def _get_service() -> IngestionService:
    if _service is None:
        raise RuntimeError("Ingestion service not configured. Call configure() first.")
    return _service


def _get_forwarding() -> ForwardingJob:
    if _forwarding is None:
        raise RuntimeError("Forwarding job not configured. Call configure() first.")
    return _forwarding


def _to_response(outcome: IngestOutcome) -> Response:
    if outcome.body is None:
        return Response(status_code=outcome.status_code, headers=outcome.headers)
    return JSONResponse(outcome.body, status_code=outcome.status_code, headers=outcome.headers)


# ---------------------------------------------------------------------------
# HTTP routes
# ---------------------------------------------------------------------------


@mcp.custom_route("/api/v1/events", methods=["POST", "OPTIONS"])
async def events_endpoint(request: Request) -> Response:
    if request.method == "OPTIONS":
        return _to_response(IngestionService.preflight())
    if _service is None:
        logger.error("Events received before configure()")
        return JSONResponse(
            {"error": "Internal server error"},
            status_code=500,
            headers=dict(CORS_HEADERS),
        )
    body = await request.body()
    client_ip = first_forwarded_ip(
        request.headers.get("x-forwarded-for"),
        request.headers.get("x-real-ip") or (request.client.host if request.client else None),
    )
    outcome = await _service.ingest(
        body,
        client_ip=client_ip,
        user_agent=request.headers.get("user-agent"),
    )
    return _to_response(outcome)


@mcp.custom_route("/health", methods=["GET"])
async def health(request: Request) -> Response:
    return JSONResponse({"status": "ok", "configured": _service is not None})


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def send_events(
    api_key: str,
    events: list[dict[str, Any]],
    consent: dict[str, bool] | None = None,
) -> dict[str, Any]:
    """Ingest a batch exactly as the HTTP endpoint would.

    Args:
        api_key: The organization's ingestion key.
        events: Tracking events in SDK wire format.
        consent: Optional ``{"analytics": bool, "marketing": bool}``.
    """
    body: dict[str, Any] = {"apiKey": api_key, "events": events}
    if consent is not None:
        body["consent"] = consent
    outcome = await _get_service().ingest(json.dumps(body))
    return {"status_code": outcome.status_code, **(outcome.body or {})}


@mcp.tool
async def scrub_phi(data: dict[str, Any], profile: str = "server") -> dict[str, Any]:
    """Preview what the classifier redacts from a payload.

    Args:
        data: Arbitrary JSON object.
        profile: ``server`` (exact field names, typed sentinels) or ``client``.
    """
    if profile not in {"server", "client"}:
        return {"error": f"Unknown profile: {profile}"}
    classifier = PHIClassifier(SERVER_PROFILE if profile == "server" else CLIENT_PROFILE)
    result = classifier.scrub(data)
    return {"data": result.data, "scrubbed_fields": result.scrubbed_fields}


@mcp.tool
async def validate_platform_credentials(
    platform: str,
    credentials: dict[str, str],
    org_id: str | None = None,
) -> dict[str, Any]:
    """Check destination credentials before saving them.

    Args:
        platform: ``ga4``, ``meta``, ``tiktok``, ``linkedin`` or ``google_ads``.
        credentials: Platform-specific credential fields.
        org_id: Organization to attribute the audit record to.
    """
    transport = _forwarding.transport if _forwarding is not None else None
    check = await check_platform_credentials(platform, credentials, transport=transport)
    if _audit_logger is not None:
        await _audit_logger.record(
            AuditEventType.CREDENTIALS_VALIDATED,
            org_id=org_id,
            platform=platform,
            valid=check.valid,
        )
    return {"valid": check.valid, "message": check.message}


@mcp.tool
async def forward_pending(org_id: str, limit: int = 100) -> dict[str, Any]:
    """Forward up to *limit* pending events of an organization to its platforms.

    Args:
        org_id: Organization id.
        limit: Maximum number of events to take from the pending queue.
    """
    if limit < 1:
        return {"error": "limit must be >= 1"}
    report = await _get_forwarding().run_once(org_id, limit=limit)
    return {
        "org_id": report.org_id,
        "processed": report.processed,
        "forwarded": report.forwarded,
        "failed": report.failed,
        "platforms": report.platforms,
        "errors": report.errors,
    }


@mcp.tool
async def get_metrics() -> dict[str, Any]:
    """Return in-process latency aggregates and counters."""
    return {"latency": latency_metrics_snapshot(), "counters": counter_snapshot()}


def main() -> None:
    """Serve the ingestion endpoint and MCP tools over HTTP."""
    logging.basicConfig(level=os.getenv("HEALTHTRACK_LOG_LEVEL", "INFO"))
    asyncio.run(configure(redis_url=get_redis_url()))
    mcp.run(
        transport="http",
        host=os.getenv("HEALTHTRACK_HOST", "127.0.0.1"),
        port=int(os.getenv("HEALTHTRACK_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
