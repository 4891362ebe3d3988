"""Minimal JSON-over-HTTP transport built on ``urllib``.

Blocking calls run in a worker thread via ``asyncio.to_thread`` so they never
stall the event loop. Every call carries an explicit timeout.
"""

from __future__ import annotations

import asyncio
import http.client
import json
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen


class TransportError(Exception):
    """Raised when a request could not be delivered (network or IO failure)."""


@dataclass(frozen=True)
class HTTPResponse:
    """Status and raw body of a completed HTTP exchange."""

    status: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Decode the body as JSON, returning ``None`` when it is not JSON."""
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError:
            return None


class HTTPTransport:
    """Send JSON requests and return ``HTTPResponse`` for any HTTP status.

    Non-2xx statuses are returned, not raised. Only failures where no HTTP
    response exists raise ``TransportError``.
    """

    def __init__(self, *, timeout_seconds: float = 10.0) -> None:
        self._timeout_seconds = timeout_seconds

    async def request(
        self,
        method: str,
        url: str,
        *,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> HTTPResponse:
        return await asyncio.to_thread(
            self.request_sync,
            method,
            url,
            json_body=json_body,
            headers=headers,
            timeout_seconds=timeout_seconds,
        )

    def request_sync(
        self,
        method: str,
        url: str,
        *,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> HTTPResponse:
        all_headers = dict(headers or {})
        data = None
        if json_body is not None:
            data = json.dumps(json_body).encode("utf-8")
            all_headers.setdefault("Content-Type", "application/json")
        request = Request(url=url, data=data, headers=all_headers, method=method)
        timeout = timeout_seconds if timeout_seconds is not None else self._timeout_seconds
        try:
            with urlopen(request, timeout=timeout) as response:
                return HTTPResponse(
                    status=response.status,
                    body=response.read().decode("utf-8", errors="replace"),
                    headers=dict(response.headers.items()),
                )
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            return HTTPResponse(
                status=exc.code,
                body=detail,
                headers=dict(exc.headers.items()) if exc.headers else {},
            )
        except URLError as exc:
            raise TransportError(f"network error: {exc.reason}") from exc
        except (OSError, http.client.HTTPException) as exc:
            raise TransportError(f"IO error: {exc}") from exc
