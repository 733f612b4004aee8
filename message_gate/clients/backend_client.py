"""
message_gate/clients/backend_client.py — Moderation backend HTTP client
Endpoints: GET /api/get-csrf-token, POST /api/add_message
The client reports what the backend said; mapping statuses to outcomes is the
submission controller's job.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from message_gate.core import logging as app_logging
from message_gate.utils.validators import safe_parse_json

CSRF_TOKEN_PATH = "/api/get-csrf-token"
ADD_MESSAGE_PATH = "/api/add_message"
CSRF_HEADER = "X-CSRFToken"


class BackendUnavailableError(Exception):
    """Raised when the backend cannot be reached (DNS, connect, timeout...)."""


@dataclass
class BackendResponse:
    status_code: int
    body: Optional[dict[str, Any]] = field(default=None)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def error_message(self) -> Optional[str]:
        if not self.body:
            return None
        error = self.body.get("error")
        return str(error) if error else None


class BackendClient:
    """
    Async client for the moderation backend. Runs on the caller's httpx client,
    which also carries the timeout; the caller closes it.
    """

    def __init__(self, base_url: str, http: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self._http = http

    async def _send(
        self,
        method: str,
        path: str,
        json_body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> BackendResponse:
        url = f"{self.base_url}{path}"
        start = time.monotonic()
        try:
            resp = await self._http.request(method, url, json=json_body, headers=headers)
        except httpx.RequestError as exc:
            latency_ms = (time.monotonic() - start) * 1000
            app_logging.log_backend_call(path, method, None, latency_ms, error=str(exc))
            raise BackendUnavailableError(f"{method} {path} failed: {exc}") from exc

        latency_ms = (time.monotonic() - start) * 1000
        app_logging.log_backend_call(path, method, resp.status_code, latency_ms)
        return BackendResponse(status_code=resp.status_code, body=safe_parse_json(resp.text))

    # ── Endpoints ─────────────────────────────────────────────────────────────

    async def fetch_csrf_token(self) -> Optional[str]:
        """
        Fetch the opaque CSRF token for this form session.
        Returns None if the backend is unreachable or answers without a token.
        """
        try:
            resp = await self._send("GET", CSRF_TOKEN_PATH)
        except BackendUnavailableError as exc:
            app_logging.log_error("backend_client", "fetch_csrf_token", exc)
            return None
        token = (resp.body or {}).get("csrf_token") if resp.ok else None
        return str(token) if token else None

    async def post_message(
        self,
        content: str,
        csrf_token: Optional[str] = None,
    ) -> BackendResponse:
        """POST {content} to the moderation queue. Raises BackendUnavailableError."""
        headers = {"Content-Type": "application/json"}
        if csrf_token:
            headers[CSRF_HEADER] = csrf_token
        return await self._send(
            "POST", ADD_MESSAGE_PATH, json_body={"content": content}, headers=headers,
        )
