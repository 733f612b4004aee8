"""
message_gate/clients/ip_client.py — Public IP lookup used as the rate-limit identifier
The address is whatever the lookup service reports for this client: it is
self-attested and trivially spoofable.
"""
from __future__ import annotations

import time

import httpx

from message_gate.core import logging as app_logging
from message_gate.core.rate_limiter import UNKNOWN_IDENTIFIER

DEFAULT_IP_LOOKUP_URL = "https://api.ipify.org?format=json"


class IPLookupClient:
    def __init__(self, http: httpx.AsyncClient, url: str = DEFAULT_IP_LOOKUP_URL):
        self.url = url
        self._http = http

    async def resolve_identifier(self) -> str:
        """Return the reported IP, or "unknown" on any failure."""
        start = time.monotonic()
        try:
            resp = await self._http.get(self.url)
            resp.raise_for_status()
            ip = resp.json().get("ip")
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            latency_ms = (time.monotonic() - start) * 1000
            app_logging.log_backend_call(self.url, "GET", None, latency_ms, error=str(exc))
            return UNKNOWN_IDENTIFIER

        latency_ms = (time.monotonic() - start) * 1000
        app_logging.log_backend_call(self.url, "GET", resp.status_code, latency_ms)
        return str(ip) if ip else UNKNOWN_IDENTIFIER
