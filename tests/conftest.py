"""
tests/conftest.py — Shared pytest fixtures
"""
from __future__ import annotations

from typing import Callable, Optional

import httpx
import pytest

from message_gate.clients.backend_client import BackendClient
from message_gate.config import PROFILES
from message_gate.core.rate_limiter import RateLimitStore
from message_gate.models import CsrfPolicy, FormConfig
from message_gate.services.submission import FormRegistry, SubmissionController

BACKEND_URL = "http://backend.test"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """Records requests and answers /api/add_message with a queued status."""

    def __init__(self, status_code: int = 200, body: Optional[dict] = None):
        self.status_code = status_code
        self.body = body if body is not None else {"status": "queued"}
        self.csrf_token: Optional[str] = "tok-123"
        # Addresses handed out by the IP lookup, in order; then the default.
        self.ips: list[str] = []
        self.requests: list[httpx.Request] = []

    @property
    def posted(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/add_message"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/get-csrf-token":
            return httpx.Response(200, json={"csrf_token": self.csrf_token})
        if request.url.host == "api.ipify.org":
            ip = self.ips.pop(0) if self.ips else "203.0.113.7"
            return httpx.Response(200, json={"ip": ip})
        if request.url.path == "/api/add_message":
            return httpx.Response(self.status_code, json=self.body)
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def moderated_config() -> FormConfig:
    return PROFILES["moderated"]


@pytest.fixture
def strict_config() -> FormConfig:
    return PROFILES["strict"]


@pytest.fixture
def open_config() -> FormConfig:
    """Moderated form without CSRF, handy for controller tests."""
    return PROFILES["moderated"].model_copy(update={"csrf": CsrfPolicy.ABSENT})


@pytest.fixture
def make_controller(clock, fake_backend) -> Callable[..., SubmissionController]:
    def _make(
        config: FormConfig,
        handler=None,
        store: Optional[RateLimitStore] = None,
        resolve_identifier=None,
    ) -> SubmissionController:
        transport = httpx.MockTransport(handler or fake_backend.handler)
        http = httpx.AsyncClient(transport=transport)
        backend = BackendClient(BACKEND_URL, http=http)
        return SubmissionController(
            config=config,
            backend=backend,
            store=store,
            resolve_identifier=resolve_identifier,
            clock=clock,
        )
    return _make


@pytest.fixture
def make_registry(clock, fake_backend) -> Callable[..., FormRegistry]:
    def _make(config: FormConfig, max_forms: int = 10_000) -> FormRegistry:
        http = httpx.AsyncClient(transport=httpx.MockTransport(fake_backend.handler))
        return FormRegistry(
            config=config,
            backend=BackendClient(BACKEND_URL, http=http),
            clock=clock,
            max_forms=max_forms,
        )
    return _make
